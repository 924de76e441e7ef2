"""Unit tests for WebSocket connection manager.

Tests WebSocket lifecycle, message broadcasting, and error handling.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from fastapi import WebSocket

from uploader.api.websocket import ConnectionManager


@pytest.fixture
def connection_manager():
    """Create a fresh ConnectionManager instance."""
    return ConnectionManager()


@pytest.fixture
def mock_websocket():
    """Create a mock WebSocket connection."""
    ws = AsyncMock(spec=WebSocket)
    ws.accept = AsyncMock()
    ws.send_text = AsyncMock()
    ws.close = AsyncMock()
    return ws


def sent_message(ws) -> dict:
    return json.loads(ws.send_text.call_args[0][0])


@pytest.mark.asyncio
class TestConnectionLifecycle:
    """Test WebSocket connection lifecycle management."""

    async def test_connect_adds_client(self, connection_manager, mock_websocket):
        """Test that connecting adds client to active connections."""
        await connection_manager.connect(mock_websocket)

        assert mock_websocket in connection_manager.active_connections
        mock_websocket.accept.assert_called_once()

    async def test_disconnect_removes_client(self, connection_manager, mock_websocket):
        await connection_manager.connect(mock_websocket)
        await connection_manager.disconnect(mock_websocket)

        assert connection_manager.active_connections == []

    async def test_disconnect_idempotent(self, connection_manager, mock_websocket):
        """Test that disconnecting a non-connected client is safe."""
        await connection_manager.disconnect(mock_websocket)

        assert connection_manager.active_connections == []


@pytest.mark.asyncio
class TestMessageBroadcasting:
    """Test message broadcasting functionality."""

    async def test_broadcast_drop_update(self, connection_manager, mock_websocket):
        await connection_manager.connect(mock_websocket)

        await connection_manager.broadcast_drop_update(3, "loaded", videos=1, subtitles=2, groups=1, orphans=1)

        assert sent_message(mock_websocket) == {
            "type": "drop_update",
            "generation": 3,
            "status": "loaded",
            "videos": 1,
            "subtitles": 2,
            "groups": 1,
            "orphans": 1,
        }

    async def test_drop_update_omits_missing_counts(self, connection_manager, mock_websocket):
        """Test None counts are not sent, so the client keeps its values."""
        await connection_manager.connect(mock_websocket)

        await connection_manager.broadcast_drop_update(4, "idle")

        assert sent_message(mock_websocket) == {"type": "drop_update", "generation": 4, "status": "idle"}

    async def test_broadcast_stage_update(self, connection_manager, mock_websocket):
        await connection_manager.connect(mock_websocket)

        await connection_manager.broadcast_stage_update(
            "Movie.en.srt",
            "movie_identification",
            "failed",
            attempts=3,
            error={"kind": "network", "message": "timeout", "blocking": False},
            manual_override=True,
        )

        message = sent_message(mock_websocket)
        assert message["type"] == "stage_update"
        assert message["path"] == "Movie.en.srt"
        assert message["state"] == "failed"
        assert message["attempts"] == 3
        assert message["manual_override"] is True

    async def test_broadcast_file_update(self, connection_manager, mock_websocket):
        await connection_manager.connect(mock_websocket)

        await connection_manager.broadcast_file_update("Movie.mkv", {"content_hash": "8e245d9679d31e12"})

        assert sent_message(mock_websocket) == {
            "type": "file_update",
            "path": "Movie.mkv",
            "content_hash": "8e245d9679d31e12",
        }

    async def test_broadcast_upload_progress(self, connection_manager, mock_websocket):
        await connection_manager.connect(mock_websocket)

        await connection_manager.broadcast_upload_progress(
            1, 3, current="a.srt", status="success", counts={"successful": 1, "exists": 0, "failed": 0}
        )

        message = sent_message(mock_websocket)
        assert message["type"] == "upload_progress"
        assert (message["processed"], message["total"]) == (1, 3)
        assert message["counts"]["successful"] == 1

    async def test_broadcast_to_multiple_clients(self, connection_manager):
        """Test that broadcasts reach all connected clients."""
        clients = [AsyncMock(spec=WebSocket) for _ in range(3)]
        for ws in clients:
            await connection_manager.connect(ws)

        await connection_manager.broadcast_drop_update(1, "cleared")

        for ws in clients:
            ws.send_text.assert_called_once()

    async def test_broadcast_with_no_clients(self, connection_manager):
        await connection_manager.broadcast_drop_update(1, "cleared")


@pytest.mark.asyncio
class TestErrorHandling:
    """Test error handling in WebSocket operations."""

    async def test_partial_broadcast_failure(self, connection_manager):
        """Test that one client failure doesn't affect others."""
        ws1 = AsyncMock(spec=WebSocket)
        ws2 = AsyncMock(spec=WebSocket)
        ws2.send_text.side_effect = RuntimeError("Connection closed")

        await connection_manager.connect(ws1)
        await connection_manager.connect(ws2)

        await connection_manager.broadcast_drop_update(1, "loaded")

        ws1.send_text.assert_called_once()
        assert ws1 in connection_manager.active_connections
        assert ws2 not in connection_manager.active_connections

    async def test_non_json_values_are_stringified(self, connection_manager, mock_websocket):
        from pathlib import Path

        await connection_manager.connect(mock_websocket)

        await connection_manager.broadcast_file_update("a.srt", {"where": Path("/tmp/a.srt")})

        assert sent_message(mock_websocket)["where"] == str(Path("/tmp/a.srt"))


@pytest.mark.asyncio
class TestConcurrency:
    """Test concurrent WebSocket operations."""

    async def test_concurrent_broadcasts(self, connection_manager, mock_websocket):
        await connection_manager.connect(mock_websocket)

        await asyncio.gather(
            *[connection_manager.broadcast_stage_update(f"{i}.srt", "hash", "pending") for i in range(10)]
        )

        assert mock_websocket.send_text.call_count == 10
