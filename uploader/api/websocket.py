"""WebSocket connection manager for real-time pipeline updates."""

import asyncio
import json
import logging
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manages WebSocket connections for broadcasting updates."""

    def __init__(self) -> None:
        self.active_connections: list[WebSocket] = []
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        """Accept a new WebSocket connection."""
        await websocket.accept()
        async with self._lock:
            self.active_connections.append(websocket)
        logger.info(f"Client connected. Total connections: {len(self.active_connections)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        """Remove a WebSocket connection."""
        async with self._lock:
            if websocket in self.active_connections:
                self.active_connections.remove(websocket)
        logger.info(f"Client disconnected. Total connections: {len(self.active_connections)}")

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Broadcast a message to all connected clients."""
        if not self.active_connections:
            return

        json_message = json.dumps(message, default=str)
        disconnected = []

        async with self._lock:
            for connection in self.active_connections:
                try:
                    await connection.send_text(json_message)
                except Exception as e:
                    logger.warning(f"Failed to send message: {e}")
                    disconnected.append(connection)

            for conn in disconnected:
                self.active_connections.remove(conn)

    async def broadcast_drop_update(
        self,
        generation: int,
        status: str,
        videos: int | None = None,
        subtitles: int | None = None,
        groups: int | None = None,
        orphans: int | None = None,
    ) -> None:
        """Broadcast a drop lifecycle event ("loaded", "cleared", "idle").

        Only includes counts when provided, so the frontend merge does
        not overwrite existing values with null.
        """
        data: dict = {"type": "drop_update", "generation": generation, "status": status}
        if videos is not None:
            data["videos"] = videos
        if subtitles is not None:
            data["subtitles"] = subtitles
        if groups is not None:
            data["groups"] = groups
        if orphans is not None:
            data["orphans"] = orphans
        await self.broadcast(data)

    async def broadcast_stage_update(
        self,
        path: str,
        stage: str,
        state: str,
        attempts: int | None = None,
        error: dict | None = None,
        manual_override: bool | None = None,
    ) -> None:
        """Broadcast one (file, stage) state change."""
        data: dict = {"type": "stage_update", "path": path, "stage": stage, "state": state}
        if attempts is not None:
            data["attempts"] = attempts
        if error is not None:
            data["error"] = error
        if manual_override is not None:
            data["manual_override"] = manual_override
        await self.broadcast(data)

    async def broadcast_file_update(self, path: str, fields: dict[str, Any]) -> None:
        """Broadcast enriched attributes of one file (identity, language...)."""
        await self.broadcast({"type": "file_update", "path": path, **fields})

    async def broadcast_upload_progress(
        self,
        processed: int,
        total: int,
        current: str | None = None,
        status: str | None = None,
        counts: dict[str, int] | None = None,
    ) -> None:
        """Broadcast upload batch progress."""
        data: dict = {"type": "upload_progress", "processed": processed, "total": total}
        if current is not None:
            data["current"] = current
        if status is not None:
            data["status"] = status
        if counts is not None:
            data["counts"] = counts
        await self.broadcast(data)


# Singleton instance
manager = ConnectionManager()
