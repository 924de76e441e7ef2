"""Domain-specific event broadcasting layer.

Provides semantic event methods that wrap WebSocket broadcasting, so the
pipeline and upload coordinator never build wire messages themselves.
"""

from typing import TYPE_CHECKING

from uploader.models.files import FileRecord, PairingResult
from uploader.models.stages import StageName, StageResult, StageState
from uploader.models.upload import UploadOutcome

if TYPE_CHECKING:
    from uploader.api.websocket import ConnectionManager


class EventBroadcaster:
    """Domain-specific WebSocket event broadcasting."""

    def __init__(self, ws_manager: "ConnectionManager"):
        self._ws = ws_manager

    # --- Drop Events ---

    async def broadcast_drop_loaded(self, generation: int, files: list[FileRecord], pairing: PairingResult):
        """Broadcast that a new file set was paired and scheduled."""
        await self._ws.broadcast_drop_update(
            generation,
            "loaded",
            videos=sum(1 for f in files if f.is_video),
            subtitles=sum(1 for f in files if f.is_subtitle),
            groups=len(pairing.groups),
            orphans=len(pairing.orphans),
        )

    async def broadcast_drop_cleared(self, generation: int):
        """Broadcast that the file set was discarded."""
        await self._ws.broadcast_drop_update(generation, "cleared")

    async def broadcast_drop_idle(self, generation: int):
        """Broadcast that every stage of the drop has settled."""
        await self._ws.broadcast_drop_update(generation, "idle")

    # --- Stage Events ---

    async def broadcast_stage_changed(self, path: str, stage: StageName, result: StageResult):
        """Broadcast a (file, stage) transition."""
        manual = None
        if result.state == StageState.FAILED and stage == StageName.MOVIE_IDENTIFICATION:
            manual = True
        await self._ws.broadcast_stage_update(
            path,
            stage.value,
            result.state.value,
            attempts=result.attempts or None,
            error=result.error,
            manual_override=manual,
        )

    # --- File Events ---

    async def broadcast_file_enriched(self, record: FileRecord, *fields: str):
        """Broadcast selected enriched attributes of a file."""
        data = record.to_dict()
        await self._ws.broadcast_file_update(record.full_path, {f: data[f] for f in fields})

    # --- Upload Events ---

    async def broadcast_upload_started(self, total: int):
        await self._ws.broadcast_upload_progress(0, total, status="started")

    async def broadcast_upload_progress(
        self, processed: int, total: int, outcome: UploadOutcome, counts: dict[str, int]
    ):
        """Broadcast one finished upload candidate."""
        await self._ws.broadcast_upload_progress(
            processed,
            total,
            current=outcome.subtitle_path,
            status=outcome.status.value,
            counts=counts,
        )

    async def broadcast_upload_completed(self, total: int, counts: dict[str, int]):
        await self._ws.broadcast_upload_progress(total, total, status="completed", counts=counts)
