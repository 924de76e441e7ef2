"""Pipeline stages and their per-file results."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class StageName(str, Enum):
    """Stages of the identification pipeline."""

    HASH = "hash"  # video only
    METADATA_EXTRACTION = "metadata_extraction"  # video only
    MOVIE_IDENTIFICATION = "movie_identification"
    TAG_EXTRACTION = "tag_extraction"
    LANGUAGE_DETECTION = "language_detection"  # subtitle only
    DUPLICATE_CHECK = "duplicate_check"  # subtitle only


VIDEO_STAGES = (
    StageName.HASH,
    StageName.METADATA_EXTRACTION,
    StageName.MOVIE_IDENTIFICATION,
    StageName.TAG_EXTRACTION,
)

SUBTITLE_STAGES = (
    StageName.MOVIE_IDENTIFICATION,
    StageName.TAG_EXTRACTION,
    StageName.LANGUAGE_DETECTION,
    StageName.DUPLICATE_CHECK,
)


class StageState(str, Enum):
    """State of one (file, stage) pair."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class StageResult:
    """Tagged result for one (file, stage) pair.

    `value` is set only when complete, `error` only when failed.
    """

    state: StageState
    value: Any = None
    error: dict | None = None
    attempts: int = 0
    updated_at: float = field(default_factory=time.time)

    @classmethod
    def pending(cls) -> "StageResult":
        return cls(StageState.PENDING)

    @classmethod
    def processing(cls, attempts: int = 0) -> "StageResult":
        return cls(StageState.PROCESSING, attempts=attempts)

    @classmethod
    def complete(cls, value: Any = None, attempts: int = 0) -> "StageResult":
        return cls(StageState.COMPLETE, value=value, attempts=attempts)

    @classmethod
    def failed(cls, error: dict, attempts: int = 0) -> "StageResult":
        return cls(StageState.FAILED, error=error, attempts=attempts)

    @property
    def is_terminal(self) -> bool:
        return self.state in (StageState.COMPLETE, StageState.FAILED)

    def to_dict(self) -> dict:
        data: dict = {"state": self.state.value, "attempts": self.attempts}
        if self.error is not None:
            data["error"] = self.error
        return data
