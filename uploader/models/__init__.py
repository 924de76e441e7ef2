"""Data models for the subtitle uploader."""

from uploader.models.cache_entry import CacheEntry
from uploader.models.files import FileKind, FileRecord, PairedGroup, PairingResult
from uploader.models.identity import (
    DuplicateStatus,
    LanguageResult,
    MovieIdentity,
    VideoMetadata,
)
from uploader.models.stages import StageName, StageResult, StageState
from uploader.models.upload import (
    UploadCandidate,
    UploadOptions,
    UploadOutcome,
    UploadReport,
    UploadStatus,
)

__all__ = [
    "CacheEntry",
    "DuplicateStatus",
    "FileKind",
    "FileRecord",
    "LanguageResult",
    "MovieIdentity",
    "PairedGroup",
    "PairingResult",
    "StageName",
    "StageResult",
    "StageState",
    "UploadCandidate",
    "UploadOptions",
    "UploadOutcome",
    "UploadReport",
    "UploadStatus",
    "VideoMetadata",
]
