"""Upload candidates and their per-item outcomes."""

from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel

from uploader.core.errors import ValidationError
from uploader.models.files import FileRecord
from uploader.models.identity import MovieIdentity, VideoMetadata


class UploadOptions(BaseModel):
    """User-editable options sent with a subtitle upload."""

    comment: str = ""
    translator: str = ""
    release_name: str | None = None
    movie_aka: str = ""
    hearing_impaired: bool = False
    high_definition: bool | None = None  # None: derive from video metadata
    automatic_translation: bool = False
    foreign_parts_only: bool = False
    language: str | None = None  # overrides the detected language


@dataclass(frozen=True)
class UploadCandidate:
    """A subtitle ready for submission, frozen for one upload attempt."""

    subtitle: FileRecord
    identity: MovieIdentity
    language: str
    options: UploadOptions = field(default_factory=UploadOptions)
    video: FileRecord | None = None

    @classmethod
    def build(
        cls,
        subtitle: FileRecord,
        identity: MovieIdentity | None,
        language: str | None,
        options: UploadOptions | None = None,
        video: FileRecord | None = None,
    ) -> "UploadCandidate":
        """Validate inputs and build a candidate.

        Raises:
            ValidationError: identity or language is missing.
        """
        options = options or UploadOptions()
        language = options.language or language
        if identity is None:
            raise ValidationError(f"{subtitle.full_path}: no movie identity")
        if not language:
            raise ValidationError(f"{subtitle.full_path}: no subtitle language")
        if subtitle.removal_flag:
            raise ValidationError(f"{subtitle.full_path}: not a subtitle file")
        return cls(
            subtitle=subtitle,
            identity=identity,
            language=language,
            options=options,
            video=video,
        )

    @property
    def group_key(self) -> tuple[str | None, str]:
        return (self.video.full_path if self.video else None, self.identity.upload_imdb_id)

    @property
    def video_metadata(self) -> VideoMetadata | None:
        return self.video.metadata if self.video else None


class UploadStatus(str, Enum):
    """Outcome of one candidate."""

    SUCCESS = "success"  # new record created
    EXISTS = "exists"  # already in the database
    FAILED = "failed"  # rejected or errored


@dataclass
class UploadOutcome:
    """Per-candidate result."""

    subtitle_path: str
    status: UploadStatus
    message: str = ""
    url: str | None = None
    error_kind: str | None = None

    def to_dict(self) -> dict:
        return {
            "subtitle_path": self.subtitle_path,
            "status": self.status.value,
            "message": self.message,
            "url": self.url,
            "error_kind": self.error_kind,
        }


@dataclass
class UploadReport:
    """Best-effort batch result: every candidate has exactly one outcome."""

    success: list[UploadOutcome] = field(default_factory=list)
    failures: list[UploadOutcome] = field(default_factory=list)

    def record(self, outcome: UploadOutcome) -> None:
        if outcome.status == UploadStatus.FAILED:
            self.failures.append(outcome)
        else:
            self.success.append(outcome)

    @property
    def counts(self) -> dict[str, int]:
        return {
            "successful": sum(1 for o in self.success if o.status == UploadStatus.SUCCESS),
            "exists": sum(1 for o in self.success if o.status == UploadStatus.EXISTS),
            "failed": len(self.failures),
        }

    @property
    def processed(self) -> int:
        return len(self.success) + len(self.failures)

    def to_dict(self) -> dict:
        return {
            "success": [o.to_dict() for o in self.success],
            "failures": [o.to_dict() for o in self.failures],
            "counts": self.counts,
        }
