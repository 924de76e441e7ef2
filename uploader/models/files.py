"""Discovered files and the groups the pairing engine builds from them."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Any


class FileKind(str, Enum):
    """What a discovered file is."""

    VIDEO = "video"
    SUBTITLE = "subtitle"
    OTHER = "other"


@dataclass(eq=False)
class FileRecord:
    """One discovered file.

    `full_path` is the path relative to the drop root (POSIX separators)
    and is the unique key. Pipeline stages fill in the enriched attributes
    in place; a record is never copied.
    """

    full_path: str
    size: int
    kind: FileKind
    absolute_path: str | None = None
    extracted_from: str | None = None
    content_hash: str | None = None
    removal_flag: bool = False

    # Enriched by pipeline stages
    metadata: Any = None
    identity: Any = None
    tags: dict | None = None
    language: Any = None
    duplicate: Any = None

    @property
    def name(self) -> str:
        return PurePosixPath(self.full_path).name

    @property
    def directory(self) -> str:
        parent = str(PurePosixPath(self.full_path).parent)
        return "" if parent == "." else parent

    @property
    def stem(self) -> str:
        return PurePosixPath(self.full_path).stem

    @property
    def extension(self) -> str:
        return PurePosixPath(self.full_path).suffix.lower()

    @property
    def identity_key(self) -> tuple[str, int]:
        return (self.full_path, self.size)

    @property
    def is_video(self) -> bool:
        return self.kind == FileKind.VIDEO

    @property
    def is_subtitle(self) -> bool:
        return self.kind == FileKind.SUBTITLE

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FileRecord):
            return NotImplemented
        return self.identity_key == other.identity_key

    def __hash__(self) -> int:
        return hash(self.identity_key)

    def to_dict(self) -> dict:
        return {
            "full_path": self.full_path,
            "name": self.name,
            "size": self.size,
            "kind": self.kind.value,
            "extracted_from": self.extracted_from,
            "content_hash": self.content_hash,
            "removal_flag": self.removal_flag,
            "metadata": self.metadata.model_dump() if self.metadata else None,
            "identity": self.identity.model_dump() if self.identity else None,
            "tags": self.tags,
            "language": self.language.model_dump() if self.language else None,
            "duplicate": self.duplicate.model_dump(mode="json") if self.duplicate else None,
        }


@dataclass
class PairedGroup:
    """A video and the subtitles matched to it."""

    video: FileRecord
    subtitles: list[FileRecord] = field(default_factory=list)

    @property
    def key(self) -> str:
        return self.video.full_path

    def to_dict(self) -> dict:
        return {
            "video": self.video.full_path,
            "subtitles": [s.full_path for s in self.subtitles],
        }


@dataclass
class PairingResult:
    """Output of one pairing pass: groups plus unmatched subtitles."""

    groups: list[PairedGroup] = field(default_factory=list)
    orphans: list[FileRecord] = field(default_factory=list)

    def group_for(self, subtitle: FileRecord) -> PairedGroup | None:
        for group in self.groups:
            if subtitle in group.subtitles:
                return group
        return None

    def to_dict(self) -> dict:
        return {
            "groups": [g.to_dict() for g in self.groups],
            "orphans": [o.full_path for o in self.orphans],
        }
