"""Pydantic models and value objects describing backup payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ARCHIVE_VERSION = "1.0.0"


class MediaStatus(str, Enum):
    """Progress of a library entry, shared by every media kind."""

    BACKLOG = "BACKLOG"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    DROPPED = "DROPPED"

    @classmethod
    def coerce(cls, value: object) -> "MediaStatus":
        """Accept current values plus the per-kind labels older builds stored."""

        if isinstance(value, cls):
            return value
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"Invalid status: {value!r}")
        normalized = value.strip().upper().replace(" ", "_")
        normalized = _LEGACY_STATUSES.get(normalized, normalized)
        return cls(normalized)


_LEGACY_STATUSES = {
    "WANT_TO_PLAY": "BACKLOG",
    "WANT_TO_WATCH": "BACKLOG",
    "WANT_TO_READ": "BACKLOG",
    "PLAYING": "ACTIVE",
    "WATCHING": "ACTIVE",
    "READING": "ACTIVE",
}


class QuickReview(str, Enum):
    POSITIVE = "POSITIVE"
    NEUTRAL = "NEUTRAL"
    NEGATIVE = "NEGATIVE"

    @classmethod
    def coerce(cls, value: object) -> "QuickReview | None":
        if value is None or value == "":
            return None
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Invalid quick review: {value!r}")
        return cls(value.strip().upper())


@dataclass(slots=True)
class CachedImage:
    """A cached image file as exchanged with the image cache."""

    filename: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


class ArchiveManifest(BaseModel):
    """Metadata block written to ``database/dump.json``."""

    model_config = ConfigDict(populate_by_name=True)

    export_date: datetime | None = Field(
        default=None, validation_alias=AliasChoices("exportDate", "export_date")
    )
    version: str = Field(
        default=ARCHIVE_VERSION,
        validation_alias=AliasChoices("version", "schemaVersion"),
    )
    user_id: int | str | None = Field(
        default=None, validation_alias=AliasChoices("userId", "user_id")
    )
    counts: dict[str, int] = Field(default_factory=dict)

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> "ArchiveManifest":
        """Build a manifest from the flat ``metadata`` object of a dump."""

        counts = {
            _count_key(key): value
            for key, value in data.items()
            if key.startswith("total") and isinstance(value, int)
        }
        return cls.model_validate({**data, "counts": counts})

    def to_document(self) -> dict[str, Any]:
        document: dict[str, Any] = {
            "exportDate": (self.export_date or datetime.utcnow()).isoformat(),
            "version": self.version,
            "userId": self.user_id,
        }
        for key, value in self.counts.items():
            document[f"total{key[:1].upper()}{key[1:]}"] = value
        return document

    @property
    def major_version(self) -> int:
        head = self.version.strip().split(".", 1)[0]
        try:
            return int(head)
        except ValueError as exc:
            raise ValueError(f"Unrecognised archive version {self.version!r}") from exc


def _count_key(total_key: str) -> str:
    rest = total_key[len("total"):]
    return rest[:1].lower() + rest[1:]


@dataclass(slots=True)
class LibraryPair:
    """A library entry together with the catalog item it references."""

    entry: dict[str, Any]
    catalog_item: dict[str, Any]


@dataclass
class ExportBundle:
    """Plain data snapshot of one user's backup, ready for encoding."""

    manifest: ArchiveManifest
    profile: dict[str, Any]
    api_credentials: list[dict[str, Any]]
    library: dict[str, list[LibraryPair]]
    images: list[CachedImage] = field(default_factory=list)


@dataclass
class DecodedArchive:
    """Documents and images extracted from an archive on import."""

    user_data: dict[str, Any]
    db_dump: dict[str, Any]
    images: list[CachedImage] = field(default_factory=list)


class ImportSummary(BaseModel):
    """Row counts actually written by an import."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    profile: bool = False
    api_credentials: int = 0
    games: int = 0
    movies: int = 0
    shows: int = 0
    books: int = 0
    user_games: int = 0
    user_movies: int = 0
    user_shows: int = 0
    user_books: int = 0
    images: int = 0
    skipped: int = 0


class ImportResult(BaseModel):
    success: bool
    message: str
    imported: ImportSummary
    warnings: list[str] = Field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
