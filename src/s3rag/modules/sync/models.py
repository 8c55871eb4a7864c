"""Typed records shared by change detection, state persistence and sync."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from s3rag.modules.remote import RemoteDocument

__all__ = [
    "DetectedChanges",
    "STATE_VERSION",
    "SyncError",
    "SyncMetrics",
    "SyncMode",
    "SyncRecord",
    "SyncState",
    "SyncStatus",
]

STATE_VERSION = "1.0"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncMode(StrEnum):
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncStatus(StrEnum):
    INDEXED = "indexed"
    DELETED = "deleted"
    ERROR = "error"


class SyncRecord(BaseModel):
    """What the last successful sync knows about one document."""

    key: str
    etag: str
    last_modified: datetime
    chunk_count: int = Field(ge=0)
    status: SyncStatus = SyncStatus.INDEXED

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "frozen": True,
    }


class SyncState(BaseModel):
    """Persisted sync state; field names on disk are camelCase.

    Example:
        >>> state = SyncState()
        >>> state.version, state.documents
        ('1.0', {})
    """

    last_sync_date: datetime = Field(default_factory=_utcnow)
    documents: dict[str, SyncRecord] = Field(default_factory=dict)
    version: str = STATE_VERSION

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "validate_assignment": True,
    }

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2) + "\n"


@dataclass(frozen=True, slots=True)
class DetectedChanges:
    """Partition of the remote listing against the known state."""

    new: tuple[RemoteDocument, ...] = ()
    modified: tuple[RemoteDocument, ...] = ()
    deleted: tuple[str, ...] = ()
    unchanged: tuple[RemoteDocument, ...] = ()

    @property
    def has_changes(self) -> bool:
        return bool(self.new or self.modified or self.deleted)

    def counts(self) -> dict[str, int]:
        return {
            "new": len(self.new),
            "modified": len(self.modified),
            "deleted": len(self.deleted),
            "unchanged": len(self.unchanged),
        }


@dataclass(frozen=True, slots=True)
class SyncError:
    """A per-document failure captured during a sync run."""

    key: str
    error: str


@dataclass(slots=True)
class SyncMetrics:
    """Counters describing one sync run. ``duration`` is in seconds."""

    started_at: datetime = field(default_factory=_utcnow)
    duration: float = 0.0
    documents_scanned: int = 0
    documents_added: int = 0
    documents_modified: int = 0
    documents_deleted: int = 0
    documents_unchanged: int = 0
    errors: list[SyncError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def record_error(self, key: str, error: BaseException | str) -> None:
        self.errors.append(SyncError(key=key, error=str(error)))

    def to_mapping(self) -> dict[str, Any]:
        """Return a JSON-ready mapping.

        Example:
            >>> SyncMetrics(duration=1.5).to_mapping()["documents_added"]
            0
        """

        return {
            "started_at": self.started_at.isoformat(),
            "duration": round(self.duration, 3),
            "documents_scanned": self.documents_scanned,
            "documents_added": self.documents_added,
            "documents_modified": self.documents_modified,
            "documents_deleted": self.documents_deleted,
            "documents_unchanged": self.documents_unchanged,
            "errors": [
                {"key": item.key, "error": item.error} for item in self.errors
            ],
            "success": self.success,
        }
