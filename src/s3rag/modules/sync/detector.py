"""Etag-based change detection between the remote listing and sync state."""

from __future__ import annotations

from typing import Iterable, Mapping

from s3rag.modules.remote import RemoteDocument

from .models import DetectedChanges, SyncRecord

__all__ = ["detect_changes"]


def detect_changes(
    remote: Iterable[RemoteDocument],
    known: Mapping[str, SyncRecord],
) -> DetectedChanges:
    """Classify every key as new, modified, deleted or unchanged.

    The etag is the only change signal; sizes and timestamps are ignored.
    ``new``, ``modified`` and ``unchanged`` follow the remote listing order
    and ``deleted`` follows the iteration order of ``known``. If the listing
    repeats a key, the first occurrence wins.

    Example:
        >>> from datetime import datetime, timezone
        >>> ts = datetime(2024, 1, 1, tzinfo=timezone.utc)
        >>> known = {"b.md": SyncRecord(key="b.md", etag="1", last_modified=ts, chunk_count=1)}
        >>> changes = detect_changes([RemoteDocument("a.md", "9", ts, 1)], known)
        >>> [d.key for d in changes.new], changes.deleted
        (['a.md'], ('b.md',))
    """

    new: list[RemoteDocument] = []
    modified: list[RemoteDocument] = []
    unchanged: list[RemoteDocument] = []
    seen: set[str] = set()

    for document in remote:
        if document.key in seen:
            continue
        seen.add(document.key)
        record = known.get(document.key)
        if record is None:
            new.append(document)
        elif record.etag != document.etag:
            modified.append(document)
        else:
            unchanged.append(document)

    deleted = tuple(key for key in known if key not in seen)
    return DetectedChanges(
        new=tuple(new),
        modified=tuple(modified),
        deleted=deleted,
        unchanged=tuple(unchanged),
    )
