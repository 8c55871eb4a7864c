"""Remote document records and the store boundary the sync engine consumes."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, Sequence, runtime_checkable

__all__ = [
    "DocumentNotFoundError",
    "RemoteDocument",
    "RemoteDocumentStore",
    "RemoteListError",
    "RemoteStoreError",
]


class RemoteStoreError(RuntimeError):
    """Raised when the remote store cannot serve a request."""

    def __init__(self, message: str, *, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class RemoteListError(RemoteStoreError):
    """Raised when the document listing itself fails."""


class DocumentNotFoundError(RemoteStoreError):
    """Raised when ``key`` does not exist in the remote store."""


@dataclass(frozen=True, slots=True)
class RemoteDocument:
    """One object in the remote store.

    ``etag`` is opaque: equal etags mean equal content. ``content`` stays
    ``None`` in listings; text is read through
    :meth:`RemoteDocumentStore.fetch_content`.

    Example:
        >>> from datetime import datetime, timezone
        >>> doc = RemoteDocument("a.md", "e1", datetime(2024, 1, 1, tzinfo=timezone.utc), 3)
        >>> doc.content is None
        True
    """

    key: str
    etag: str
    last_modified: datetime
    size: int
    content: str | None = None


@runtime_checkable
class RemoteDocumentStore(Protocol):
    """Read-only view over the bucket holding the documents."""

    def list_documents(self) -> Sequence[RemoteDocument]:
        """Return every document, without content.

        Raises:
            RemoteListError: If the listing cannot be produced.
        """

    def fetch_content(self, key: str) -> str:
        """Return the UTF-8 text of ``key``.

        Raises:
            DocumentNotFoundError: If ``key`` no longer exists.
            RemoteStoreError: On any other failure.
        """

    def get_metadata(self, key: str) -> RemoteDocument:
        """Return metadata for ``key`` without its content."""

    def source_uri(self, key: str) -> str:
        """Return the canonical URI recorded on chunks of ``key``."""
