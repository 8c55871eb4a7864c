"""Sync orchestration between the remote store, the index and sync state."""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator

from s3rag.core.logging import Logger
from s3rag.modules.remote import RemoteDocument, RemoteDocumentStore
from s3rag.modules.vdb.chunker import TextChunker
from s3rag.modules.vdb.index import ChunkInput, VectorIndex

from .detector import detect_changes
from .models import SyncMetrics, SyncMode, SyncRecord, SyncState, SyncStatus
from .state import SyncStateStore

__all__ = [
    "EmptyDocumentError",
    "SyncInProgressError",
    "SyncOrchestrator",
    "SyncServiceError",
]


class SyncServiceError(RuntimeError):
    """Base error raised by :class:`SyncOrchestrator`."""


class SyncInProgressError(SyncServiceError):
    """Raised when a sync is requested while another one is running."""


class EmptyDocumentError(SyncServiceError):
    """Raised when a document produces no chunks."""


def _default_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncOrchestrator:
    """Run full and incremental syncs and answer sync-state queries.

    Only one run may be in flight; a concurrent request is rejected with
    :class:`SyncInProgressError`. Readers holding :meth:`index_lock` delay a
    run but never cause a rejection. Documents are processed one at a time in
    listing order, and a failure in one document never stops the others.
    """

    def __init__(
        self,
        *,
        store: RemoteDocumentStore,
        index: VectorIndex,
        chunker: TextChunker,
        state_store: SyncStateStore,
        logger: Logger,
        now: Callable[[], datetime] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._index = index
        self._chunker = chunker
        self._state_store = state_store
        self._logger = logger
        self._now = now or _default_now
        self._clock = clock or time.monotonic
        self._lock = threading.RLock()
        self._run_lock = threading.Lock()
        self._state: SyncState = SyncState()

    @property
    def state(self) -> SyncState:
        return self._state

    @contextmanager
    def index_lock(self) -> Iterator[None]:
        """Hold the lock shared with sync runs; readers wait behind a sync."""

        with self._lock:
            yield

    def load_state(self) -> SyncState:
        with self._lock:
            self._state = self._state_store.load()
            return self._state

    # ------------------------------------------------------------------#
    # Sync
    # ------------------------------------------------------------------#
    def perform_sync(self, mode: SyncMode = SyncMode.INCREMENTAL) -> SyncMetrics:
        """Run one sync and return its metrics.

        Raises:
            SyncInProgressError: If another run holds the lock.
            RemoteListError: If the remote listing fails; nothing is changed.
        """

        if not self._run_lock.acquire(blocking=False):
            raise SyncInProgressError("A sync is already in progress")
        try:
            with self._lock:
                return self._run(SyncMode(mode))
        finally:
            self._run_lock.release()

    def _run(self, mode: SyncMode) -> SyncMetrics:
        metrics = SyncMetrics(started_at=self._now())
        started = self._clock()
        self._logger.info("sync-start", mode=mode.value)

        documents = list(self._store.list_documents())
        metrics.documents_scanned = len(documents)

        if mode is SyncMode.FULL:
            self._run_full(documents, metrics)
        else:
            self._run_incremental(documents, metrics)

        self._state.last_sync_date = self._now()
        self._persist()

        metrics.duration = self._clock() - started
        log = self._logger.info if metrics.success else self._logger.warning
        log(
            "sync-complete",
            mode=mode.value,
            duration=round(metrics.duration, 3),
            scanned=metrics.documents_scanned,
            added=metrics.documents_added,
            modified=metrics.documents_modified,
            deleted=metrics.documents_deleted,
            unchanged=metrics.documents_unchanged,
            errors=len(metrics.errors),
        )
        return metrics

    def _run_full(
        self,
        documents: list[RemoteDocument],
        metrics: SyncMetrics,
    ) -> None:
        self._index.clear_all()
        self._state.documents = {}
        for document in documents:
            try:
                self._index_document(document)
            except Exception as exc:
                self._record_failure(metrics, document.key, "add", exc)
                continue
            metrics.documents_added += 1

    def _run_incremental(
        self,
        documents: list[RemoteDocument],
        metrics: SyncMetrics,
    ) -> None:
        self._prune_untracked()
        changes = detect_changes(documents, self._state.documents)
        metrics.documents_unchanged = len(changes.unchanged)
        self._logger.info("sync-changes-detected", **changes.counts())

        for key in changes.deleted:
            try:
                self._index.remove_by_key(key)
            except Exception as exc:
                self._record_failure(metrics, key, "delete", exc)
                continue
            self._forget(key)
            metrics.documents_deleted += 1

        for document in changes.modified:
            try:
                self._index_document(document)
            except Exception as exc:
                self._record_failure(metrics, document.key, "modify", exc)
                continue
            metrics.documents_modified += 1

        for document in changes.new:
            try:
                self._index_document(document)
            except Exception as exc:
                self._record_failure(metrics, document.key, "add", exc)
                continue
            metrics.documents_added += 1

    def _prune_untracked(self) -> None:
        # A snapshot can outlive the state that listed its keys.
        for key in self._index.keys():
            if key in self._state.documents:
                continue
            removed = self._index.remove_by_key(key)
            self._logger.warning("sync-untracked-pruned", key=key, chunks=removed)

    def _forget(self, key: str) -> None:
        documents = dict(self._state.documents)
        documents.pop(key, None)
        self._state.documents = documents

    def _index_document(self, document: RemoteDocument) -> int:
        content = self._store.fetch_content(document.key)
        pieces = list(self._chunker.split(content))
        if not pieces:
            raise EmptyDocumentError(f"{document.key} has no indexable content")

        source_uri = self._store.source_uri(document.key)
        total = len(pieces)
        if self._index.has_document(document.key):
            self._index.remove_by_key(document.key)
        self._index.add_documents(
            ChunkInput(
                text=text,
                key=document.key,
                etag=document.etag,
                chunk_index=position,
                total_chunks=total,
                source_uri=source_uri,
            )
            for position, text in enumerate(pieces)
        )
        documents = dict(self._state.documents)
        documents[document.key] = SyncRecord(
            key=document.key,
            etag=document.etag,
            last_modified=document.last_modified,
            chunk_count=total,
            status=SyncStatus.INDEXED,
        )
        self._state.documents = documents
        self._logger.debug("sync-document-indexed", key=document.key, chunks=total)
        return total

    def _record_failure(
        self,
        metrics: SyncMetrics,
        key: str,
        action: str,
        exc: Exception,
    ) -> None:
        metrics.record_error(key, exc)
        self._logger.error(
            "sync-document-failed",
            key=key,
            action=action,
            error=str(exc),
            error_type=exc.__class__.__name__,
        )

    def _persist(self) -> None:
        try:
            self._state_store.save(self._state)
        except OSError as exc:
            self._logger.error(
                "sync-state-save-failed",
                path=str(self._state_store.path),
                error=str(exc),
            )
        try:
            self._index.save()
        except Exception as exc:
            self._logger.error(
                "sync-index-save-failed",
                store_path=str(self._index.store_path),
                error=str(exc),
            )

    # ------------------------------------------------------------------#
    # Queries
    # ------------------------------------------------------------------#
    def get_indexed_files(self) -> list[dict[str, Any]]:
        return [
            {
                "key": record.key,
                "chunk_count": record.chunk_count,
                "last_modified": record.last_modified,
                "etag": record.etag,
            }
            for record in self._state.documents.values()
            if record.status is SyncStatus.INDEXED
        ]

    def get_document_sync_info(self, key: str) -> SyncRecord | None:
        return self._state.documents.get(key)

    def get_stats(self) -> dict[str, Any]:
        records = list(self._state.documents.values())
        return {
            "last_sync_date": self._state.last_sync_date,
            "total_documents": len(records),
            "indexed": sum(
                1 for record in records if record.status is SyncStatus.INDEXED
            ),
            "errors": sum(
                1 for record in records if record.status is SyncStatus.ERROR
            ),
        }
