"""Application service wiring the remote store, index and sync engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from s3rag.core.config import AppConfig
from s3rag.core.logging import Logger, get_logger
from s3rag.modules.remote import (
    DocumentNotFoundError,
    RemoteDocument,
    RemoteDocumentStore,
    S3DocumentStore,
)
from s3rag.modules.sync import (
    SyncMetrics,
    SyncMode,
    SyncRecord,
    SyncStateStore,
)
from s3rag.modules.sync.service import SyncOrchestrator
from s3rag.modules.vdb.chunker import TextChunker
from s3rag.modules.vdb.embeddings import Embedder, build_embedder
from s3rag.modules.vdb.index import SearchHit, VectorIndex
from s3rag.modules.vdb.providers import ProviderRegistry

__all__ = [
    "DocumentIndexService",
    "FullDocument",
    "StaleDocumentError",
]


class StaleDocumentError(DocumentNotFoundError):
    """Raised when an indexed document no longer exists remotely.

    The index may still return chunks for it until the next sync removes
    them, so callers should recommend a resync.
    """


@dataclass(frozen=True, slots=True)
class FullDocument:
    key: str
    content: str
    metadata: RemoteDocument
    source_uri: str


class DocumentIndexService:
    """Facade over one configured document index."""

    def __init__(
        self,
        *,
        store: RemoteDocumentStore,
        index: VectorIndex,
        orchestrator: SyncOrchestrator,
        logger: Logger,
    ) -> None:
        self.store = store
        self.index = index
        self.orchestrator = orchestrator
        self._logger = logger
        self._initialized = False

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        logger: Logger | None = None,
        store: RemoteDocumentStore | None = None,
        embedder: Embedder | None = None,
        registry: ProviderRegistry | None = None,
    ) -> "DocumentIndexService":
        """Build every component from ``config``.

        ``store`` and ``embedder`` replace the S3 store and the resolved
        embedding provider when given.
        """

        log = logger or get_logger(__name__)
        remote = store or S3DocumentStore(
            settings=config.s3,
            logger=log.bind(component="s3"),
        )
        resolved_embedder = embedder or build_embedder(
            config.embeddings,
            logger=log.bind(component="embeddings"),
            max_batch_size=config.rag.embed_batch_size,
            registry=registry,
        )
        index = VectorIndex(
            store_path=config.vector_store_path,
            embedder=resolved_embedder,
            settings=config.rag,
            logger=log.bind(component="vector-index"),
            index_type=config.vector_store.index_type,
            lock_timeout=config.vector_store.lock_timeout,
        )
        chunker = TextChunker(
            chunk_size=config.rag.chunk_size,
            chunk_overlap=config.rag.chunk_overlap,
        )
        orchestrator = SyncOrchestrator(
            store=remote,
            index=index,
            chunker=chunker,
            state_store=SyncStateStore(
                config.state_file_path,
                logger=log.bind(component="sync-state"),
            ),
            logger=log.bind(component="sync"),
        )
        return cls(
            store=remote,
            index=index,
            orchestrator=orchestrator,
            logger=log,
        )

    def initialize(self) -> None:
        """Load the index snapshot and sync state; safe to call repeatedly."""

        if self._initialized:
            return
        with self.orchestrator.index_lock():
            self.index.initialize()
            self.orchestrator.load_state()
        self._initialized = True
        self._logger.info("service-initialized", **self.index.get_stats())

    def perform_sync(self, mode: SyncMode = SyncMode.INCREMENTAL) -> SyncMetrics:
        self.initialize()
        return self.orchestrator.perform_sync(mode)

    def similarity_search(self, query: str, k: int | None = None) -> list[SearchHit]:
        self.initialize()
        with self.orchestrator.index_lock():
            return self.index.similarity_search(query, k)

    def get_indexed_files(self) -> list[dict[str, Any]]:
        self.initialize()
        return self.orchestrator.get_indexed_files()

    def get_document_sync_info(self, key: str) -> SyncRecord | None:
        self.initialize()
        return self.orchestrator.get_document_sync_info(key)

    def get_stats(self) -> dict[str, Any]:
        self.initialize()
        with self.orchestrator.index_lock():
            index_stats = self.index.get_stats()
        return {**self.orchestrator.get_stats(), "index": index_stats}

    def get_full_document(self, key: str) -> FullDocument:
        """Fetch the complete text and metadata of ``key``.

        Raises:
            StaleDocumentError: If ``key`` is indexed but gone remotely.
            DocumentNotFoundError: If ``key`` is unknown everywhere.
        """

        self.initialize()
        try:
            metadata = self.store.get_metadata(key)
            content = self.store.fetch_content(key)
        except DocumentNotFoundError as exc:
            if self.orchestrator.get_document_sync_info(key) is not None:
                self._logger.warning("document-stale", key=key)
                raise StaleDocumentError(
                    f"{key} is indexed but no longer exists in the remote "
                    "store; run a sync to refresh the index",
                    key=key,
                ) from exc
            raise
        return FullDocument(
            key=key,
            content=content,
            metadata=metadata,
            source_uri=self.store.source_uri(key),
        )
