"""In-memory vector index over document chunks with on-disk snapshots.

The index owns three pieces of state that always move together:

* the FAISS structure (``IDMap2`` over normalized vectors, inner product),
* the chunk records keyed by chunk id, including their stored vectors,
* the key index mapping each document key to its chunk ids in insert order.

Snapshots live under ``store_path``::

    index.faiss             serialized FAISS structure
    index.faiss.meta.json   sidecar (provider, model, dim, checksum, ...)
    chunks.json             chunk metadata used to rebuild the key index
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import numpy as np

from s3rag.core.atomic import atomic_write_text
from s3rag.core.config import RagSettings
from s3rag.core.logging import Logger
from s3rag.modules.vdb.embeddings import Embedder
from s3rag.modules.vdb.faiss_index import (
    FaissIndex,
    FaissIndexError,
    index_writer_lock,
    label_for_uuid,
    load_index_artifacts,
    persist_index_artifacts,
)

__all__ = [
    "CHUNKS_FILENAME",
    "CHUNKS_VERSION",
    "INDEX_FILENAME",
    "Chunk",
    "ChunkInput",
    "SearchHit",
    "VectorIndex",
    "VectorIndexError",
]

INDEX_FILENAME = "index.faiss"
CHUNKS_FILENAME = "chunks.json"
CHUNKS_VERSION = 1


class VectorIndexError(RuntimeError):
    """Raised when the index cannot be mutated or its snapshot is invalid."""


@dataclass(frozen=True, slots=True)
class ChunkInput:
    """Caller-supplied text plus the metadata that travels with it."""

    text: str
    key: str
    etag: str
    chunk_index: int
    total_chunks: int
    source_uri: str


@dataclass(frozen=True, slots=True)
class Chunk:
    """One embedded slice of a document."""

    id: str
    key: str
    etag: str
    chunk_index: int
    total_chunks: int
    source_uri: str
    indexed_at: datetime
    text: str
    vector: tuple[float, ...] = field(repr=False, compare=False)

    @property
    def label(self) -> int:
        return label_for_uuid(self.id)

    def to_mapping(self) -> dict[str, Any]:
        """Return the persisted metadata; the vector stays in FAISS."""

        return {
            "id": self.id,
            "key": self.key,
            "etag": self.etag,
            "chunk_index": self.chunk_index,
            "total_chunks": self.total_chunks,
            "source_uri": self.source_uri,
            "indexed_at": _format_timestamp(self.indexed_at),
            "text": self.text,
        }

    @classmethod
    def from_mapping(
        cls,
        payload: Mapping[str, Any],
        *,
        vector: Sequence[float],
    ) -> "Chunk":
        return cls(
            id=str(uuid.UUID(str(payload["id"]))),
            key=str(payload["key"]),
            etag=str(payload["etag"]),
            chunk_index=int(payload["chunk_index"]),
            total_chunks=int(payload["total_chunks"]),
            source_uri=str(payload["source_uri"]),
            indexed_at=_parse_timestamp(str(payload["indexed_at"])),
            text=str(payload["text"]),
            vector=tuple(float(value) for value in vector),
        )


@dataclass(frozen=True, slots=True)
class SearchHit:
    """A chunk returned by :meth:`VectorIndex.similarity_search`."""

    chunk: Chunk
    score: float

    @property
    def distance(self) -> float:
        return 1.0 - self.score


def _normalize(vectors: Sequence[Sequence[float]]) -> np.ndarray:
    """L2-normalize rows so inner product equals cosine similarity."""

    matrix = np.asarray(vectors, dtype="float32")
    if matrix.ndim != 2:
        raise VectorIndexError("Embeddings must form a 2-D matrix")
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0.0] = 1.0
    return matrix / norms


def _format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_timestamp(value: str) -> datetime:
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


class VectorIndex:
    """Vector store keyed by document, persisted as a FAISS snapshot."""

    def __init__(
        self,
        *,
        store_path: Path,
        embedder: Embedder,
        settings: RagSettings,
        logger: Logger,
        index_type: str = "Flat",
        lock_timeout: float = 30.0,
    ) -> None:
        self.store_path = store_path
        self._embedder = embedder
        self._settings = settings
        self._logger = logger
        self._index_type = index_type
        self._lock_timeout = lock_timeout
        self._faiss: FaissIndex | None = None
        self._chunks: dict[str, Chunk] = {}
        self._key_index: dict[str, list[str]] = {}
        self._labels: dict[int, str] = {}

    @property
    def index_path(self) -> Path:
        return self.store_path / INDEX_FILENAME

    @property
    def chunks_path(self) -> Path:
        return self.store_path / CHUNKS_FILENAME

    @property
    def min_similarity_score(self) -> float:
        return self._settings.min_similarity_score

    @property
    def unique_file_count(self) -> int:
        return len(self._key_index)

    @property
    def total_chunks(self) -> int:
        return len(self._chunks)

    def has_document(self, key: str) -> bool:
        return key in self._key_index

    def chunk_ids_for(self, key: str) -> tuple[str, ...]:
        return tuple(self._key_index.get(key, ()))

    def keys(self) -> tuple[str, ...]:
        return tuple(self._key_index)

    # ------------------------------------------------------------------#
    # Lifecycle
    # ------------------------------------------------------------------#
    def initialize(self) -> None:
        """Load the snapshot if one exists; fall back to an empty index.

        Never raises: a missing or unreadable snapshot leaves the index empty
        and logs why.
        """

        self._reset()
        if not self.index_path.exists() and not self.chunks_path.exists():
            self._logger.info(
                "vector-index-fresh",
                store_path=str(self.store_path),
            )
            return

        try:
            self._load_snapshot()
        except Exception as exc:
            self._reset()
            self._logger.warning(
                "vector-index-load-failed",
                store_path=str(self.store_path),
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return

        self._logger.info(
            "vector-index-loaded",
            store_path=str(self.store_path),
            unique_files=self.unique_file_count,
            total_chunks=self.total_chunks,
        )

    def _reset(self) -> None:
        self._faiss = None
        self._chunks = {}
        self._key_index = {}
        self._labels = {}

    def _load_snapshot(self) -> None:
        faiss_index, sidecar = load_index_artifacts(index_path=self.index_path)
        payload = json.loads(self.chunks_path.read_text(encoding="utf-8"))
        if not isinstance(payload, Mapping):
            raise VectorIndexError("chunks.json must contain an object")
        version = payload.get("version")
        if version != CHUNKS_VERSION:
            raise VectorIndexError(f"Unsupported chunks.json version {version!r}")
        records = payload.get("chunks")
        if not isinstance(records, list):
            raise VectorIndexError("chunks.json is missing the chunk list")
        if len(records) != faiss_index.size:
            raise VectorIndexError(
                f"chunks.json lists {len(records)} chunks but the FAISS index "
                f"holds {faiss_index.size} vectors"
            )

        if (
            sidecar.provider != self._embedder.provider_name
            or sidecar.model_name != self._embedder.model
        ):
            self._logger.warning(
                "vector-index-model-changed",
                snapshot=f"{sidecar.provider}:{sidecar.model_name}",
                configured=f"{self._embedder.provider_name}:{self._embedder.model}",
                hint="run a full sync to re-embed documents",
            )

        for record in records:
            label = label_for_uuid(str(record["id"]))
            vector = faiss_index.reconstruct([label])[0]
            chunk = Chunk.from_mapping(record, vector=vector)
            self._register(chunk)
        self._faiss = faiss_index

    def _register(self, chunk: Chunk) -> None:
        self._chunks[chunk.id] = chunk
        self._labels[chunk.label] = chunk.id
        self._key_index.setdefault(chunk.key, []).append(chunk.id)

    # ------------------------------------------------------------------#
    # Mutation
    # ------------------------------------------------------------------#
    def _new_chunk_id(self) -> str:
        while True:
            candidate = str(uuid.uuid4())
            if label_for_uuid(candidate) not in self._labels:
                return candidate

    def add_documents(self, inputs: Iterable[ChunkInput]) -> tuple[Chunk, ...]:
        """Embed and insert ``inputs`` as one unit, then persist.

        All texts are embedded in a single call before anything is inserted,
        so an embedding failure leaves the index untouched.
        """

        items = list(inputs)
        if not items:
            return ()

        vectors = self._embedder.embed_batch([item.text for item in items])
        matrix = _normalize(vectors)
        if self._faiss is not None and matrix.shape[1] != self._faiss.dim:
            raise VectorIndexError(
                f"Embedding dimension {matrix.shape[1]} does not match index "
                f"dimension {self._faiss.dim}; run a full sync"
            )

        indexed_at = datetime.now(timezone.utc)
        chunks = []
        for item, row in zip(items, matrix):
            chunk_id = self._new_chunk_id()
            chunk = Chunk(
                id=chunk_id,
                key=item.key,
                etag=item.etag,
                chunk_index=item.chunk_index,
                total_chunks=item.total_chunks,
                source_uri=item.source_uri,
                indexed_at=indexed_at,
                text=item.text,
                vector=tuple(float(value) for value in row),
            )
            self._labels[chunk.label] = chunk_id
            chunks.append(chunk)

        target = self._faiss or FaissIndex.create(
            dim=int(matrix.shape[1]),
            metric="cosine",
            index_type=self._index_type,
        )
        try:
            target.add([chunk.label for chunk in chunks], matrix)
        except (ValueError, RuntimeError) as exc:
            for chunk in chunks:
                self._labels.pop(chunk.label, None)
            raise VectorIndexError(f"Failed inserting chunks: {exc}") from exc

        self._faiss = target
        for chunk in chunks:
            self._chunks[chunk.id] = chunk
            self._key_index.setdefault(chunk.key, []).append(chunk.id)

        self._logger.debug(
            "vector-index-added",
            keys=sorted({chunk.key for chunk in chunks}),
            chunks=len(chunks),
        )
        self._save_quietly()
        return tuple(chunks)

    def remove_by_key(self, key: str) -> int:
        """Drop every chunk of ``key`` by rebuilding from the survivors.

        The rebuild reuses stored vectors. When no chunks survive, the
        in-memory index becomes empty but the previous snapshot is left on
        disk until the next successful save.
        """

        removed_ids = self._key_index.pop(key, None)
        if not removed_ids:
            return 0

        for chunk_id in removed_ids:
            chunk = self._chunks.pop(chunk_id)
            self._labels.pop(chunk.label, None)

        survivors = list(self._chunks.values())
        if not survivors or self._faiss is None:
            self._faiss = None
            self._logger.debug(
                "vector-index-empty-after-remove",
                key=key,
                removed=len(removed_ids),
            )
            return len(removed_ids)

        rebuilt = FaissIndex.create(
            dim=self._faiss.dim,
            metric="cosine",
            index_type=self._index_type,
        )
        rebuilt.add(
            [chunk.label for chunk in survivors],
            np.asarray([chunk.vector for chunk in survivors], dtype="float32"),
        )
        self._faiss = rebuilt
        self._logger.debug(
            "vector-index-removed",
            key=key,
            removed=len(removed_ids),
            remaining=len(survivors),
        )
        self._save_quietly()
        return len(removed_ids)

    def clear_all(self) -> None:
        """Discard the ANN structure and the key index."""

        self._reset()
        self._logger.info("vector-index-cleared", store_path=str(self.store_path))

    # ------------------------------------------------------------------#
    # Query
    # ------------------------------------------------------------------#
    def similarity_search(
        self,
        query: str,
        k: int | None = None,
    ) -> list[SearchHit]:
        """Return up to ``k`` chunks scoring at least ``min_similarity_score``.

        Hits keep the order FAISS returns them in (descending similarity).
        Equal scores are not re-ordered; their relative order is whatever
        FAISS produced and is not guaranteed.
        """

        limit = k if k is not None else self._settings.max_results
        if limit < 1:
            raise ValueError("k must be >= 1")
        if self._faiss is None or self._faiss.size == 0:
            return []

        query_vector = _normalize([self._embedder.embed_one(query)])
        scores, labels = self._faiss.search(
            query_vector,
            k=min(limit, self._faiss.size),
        )

        threshold = self._settings.min_similarity_score
        hits: list[SearchHit] = []
        for raw_score, raw_label in zip(scores[0], labels[0]):
            label = int(raw_label)
            if label < 0:
                continue
            chunk_id = self._labels.get(label)
            if chunk_id is None:
                continue
            distance = 1.0 - float(raw_score)
            score = 1.0 - distance
            if score < threshold:
                continue
            hits.append(SearchHit(chunk=self._chunks[chunk_id], score=score))

        self._logger.debug(
            "vector-index-search",
            k=limit,
            returned=len(hits),
            threshold=threshold,
        )
        return hits

    # ------------------------------------------------------------------#
    # Persistence
    # ------------------------------------------------------------------#
    def save(self) -> None:
        """Persist the snapshot; does nothing while the index is empty.

        Raises:
            FaissIndexError: If the snapshot cannot be written or locked.
        """

        if self._faiss is None or not self._chunks:
            self._logger.debug(
                "vector-index-save-skipped",
                reason="empty",
                store_path=str(self.store_path),
            )
            return

        self.store_path.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": CHUNKS_VERSION,
            "provider": self._embedder.provider_name,
            "model": self._embedder.model,
            "chunks": [chunk.to_mapping() for chunk in self._chunks.values()],
        }
        with index_writer_lock(self.index_path, timeout=self._lock_timeout):
            try:
                atomic_write_text(
                    self.chunks_path,
                    json.dumps(payload, ensure_ascii=False, indent=2) + "\n",
                )
            except OSError as exc:
                raise FaissIndexError(
                    f"Failed writing {self.chunks_path}: {exc}"
                ) from exc
            persist_index_artifacts(
                self._faiss,
                index_path=self.index_path,
                provider=self._embedder.provider_name,
                model_name=self._embedder.model,
                index_type=self._index_type,
            )

        self._logger.debug(
            "vector-index-saved",
            store_path=str(self.store_path),
            total_chunks=self.total_chunks,
        )

    def _save_quietly(self) -> None:
        # In-memory state is already updated; the next save retries.
        try:
            self.save()
        except FaissIndexError as exc:
            self._logger.error(
                "vector-index-save-failed",
                store_path=str(self.store_path),
                error=str(exc),
            )

    def get_stats(self) -> dict[str, Any]:
        """Return in-memory counts, which are authoritative over the snapshot."""

        return {
            "unique_files": self.unique_file_count,
            "total_chunks": self.total_chunks,
            "store_path": str(self.store_path),
        }
