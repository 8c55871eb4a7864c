"""FAISS index adapter hiding IDMap2 setup and snapshot persistence."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping
from uuid import UUID

import numpy as np

try:  # pragma: no cover - import guard exercised in tests via functionality
    import faiss
except ImportError as exc:  # pragma: no cover - bubble missing dependency
    raise ImportError(
        "faiss is required for vector index operations; install faiss-cpu"
    ) from exc

from s3rag.core.atomic import atomic_write_bytes, atomic_write_text
from s3rag.core.locks import (
    FileLock,
    FileLockError,
    FileLockTimeoutError,
    lock_path_for,
)

__all__ = [
    "FaissIndex",
    "FaissIndexError",
    "FaissIndexLoadError",
    "FaissIndexLockError",
    "FaissIndexMetric",
    "FaissIndexPersistenceError",
    "FaissIndexSidecar",
    "FaissIndexValidationError",
    "SIDECAR_VERSION",
    "index_writer_lock",
    "label_for_uuid",
    "load_index_artifacts",
    "persist_index_artifacts",
    "sidecar_path_for_index",
]

SIDECAR_VERSION = 1
_LABEL_MASK = (1 << 63) - 1


class FaissIndexError(RuntimeError):
    """Base error raised for FAISS adapter failures."""


class FaissIndexPersistenceError(FaissIndexError):
    """Raised when index artifacts cannot be persisted."""


class FaissIndexLockError(FaissIndexError):
    """Raised when the on-disk writer lock cannot be acquired or released."""

    def __init__(self, *, lock_path: Path, message: str) -> None:
        super().__init__(message)
        self.lock_path = lock_path


class FaissIndexLoadError(FaissIndexError):
    """Raised when index artifacts cannot be read from disk."""

    def __init__(self, *, index_path: Path, message: str) -> None:
        super().__init__(message)
        self.index_path = index_path


class FaissIndexValidationError(FaissIndexError):
    """Raised when persisted artifacts disagree with their sidecar."""

    def __init__(
        self,
        *,
        index_path: Path,
        field: str,
        expected: Any,
        actual: Any,
    ) -> None:
        super().__init__(
            f"Validation failed for {field} at {index_path}: "
            f"expected {expected!r}, got {actual!r}"
        )
        self.index_path = index_path
        self.field = field
        self.expected = expected
        self.actual = actual


def label_for_uuid(identifier: str) -> int:
    """Return the non-negative 63-bit FAISS label for a UUID string.

    Example:
        >>> label_for_uuid("00000000-0000-4000-8000-000000000003")
        3
    """

    return UUID(identifier).int & _LABEL_MASK


@dataclass(frozen=True)
class FaissIndexMetric:
    """Metric descriptor bridging human-readable names to FAISS IDs."""

    name: str
    faiss_metric: int

    @classmethod
    def from_name(cls, name: str) -> "FaissIndexMetric":
        normalized = name.strip().lower()
        if normalized in {"l2", "euclidean"}:
            return cls(name="l2", faiss_metric=faiss.METRIC_L2)
        if normalized in {"ip", "inner_product"}:
            return cls(name="ip", faiss_metric=faiss.METRIC_INNER_PRODUCT)
        if normalized == "cosine":
            return cls(name="cosine", faiss_metric=faiss.METRIC_INNER_PRODUCT)
        raise ValueError(f"Unsupported FAISS metric: {name!r}")


class FaissIndex:
    """Thin wrapper around ``faiss.IndexIDMap2`` with typed helpers.

    ``IDMap2`` keeps the label-to-position table needed for
    :meth:`reconstruct`, which compaction relies on.
    """

    def __init__(
        self,
        *,
        index: faiss.Index,
        metric: FaissIndexMetric,
    ) -> None:
        if not isinstance(index, faiss.IndexIDMap2):
            raise TypeError("index must be an instance of faiss.IndexIDMap2")
        self._index = index
        self._metric = metric

    @property
    def dim(self) -> int:
        return self._index.d

    @property
    def metric(self) -> FaissIndexMetric:
        return self._metric

    @property
    def size(self) -> int:
        """Number of vectors stored in the index."""

        return self._index.ntotal

    @classmethod
    def create(
        cls,
        *,
        dim: int,
        metric: str = "cosine",
        index_type: str = "Flat",
    ) -> "FaissIndex":
        if dim < 1:
            raise ValueError("dim must be >= 1")
        descriptor = FaissIndexMetric.from_name(metric)
        base = index_type.replace(" ", "").strip()
        for prefix in ("IDMap2,", "IDMap,"):
            if base.lower().startswith(prefix.lower()):
                base = base[len(prefix) :]
        if not base:
            raise ValueError("index_type must name a base index, e.g. 'Flat'")
        inner = faiss.index_factory(dim, base, descriptor.faiss_metric)
        return cls(index=faiss.IndexIDMap2(inner), metric=descriptor)

    @classmethod
    def from_bytes(
        cls,
        data: bytes,
        *,
        metric: str,
    ) -> "FaissIndex":
        buffer = np.frombuffer(data, dtype="uint8")
        raw_index = faiss.deserialize_index(buffer)
        if not isinstance(raw_index, faiss.IndexIDMap2):
            raise FaissIndexError(
                "Serialized index must wrap an IDMap2; rebuild the index",
            )
        return cls(index=raw_index, metric=FaissIndexMetric.from_name(metric))

    def to_bytes(self) -> bytes:
        return faiss.serialize_index(self._index).tobytes()

    def add(
        self,
        ids: Sequence[int],
        vectors: Sequence[Sequence[float]] | np.ndarray,
    ) -> None:
        id_array = _ids_to_array(ids)
        vector_array = _vectors_to_array(vectors, dim=self.dim)
        if len(id_array) != len(vector_array):
            raise ValueError("ids and vectors must have matching lengths")
        if id_array.size == 0:
            return
        self._index.add_with_ids(vector_array, id_array)

    def search(
        self,
        query_vectors: Sequence[Sequence[float]] | np.ndarray,
        *,
        k: int,
    ) -> tuple[np.ndarray, np.ndarray]:
        """Return ``(scores, labels)`` arrays of shape ``(n, k)``.

        Missing neighbours (``k`` larger than the index) carry label ``-1``.
        """

        if k <= 0:
            raise ValueError("k must be positive")
        queries = _vectors_to_array(query_vectors, dim=self.dim)
        if queries.shape[0] == 0:
            return (
                np.empty((0, k), dtype="float32"),
                np.empty((0, k), dtype="int64"),
            )
        return self._index.search(queries, k)

    def reconstruct(self, ids: Iterable[int]) -> np.ndarray:
        id_array = _ids_to_array(ids)
        vectors = np.zeros((id_array.size, self.dim), dtype="float32")
        for row, identifier in enumerate(id_array):
            try:
                vectors[row] = self._index.reconstruct(int(identifier))
            except RuntimeError as exc:
                raise FaissIndexError(
                    f"No vector stored for label {identifier}"
                ) from exc
        return vectors


@dataclass(frozen=True, slots=True)
class FaissIndexSidecar:
    """Metadata persisted next to ``index.faiss``."""

    version: int
    provider: str
    model_name: str
    dim: int
    metric: str
    index_type: str
    vector_count: int
    built_at: datetime
    checksum: str

    def to_json(self) -> str:
        payload = {
            "version": self.version,
            "provider": self.provider,
            "model_name": self.model_name,
            "dim": self.dim,
            "metric": self.metric,
            "index_type": self.index_type,
            "vector_count": self.vector_count,
            "built_at": _format_timestamp(self.built_at),
            "checksum": self.checksum,
        }
        return json.dumps(payload, ensure_ascii=False, indent=2) + "\n"

    @classmethod
    def from_json(cls, payload: str) -> "FaissIndexSidecar":
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValueError("Invalid sidecar JSON payload") from exc
        if not isinstance(data, Mapping):
            raise ValueError("Sidecar JSON must decode to an object")
        return cls.from_mapping(data)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "FaissIndexSidecar":
        checksum = _coerce_string(payload.get("checksum"), field="checksum")
        if len(checksum) != 64:
            raise ValueError("checksum must be a 64-character hex digest")
        metric = FaissIndexMetric.from_name(
            _coerce_string(payload.get("metric"), field="metric")
        )
        return cls(
            version=_coerce_int(payload.get("version"), field="version", minimum=1),
            provider=_coerce_string(payload.get("provider"), field="provider"),
            model_name=_coerce_string(
                payload.get("model_name"), field="model_name"
            ),
            dim=_coerce_int(payload.get("dim"), field="dim", minimum=1),
            metric=metric.name,
            index_type=_coerce_string(
                payload.get("index_type"), field="index_type"
            ),
            vector_count=_coerce_int(
                payload.get("vector_count"), field="vector_count", minimum=0
            ),
            built_at=_parse_timestamp(payload.get("built_at")),
            checksum=checksum,
        )


def sidecar_path_for_index(index_path: Path) -> Path:
    """Derive the sidecar metadata path from the FAISS index path."""

    return index_path.with_name(f"{index_path.name}.meta.json")


@contextmanager
def index_writer_lock(
    index_path: Path,
    *,
    timeout: float = 30.0,
    poll_interval: float = 0.05,
) -> Iterator[FileLock]:
    """Serialize writers of the snapshot rooted at ``index_path``."""

    lock = FileLock(
        path=lock_path_for(index_path),
        timeout=timeout,
        poll_interval=poll_interval,
    )
    try:
        lock.acquire()
    except FileLockTimeoutError as exc:
        raise FaissIndexLockError(
            lock_path=lock.path,
            message=f"Timed out acquiring index lock at {lock.path}",
        ) from exc
    except FileLockError as exc:
        raise FaissIndexLockError(
            lock_path=lock.path,
            message=str(exc),
        ) from exc
    try:
        yield lock
    finally:
        try:
            lock.release()
        except FileLockError as exc:
            raise FaissIndexLockError(
                lock_path=lock.path,
                message=f"Failed releasing index lock at {lock.path}: {exc}",
            ) from exc


def persist_index_artifacts(
    index: FaissIndex,
    *,
    index_path: Path,
    provider: str,
    model_name: str,
    index_type: str,
    built_at: datetime | None = None,
) -> FaissIndexSidecar:
    """Write ``index`` and its sidecar atomically.

    Callers are expected to hold :func:`index_writer_lock`.
    """

    index_bytes = index.to_bytes()
    sidecar = FaissIndexSidecar(
        version=SIDECAR_VERSION,
        provider=provider,
        model_name=model_name,
        dim=index.dim,
        metric=index.metric.name,
        index_type=index_type,
        vector_count=index.size,
        built_at=built_at or datetime.now(timezone.utc),
        checksum=hashlib.sha256(index_bytes).hexdigest(),
    )
    try:
        atomic_write_bytes(index_path, index_bytes, prefix=".faiss-")
        atomic_write_text(
            sidecar_path_for_index(index_path),
            sidecar.to_json(),
            prefix=".faiss-",
        )
    except OSError as exc:
        raise FaissIndexPersistenceError(
            f"Failed to persist FAISS index under {index_path.parent}: {exc}"
        ) from exc
    return sidecar


def load_index_artifacts(
    *,
    index_path: Path,
    expected_dim: int | None = None,
) -> tuple[FaissIndex, FaissIndexSidecar]:
    """Load and validate ``index.faiss`` against its sidecar.

    Raises:
        FaissIndexLoadError: If a file is missing, unreadable or malformed.
        FaissIndexValidationError: If checksum, dim or vector count differ.
    """

    sidecar_path = sidecar_path_for_index(index_path)
    for candidate in (index_path, sidecar_path):
        if not candidate.exists():
            raise FaissIndexLoadError(
                index_path=index_path,
                message=f"Snapshot file not found: {candidate}",
            )

    try:
        sidecar = FaissIndexSidecar.from_json(
            sidecar_path.read_text(encoding="utf-8")
        )
        index_bytes = index_path.read_bytes()
    except (OSError, ValueError) as exc:
        raise FaissIndexLoadError(
            index_path=index_path,
            message=f"Failed reading snapshot metadata: {exc}",
        ) from exc

    digest = hashlib.sha256(index_bytes).hexdigest()
    if digest != sidecar.checksum:
        raise FaissIndexValidationError(
            index_path=index_path,
            field="checksum",
            expected=sidecar.checksum,
            actual=digest,
        )

    try:
        index = FaissIndex.from_bytes(index_bytes, metric=sidecar.metric)
    except (FaissIndexError, RuntimeError, ValueError) as exc:
        raise FaissIndexLoadError(
            index_path=index_path,
            message=f"Failed deserializing FAISS index: {exc}",
        ) from exc

    checks = (
        ("dim", sidecar.dim, index.dim),
        ("vector_count", sidecar.vector_count, index.size),
    )
    if expected_dim is not None:
        checks += (("expected_dim", expected_dim, sidecar.dim),)
    for field, expected, actual in checks:
        if expected != actual:
            raise FaissIndexValidationError(
                index_path=index_path,
                field=field,
                expected=expected,
                actual=actual,
            )

    return index, sidecar


def _ids_to_array(ids: Iterable[int]) -> np.ndarray:
    if isinstance(ids, np.ndarray):
        return ids.astype("int64", copy=False).reshape(-1)
    return np.fromiter((int(item) for item in ids), dtype="int64")


def _vectors_to_array(
    vectors: Sequence[Sequence[float]] | np.ndarray,
    *,
    dim: int,
) -> np.ndarray:
    if len(vectors) == 0:
        return np.empty((0, dim), dtype="float32")
    array = np.ascontiguousarray(vectors, dtype="float32")
    if array.ndim != 2:
        raise ValueError("vectors must be a 2-D array of shape (n, dim)")
    if array.shape[1] != dim:
        raise ValueError(
            f"Vector dimensionality mismatch: expected {dim}, got {array.shape[1]}"
        )
    return array


def _coerce_string(value: Any, *, field: str) -> str:
    if value is None:
        raise ValueError(f"sidecar.{field} is required")
    text = str(value).strip()
    if not text:
        raise ValueError(f"sidecar.{field} cannot be empty")
    return text


def _coerce_int(value: Any, *, field: str, minimum: int) -> int:
    if value is None or isinstance(value, bool):
        raise ValueError(f"sidecar.{field} must be an integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"sidecar.{field} must be an integer") from exc
    if parsed < minimum:
        raise ValueError(f"sidecar.{field} must be >= {minimum}")
    return parsed


def _parse_timestamp(value: Any) -> datetime:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("sidecar.built_at must be an ISO-8601 string")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        timestamp = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"sidecar.built_at is not ISO-8601: {value}") from exc
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (
        value.astimezone(timezone.utc)
        .isoformat(timespec="seconds")
        .replace("+00:00", "Z")
    )
