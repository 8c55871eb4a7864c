"""Shared pytest fixtures: fake remote store, fake embeddings, stub logger."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Sequence

import pytest

from s3rag.core.config import RagSettings
from s3rag.modules.remote import (
    DocumentNotFoundError,
    RemoteDocument,
    RemoteListError,
)
from s3rag.modules.vdb.embeddings import Embedder
from s3rag.modules.vdb.providers import (
    EmbedRequestOptions,
    EmbeddingMatrix,
    EmbeddingProviderCaps,
    EmbeddingProviderModel,
)

VOCABULARY = ("alpha", "beta", "gamma", "delta", "epsilon")


class StubLogger:
    """Collects structlog-style calls as ``(level, event, fields)``."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    def _record(self, level: str, event: str, **kwargs: Any) -> None:
        self.events.append((level, event, kwargs))

    def debug(self, event: str, **kwargs: Any) -> None:
        self._record("debug", event, **kwargs)

    def info(self, event: str, **kwargs: Any) -> None:
        self._record("info", event, **kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._record("warning", event, **kwargs)

    def error(self, event: str, **kwargs: Any) -> None:
        self._record("error", event, **kwargs)

    def bind(self, **kwargs: Any) -> "StubLogger":
        return self

    def names(self, level: str | None = None) -> list[str]:
        return [
            event
            for recorded, event, _ in self.events
            if level is None or recorded == level
        ]


def keyword_vector(text: str) -> tuple[float, ...]:
    """Count vocabulary words so texts sharing words point the same way."""

    words = re.findall(r"[a-z]+", text.lower())
    return tuple(float(words.count(term)) for term in VOCABULARY)


class KeywordEmbeddingsProvider:
    """Deterministic provider mapping texts onto vocabulary counts."""

    def __init__(self, *, fail_on: str | None = None) -> None:
        self.calls: list[tuple[str, ...]] = []
        self.fail_on = fail_on

    def describe_model(self, model: str) -> EmbeddingProviderModel:
        return EmbeddingProviderModel(
            provider="fake",
            name=model,
            dim=len(VOCABULARY),
        )

    def capabilities(self, *, model: str | None = None) -> EmbeddingProviderCaps:
        return EmbeddingProviderCaps(max_batch_size=64, max_parallel_requests=1)

    def embed_texts(
        self,
        texts: Sequence[str],
        *,
        model: str,
        options: EmbedRequestOptions,
    ) -> EmbeddingMatrix:
        self.calls.append(tuple(texts))
        if self.fail_on is not None and any(self.fail_on in t for t in texts):
            raise RuntimeError(f"embedding refused for {self.fail_on!r}")
        return tuple(keyword_vector(text) for text in texts)


def _timestamp(day: int = 1) -> datetime:
    return datetime(2024, 1, day, tzinfo=timezone.utc)


class FakeDocumentStore:
    """In-memory remote store keyed by document key."""

    bucket = "docs-bucket"

    def __init__(self) -> None:
        self.objects: dict[str, tuple[str, str]] = {}
        self.fail_listing = False
        self.fail_fetch: set[str] = set()
        self.fetches: list[str] = []

    def put(self, key: str, content: str, etag: str) -> None:
        self.objects[key] = (content, etag)

    def delete(self, key: str) -> None:
        self.objects.pop(key, None)

    def list_documents(self) -> list[RemoteDocument]:
        if self.fail_listing:
            raise RemoteListError("listing unavailable")
        return [
            RemoteDocument(
                key=key,
                etag=etag,
                last_modified=_timestamp(),
                size=len(content),
            )
            for key, (content, etag) in self.objects.items()
        ]

    def fetch_content(self, key: str) -> str:
        self.fetches.append(key)
        if key in self.fail_fetch:
            raise RuntimeError(f"download of {key} failed")
        try:
            return self.objects[key][0]
        except KeyError:
            raise DocumentNotFoundError(f"{key} missing", key=key) from None

    def get_metadata(self, key: str) -> RemoteDocument:
        try:
            content, etag = self.objects[key]
        except KeyError:
            raise DocumentNotFoundError(f"{key} missing", key=key) from None
        return RemoteDocument(
            key=key,
            etag=etag,
            last_modified=_timestamp(),
            size=len(content),
        )

    def source_uri(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"


@pytest.fixture
def stub_logger() -> StubLogger:
    return StubLogger()


@pytest.fixture
def keyword_provider() -> KeywordEmbeddingsProvider:
    return KeywordEmbeddingsProvider()


@pytest.fixture
def embedder(
    keyword_provider: KeywordEmbeddingsProvider,
    stub_logger: StubLogger,
) -> Embedder:
    return Embedder(
        provider=keyword_provider,
        provider_name="fake",
        model="keywords",
        logger=stub_logger,
    )


@pytest.fixture
def rag_settings() -> RagSettings:
    return RagSettings(
        chunk_size=200,
        chunk_overlap=20,
        max_results=4,
        min_similarity_score=0.5,
    )


@pytest.fixture
def fake_store() -> FakeDocumentStore:
    return FakeDocumentStore()


@pytest.fixture
def make_embedder(stub_logger: StubLogger):
    """Return a factory for embedders over :class:`KeywordEmbeddingsProvider`."""

    def _make(*, model: str = "keywords", fail_on: str | None = None) -> Embedder:
        return Embedder(
            provider=KeywordEmbeddingsProvider(fail_on=fail_on),
            provider_name="fake",
            model=model,
            logger=stub_logger,
        )

    return _make


@pytest.fixture
def index_service(tmp_path, fake_store, embedder, stub_logger):
    """A :class:`DocumentIndexService` over the fake store in ``tmp_path``."""

    pytest.importorskip("faiss")
    from s3rag.core.config import AppConfig
    from s3rag.service import DocumentIndexService

    config = AppConfig(
        workspace={"root": str(tmp_path)},
        s3={"bucket": fake_store.bucket},
        rag={"chunk_size": 200, "chunk_overlap": 20, "min_similarity_score": 0.5},
    )
    return DocumentIndexService.from_config(
        config,
        logger=stub_logger,
        store=fake_store,
        embedder=embedder,
    )
