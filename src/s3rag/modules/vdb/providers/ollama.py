"""Ollama embeddings provider talking to the local ``/api/embed`` endpoint."""

from __future__ import annotations

import random
import time
from typing import Callable, Mapping, Sequence

import httpx

from s3rag.core.logging import Logger
from s3rag.modules.vdb.errors import (
    EmbeddingProviderDimMismatchError,
    EmbeddingProviderError,
    EmbeddingProviderRateLimitError,
    EmbeddingProviderRequestError,
    EmbeddingProviderRetryExceededError,
    EmbeddingProviderRetryableError,
)

from . import (
    EmbedRequestOptions,
    EmbeddingMatrix,
    EmbeddingProviderCaps,
    EmbeddingProviderModel,
    EmbeddingsProvider,
    ProviderInitContext,
)
from .retry import RetryPolicy

__all__ = ["OllamaEmbeddingsProvider", "ollama_provider_factory"]

_PROVIDER = "ollama"
_DEFAULT_BASE_URL = "http://localhost:11434"
_DEFAULT_TIMEOUT = 60.0
_MAX_BATCH = 256


class OllamaEmbeddingsProvider(EmbeddingsProvider):
    """Embed texts with a locally running Ollama server."""

    def __init__(
        self,
        *,
        logger: Logger,
        config: Mapping[str, object] | None = None,
        client: httpx.Client | None = None,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.logger = logger
        settings = dict(config or {})
        base_url = settings.get("base_url")
        timeout = settings.get("timeout")
        self._base_url = (
            str(base_url).rstrip("/") if base_url else _DEFAULT_BASE_URL
        )
        self._timeout = (
            float(timeout)
            if isinstance(timeout, (int, float)) and timeout > 0
            else _DEFAULT_TIMEOUT
        )
        self._client = client or httpx.Client(
            base_url=self._base_url,
            timeout=self._timeout,
        )
        self._retry = retry or RetryPolicy(max_attempts=3)
        self._sleep = sleep
        self._dim_cache: dict[str, int] = {}

    def describe_model(self, model: str) -> EmbeddingProviderModel:
        name = model.strip()
        dim = self._dim_cache.get(name)
        return EmbeddingProviderModel(provider=_PROVIDER, name=name, dim=dim)

    def capabilities(
        self,
        *,
        model: str | None = None,
    ) -> EmbeddingProviderCaps:
        return EmbeddingProviderCaps(
            max_batch_size=_MAX_BATCH,
            max_parallel_requests=1,
        )

    def embed_texts(
        self,
        texts: Sequence[str],
        *,
        model: str,
        options: EmbedRequestOptions,
    ) -> EmbeddingMatrix:
        if not texts:
            return ()

        name = model.strip()
        step = min(options.max_batch_size, _MAX_BATCH)
        vectors: list[tuple[float, ...]] = []
        for start in range(0, len(texts), step):
            batch = list(texts[start : start + step])
            embeddings = self._post_embed(name, batch, timeout=options.timeout)
            if len(embeddings) != len(batch):
                raise EmbeddingProviderDimMismatchError(
                    "Ollama returned a different number of vectors than inputs.",
                    provider=_PROVIDER,
                    model=name,
                    expected=len(batch),
                    actual=len(embeddings),
                )
            for raw in embeddings:
                vector = tuple(float(value) for value in raw)
                expected = self._dim_cache.setdefault(name, len(vector))
                if len(vector) != expected:
                    raise EmbeddingProviderDimMismatchError(
                        "Embedding dimension mismatch in Ollama response.",
                        provider=_PROVIDER,
                        model=name,
                        expected=expected,
                        actual=len(vector),
                    )
                vectors.append(vector)
        return tuple(vectors)

    def _post_embed(
        self,
        model: str,
        batch: list[str],
        *,
        timeout: float | None,
    ) -> list[list[float]]:
        rng = random.Random()
        max_attempts = self._retry.max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                response = self._client.post(
                    "/api/embed",
                    json={"model": model, "input": batch},
                    timeout=timeout or self._timeout,
                )
                response.raise_for_status()
                payload = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                error = self._translate(exc, model=model)
                retryable = isinstance(error, EmbeddingProviderRetryableError)
                if not retryable:
                    raise error from exc
                if attempt >= max_attempts:
                    raise EmbeddingProviderRetryExceededError(
                        f"Ollama embed failed after {attempt} attempts: {error.message}",
                        provider=_PROVIDER,
                        model=model,
                        status_code=error.status_code,
                        attempts=attempt,
                    ) from exc
                delay = self._retry.delay(attempt + 1, rng)
                self.logger.warning(
                    "ollama-embed-retry",
                    provider=_PROVIDER,
                    model=model,
                    attempt=attempt,
                    retry_delay=delay,
                    error=str(exc),
                )
                self._sleep(delay)
                continue

            embeddings = payload.get("embeddings") if isinstance(payload, dict) else None
            if not isinstance(embeddings, list):
                raise EmbeddingProviderRequestError(
                    "Ollama response did not contain an 'embeddings' list.",
                    provider=_PROVIDER,
                    model=model,
                )
            self.logger.debug(
                "ollama-embed-request",
                provider=_PROVIDER,
                model=model,
                batch_size=len(batch),
                attempts=attempt,
            )
            return embeddings

        raise EmbeddingProviderRetryExceededError(  # pragma: no cover
            "Ollama embed failed after multiple attempts.",
            provider=_PROVIDER,
            model=model,
            attempts=max_attempts,
        )

    def _translate(self, exc: Exception, *, model: str) -> EmbeddingProviderError:
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            detail = exc.response.text.strip() or str(exc)
            if status == 429:
                return EmbeddingProviderRateLimitError(
                    detail, provider=_PROVIDER, model=model, status_code=status
                )
            if status >= 500:
                return EmbeddingProviderRetryableError(
                    detail, provider=_PROVIDER, model=model, status_code=status
                )
            return EmbeddingProviderRequestError(
                detail, provider=_PROVIDER, model=model, status_code=status
            )
        if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
            return EmbeddingProviderRetryableError(
                f"Cannot reach Ollama at {self._base_url}: {exc}",
                provider=_PROVIDER,
                model=model,
            )
        return EmbeddingProviderRequestError(
            f"Ollama request failed: {exc}",
            provider=_PROVIDER,
            model=model,
        )


def ollama_provider_factory(
    context: ProviderInitContext,
) -> OllamaEmbeddingsProvider:
    """Factory registered with the provider registry."""

    return OllamaEmbeddingsProvider(
        logger=context.logger,
        config=context.config,
    )
