"""OpenAI embeddings provider implementation."""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence

import httpx
import tiktoken
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    OpenAI,
    RateLimitError,
)

from s3rag.core.logging import Logger
from s3rag.modules.vdb.errors import (
    EmbeddingProviderConfigurationError,
    EmbeddingProviderDimMismatchError,
    EmbeddingProviderError,
    EmbeddingProviderInputTooLargeError,
    EmbeddingProviderRateLimitError,
    EmbeddingProviderRequestError,
    EmbeddingProviderRetryExceededError,
    EmbeddingProviderRetryableError,
)

from . import (
    DEFAULT_PARALLEL_REQUESTS,
    EmbedRequestOptions,
    EmbeddingMatrix,
    EmbeddingProviderCaps,
    EmbeddingProviderModel,
    EmbeddingVector,
    EmbeddingsProvider,
    ProviderInitContext,
)
from .retry import RetryPolicy

__all__ = [
    "OpenAIEmbeddingsProvider",
    "openai_provider_factory",
]

_PROVIDER = "openai"
_DEFAULT_TIMEOUT = 30.0
_DEFAULT_TOKEN_LIMIT = 8_191
_TOKEN_PAD = 8
_DIMENSION_PROBE_TEXT = "__S3RAG_DIMENSION_PROBE__"


@dataclass(frozen=True, slots=True)
class _ModelInfo:
    dim: int
    max_batch_size: int
    max_tokens: int


_KNOWN_MODELS: Mapping[str, _ModelInfo] = {
    "text-embedding-3-small": _ModelInfo(1_536, 128, _DEFAULT_TOKEN_LIMIT),
    "text-embedding-3-large": _ModelInfo(3_072, 64, _DEFAULT_TOKEN_LIMIT),
    "text-embedding-ada-002": _ModelInfo(1_536, 128, _DEFAULT_TOKEN_LIMIT),
}


@dataclass(frozen=True, slots=True)
class _Batch:
    texts: tuple[str, ...]
    tokens: int


def _normalize_model_name(model: str) -> str:
    normalized = model.strip()
    if not normalized:
        raise ValueError("model cannot be blank")
    return normalized


def _config_str(config: Mapping[str, object], key: str) -> str | None:
    value = config.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class OpenAIEmbeddingsProvider(EmbeddingsProvider):
    """Embed texts via the OpenAI embeddings API.

    Inputs are token-counted with ``tiktoken`` and packed into requests that
    respect both the batch size and the per-request token ceiling. Transport
    failures, 5xx responses and rate limits are retried with backoff.
    """

    def __init__(
        self,
        *,
        logger: Logger,
        config: Mapping[str, object] | None = None,
        client: OpenAI | None = None,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.logger = logger
        self._config = dict(config or {})
        self._retry = retry or RetryPolicy()
        self._sleep = sleep
        self._now = now
        self._dim_cache: dict[str, int] = {}
        self._stats = {"requests": 0, "retries": 0, "failures": 0}
        self._client = client or self._build_client()

    @property
    def stats(self) -> Mapping[str, int]:
        """Return counters captured during the provider lifetime."""

        return dict(self._stats)

    def _configured_token_limit(self) -> int | None:
        value = self._config.get("max_input_tokens")
        if isinstance(value, int) and value >= 1:
            return value
        return None

    def describe_model(self, model: str) -> EmbeddingProviderModel:
        name = _normalize_model_name(model)
        info = _KNOWN_MODELS.get(name)
        if info is not None:
            dim: int | None = info.dim
        elif name in self._dim_cache:
            dim = self._dim_cache[name]
        else:
            dim = self._probe_dimension(model=name)
        return EmbeddingProviderModel(provider=_PROVIDER, name=name, dim=dim)

    def capabilities(
        self,
        *,
        model: str | None = None,
    ) -> EmbeddingProviderCaps:
        info = _KNOWN_MODELS.get(_normalize_model_name(model)) if model else None
        batch = info.max_batch_size if info else 128
        tokens = info.max_tokens if info else _DEFAULT_TOKEN_LIMIT

        configured = self._configured_token_limit()
        if configured is not None:
            tokens = min(tokens, configured)

        return EmbeddingProviderCaps(
            max_batch_size=batch,
            max_parallel_requests=DEFAULT_PARALLEL_REQUESTS,
            max_request_tokens=tokens,
            max_input_tokens=tokens,
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

        name = _normalize_model_name(model)
        caps = self.capabilities(model=name)
        batch_limit = min(options.max_batch_size, caps.max_batch_size)
        token_limit = caps.max_request_tokens or _DEFAULT_TOKEN_LIMIT
        if options.max_input_tokens is not None:
            token_limit = min(token_limit, options.max_input_tokens)

        normalized = [self._normalize_text(text) for text in texts]
        batches = self._pack_batches(
            normalized,
            [self._estimate_tokens(model=name, text=text) for text in normalized],
            batch_limit=batch_limit,
            token_limit=token_limit,
            model=name,
        )

        info = _KNOWN_MODELS.get(name)
        results: list[EmbeddingVector] = []
        for batch in batches:
            embeddings = self._invoke_with_retries(
                model=name,
                batch=batch.texts,
                token_count=batch.tokens,
            )
            if len(embeddings) != len(batch.texts):
                raise EmbeddingProviderDimMismatchError(
                    "OpenAI returned a different number of vectors than inputs.",
                    provider=_PROVIDER,
                    model=name,
                    expected=len(batch.texts),
                    actual=len(embeddings),
                )
            for vector in embeddings:
                if info is not None and len(vector) != info.dim:
                    raise EmbeddingProviderDimMismatchError(
                        "Embedding dimension mismatch in OpenAI response.",
                        provider=_PROVIDER,
                        model=name,
                        expected=info.dim,
                        actual=len(vector),
                    )
                results.append(tuple(float(value) for value in vector))

        return tuple(results)

    def _build_client(self) -> OpenAI:
        api_key = _config_str(self._config, "api_key")
        if not api_key:
            raise EmbeddingProviderConfigurationError(
                "An OpenAI API key is required (set OPENAI_API_KEY).",
                provider=_PROVIDER,
                model="*",
            )

        timeout = self._config.get("timeout")
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            timeout = _DEFAULT_TIMEOUT

        return OpenAI(
            api_key=api_key,
            base_url=_config_str(self._config, "base_url"),
            timeout=float(timeout),
            max_retries=0,
        )

    def _pack_batches(
        self,
        texts: Sequence[str],
        token_counts: Sequence[int],
        *,
        batch_limit: int,
        token_limit: int,
        model: str,
    ) -> tuple[_Batch, ...]:
        batches: list[_Batch] = []
        current: list[str] = []
        current_tokens = 0

        for text, tokens in zip(texts, token_counts):
            if tokens > token_limit:
                raise EmbeddingProviderInputTooLargeError(
                    (
                        "Input text exceeds OpenAI token limit "
                        f"({tokens} > {token_limit})."
                    ),
                    provider=_PROVIDER,
                    model=model,
                    token_count=tokens,
                    limit=token_limit,
                )

            full = len(current) >= batch_limit
            over = current_tokens + tokens > token_limit
            if current and (full or over):
                batches.append(_Batch(tuple(current), current_tokens))
                current = []
                current_tokens = 0

            current.append(text)
            current_tokens += tokens

        if current:
            batches.append(_Batch(tuple(current), current_tokens))
        return tuple(batches)

    def _probe_dimension(self, *, model: str) -> int | None:
        embeddings = self._invoke_with_retries(
            model=model,
            batch=(_DIMENSION_PROBE_TEXT,),
            token_count=self._estimate_tokens(
                model=model, text=_DIMENSION_PROBE_TEXT
            ),
            is_probe=True,
        )
        if not embeddings:
            return None
        self._dim_cache[model] = len(embeddings[0])
        return self._dim_cache[model]

    def _estimate_tokens(self, *, model: str, text: str) -> int:
        try:
            encoding = tiktoken.encoding_for_model(model)
        except KeyError:
            encoding = tiktoken.get_encoding("cl100k_base")
        return _TOKEN_PAD + len(encoding.encode(text, disallowed_special=()))

    @staticmethod
    def _normalize_text(text: str) -> str:
        return text.replace("\r\n", "\n").replace("\r", "\n").strip()

    def _invoke_with_retries(
        self,
        *,
        model: str,
        batch: Sequence[str],
        token_count: int,
        is_probe: bool = False,
    ) -> list[list[float]]:
        rng = random.Random()
        max_attempts = self._retry.max_attempts

        for attempt in range(1, max_attempts + 1):
            start = self._now()
            try:
                response = self._client.embeddings.create(
                    model=model,
                    input=list(batch),
                )
            except Exception as exc:
                status, request_id = self._extract_context(exc)
                if not self._is_retryable(exc) or attempt >= max_attempts:
                    self._stats["failures"] += 1
                    raise self._translate_exception(
                        exc,
                        attempts=attempt,
                        model=model,
                        status=status,
                        request_id=request_id,
                    ) from exc

                delay = self._retry.delay(attempt + 1, rng)
                self.logger.warning(
                    "openai-embed-retry",
                    provider=_PROVIDER,
                    model=model,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    retry_delay=delay,
                    error_type=exc.__class__.__name__,
                    status_code=status,
                    request_id=request_id,
                    is_probe=is_probe,
                )
                self._stats["retries"] += 1
                self._sleep(delay)
                continue

            self._stats["requests"] += 1
            self.logger.debug(
                "openai-embed-request",
                provider=_PROVIDER,
                model=model,
                batch_size=len(batch),
                token_count=token_count,
                latency=self._now() - start,
                attempts=attempt,
                is_probe=is_probe,
            )
            return [list(item.embedding) for item in response.data]

        raise EmbeddingProviderRetryExceededError(  # pragma: no cover
            "Failed to embed texts after multiple attempts.",
            provider=_PROVIDER,
            model=model,
            attempts=max_attempts,
        )

    @staticmethod
    def _is_retryable(exc: Exception) -> bool:
        if isinstance(
            exc,
            (
                RateLimitError,
                APITimeoutError,
                APIConnectionError,
                httpx.TimeoutException,
                httpx.NetworkError,
            ),
        ):
            return True
        if isinstance(exc, APIStatusError):
            status, _ = OpenAIEmbeddingsProvider._extract_context(exc)
            return status is not None and status >= 500
        return False

    @staticmethod
    def _extract_context(exc: Exception) -> tuple[int | None, str | None]:
        status: int | None = None
        status_value = getattr(exc, "status_code", None)
        if status_value is not None:
            try:
                status = int(status_value)
            except (TypeError, ValueError):
                status = None

        request_id = getattr(exc, "request_id", None)
        if not isinstance(request_id, str):
            request_id = None
        return status, request_id

    def _translate_exception(
        self,
        exc: Exception,
        *,
        attempts: int,
        model: str,
        status: int | None,
        request_id: str | None,
    ) -> EmbeddingProviderError:
        message = str(exc) or exc.__class__.__name__
        context = {
            "provider": _PROVIDER,
            "model": model,
            "status_code": status,
            "request_id": request_id,
        }
        retryable = self._is_retryable(exc)
        if retryable and attempts >= self._retry.max_attempts:
            return EmbeddingProviderRetryExceededError(
                f"Exceeded {attempts} attempts calling OpenAI: {message}",
                attempts=attempts,
                **context,
            )
        if isinstance(exc, RateLimitError):
            return EmbeddingProviderRateLimitError(message, **context)
        if retryable:
            return EmbeddingProviderRetryableError(message, **context)
        return EmbeddingProviderRequestError(message, **context)


def openai_provider_factory(
    context: ProviderInitContext,
) -> OpenAIEmbeddingsProvider:
    """Factory registered with the provider registry."""

    return OpenAIEmbeddingsProvider(
        logger=context.logger,
        config=context.config,
    )
