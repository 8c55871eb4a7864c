"""Embedding backend resolution and the batch embedder used by the index."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar, Mapping, Sequence, Union

from s3rag.core.config import EmbeddingSettings
from s3rag.core.logging import Logger
from s3rag.modules.vdb.errors import (
    EmbeddingProviderConfigurationError,
    EmbeddingProviderDimMismatchError,
)
from s3rag.modules.vdb.providers import (
    EmbedRequestOptions,
    EmbeddingMatrix,
    EmbeddingVector,
    EmbeddingsProvider,
    ProviderRegistry,
    create_default_provider_registry,
)

__all__ = [
    "EmbeddingBackend",
    "Embedder",
    "OllamaBackend",
    "OpenAIBackend",
    "build_embedder",
    "resolve_backend",
]


@dataclass(frozen=True, slots=True)
class OllamaBackend:
    provider: ClassVar[str] = "ollama"

    base_url: str
    model: str
    timeout: float = 60.0

    def provider_config(self) -> Mapping[str, object]:
        return {"base_url": self.base_url, "timeout": self.timeout}


@dataclass(frozen=True, slots=True)
class OpenAIBackend:
    provider: ClassVar[str] = "openai"

    api_key: str = field(repr=False)
    model: str
    base_url: str | None = None
    timeout: float = 30.0
    max_input_tokens: int | None = None

    def provider_config(self) -> Mapping[str, object]:
        return {
            "api_key": self.api_key,
            "base_url": self.base_url,
            "timeout": self.timeout,
            "max_input_tokens": self.max_input_tokens,
        }


EmbeddingBackend = Union[OllamaBackend, OpenAIBackend]


def resolve_backend(
    settings: EmbeddingSettings,
    *,
    logger: Logger,
) -> EmbeddingBackend:
    """Pick the embedding backend from the requested provider and validity.

    =========  ============  ============  ======================
    requested  openai valid  ollama valid  result
    =========  ============  ============  ======================
    ollama     any           yes           ollama
    ollama     any           no            configuration error
    openai     yes           any           openai
    openai     no            yes           ollama (warning logged)
    openai     no            no            configuration error
    =========  ============  ============  ======================

    Raises:
        EmbeddingProviderConfigurationError: When no usable backend remains.
    """

    openai_settings = settings.openai
    ollama_settings = settings.ollama
    openai_valid = openai_settings.is_valid()
    ollama_valid = ollama_settings.is_valid()

    ollama = OllamaBackend(
        base_url=ollama_settings.base_url,
        model=ollama_settings.model,
        timeout=ollama_settings.timeout,
    )

    match (settings.provider, openai_valid, ollama_valid):
        case ("ollama", _, True):
            return ollama
        case ("openai", True, _):
            secret = openai_settings.api_key
            return OpenAIBackend(
                api_key=secret.get_secret_value().strip() if secret else "",
                model=openai_settings.model,
                base_url=openai_settings.base_url,
                timeout=openai_settings.timeout,
                max_input_tokens=openai_settings.max_input_tokens,
            )
        case ("openai", False, True):
            logger.warning(
                "embedding-backend-fallback",
                requested="openai",
                resolved="ollama",
                reason="OpenAI API key or model missing",
            )
            return ollama

    raise EmbeddingProviderConfigurationError(
        (
            f"No usable embedding backend for provider {settings.provider!r}; "
            "check the Ollama base URL/model or set OPENAI_API_KEY."
        ),
        provider=settings.provider,
        model="*",
    )


class Embedder:
    """Bind one provider and one model behind a batch-first API."""

    def __init__(
        self,
        *,
        provider: EmbeddingsProvider,
        provider_name: str,
        model: str,
        logger: Logger,
        max_batch_size: int = 64,
        timeout: float | None = None,
    ) -> None:
        self._provider = provider
        self.provider_name = provider_name
        self.model = model
        self._logger = logger
        self._options = EmbedRequestOptions(
            max_batch_size=max_batch_size,
            timeout=timeout,
        )

    def __repr__(self) -> str:
        return f"Embedder(provider={self.provider_name!r}, model={self.model!r})"

    def embed_batch(self, texts: Sequence[str]) -> EmbeddingMatrix:
        """Embed every text, returning one vector per input in input order.

        Raises:
            EmbeddingProviderError: On provider failure or a count mismatch.
        """

        if not texts:
            return ()
        vectors = self._provider.embed_texts(
            list(texts),
            model=self.model,
            options=self._options,
        )
        if len(vectors) != len(texts):
            raise EmbeddingProviderDimMismatchError(
                "Embedding count does not match input count.",
                provider=self.provider_name,
                model=self.model,
                expected=len(texts),
                actual=len(vectors),
            )
        self._logger.debug(
            "embed-batch",
            provider=self.provider_name,
            model=self.model,
            count=len(texts),
        )
        return vectors

    def embed_one(self, text: str) -> EmbeddingVector:
        return self.embed_batch([text])[0]


def build_embedder(
    settings: EmbeddingSettings,
    *,
    logger: Logger,
    max_batch_size: int = 64,
    registry: ProviderRegistry | None = None,
) -> Embedder:
    """Resolve the backend and instantiate its provider from ``registry``."""

    backend = resolve_backend(settings, logger=logger)
    providers = registry or create_default_provider_registry()
    provider = providers.create(
        backend.provider,
        logger=logger.bind(provider=backend.provider),
        config=backend.provider_config(),
    )
    logger.info(
        "embedding-backend-resolved",
        provider=backend.provider,
        model=backend.model,
    )
    return Embedder(
        provider=provider,
        provider_name=backend.provider,
        model=backend.model,
        logger=logger,
        max_batch_size=max_batch_size,
    )
