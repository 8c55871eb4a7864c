"""Embedding provider contract and the registry the embedder resolves from.

s3rag ships two providers, ``ollama`` (local HTTP) and ``openai``. Their
modules are imported only when a provider is created, so a workspace that
embeds with Ollama never imports ``openai`` or ``tiktoken``.
"""

from __future__ import annotations

from dataclasses import dataclass
from importlib import import_module
from types import MappingProxyType
from typing import Callable, Mapping, Protocol, Sequence, runtime_checkable

from s3rag.core.logging import Logger

__all__ = [
    "DEFAULT_PARALLEL_REQUESTS",
    "EmbedRequestOptions",
    "EmbeddingMatrix",
    "EmbeddingProviderCaps",
    "EmbeddingProviderModel",
    "EmbeddingVector",
    "EmbeddingsProvider",
    "ProviderFactory",
    "ProviderInitContext",
    "ProviderNotRegisteredError",
    "ProviderRegistry",
    "ProviderRegistryError",
    "create_default_provider_registry",
]

DEFAULT_PARALLEL_REQUESTS = 4

EmbeddingVector = tuple[float, ...]
EmbeddingMatrix = tuple[EmbeddingVector, ...]


@dataclass(frozen=True, slots=True)
class EmbedRequestOptions:
    """Per-call limits the :class:`~s3rag.modules.vdb.embeddings.Embedder` passes down."""

    max_batch_size: int
    timeout: float | None = None
    max_input_tokens: int | None = None

    def __post_init__(self) -> None:
        if self.max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be positive when provided")
        if self.max_input_tokens is not None and self.max_input_tokens < 1:
            raise ValueError("max_input_tokens must be >= 1 when set")


@dataclass(frozen=True, slots=True)
class EmbeddingProviderCaps:
    max_batch_size: int
    max_parallel_requests: int
    max_input_tokens: int | None = None
    max_request_tokens: int | None = None

    def __post_init__(self) -> None:
        if self.max_batch_size < 1 or self.max_parallel_requests < 1:
            raise ValueError("batch size and parallelism must be >= 1")


@dataclass(frozen=True, slots=True)
class EmbeddingProviderModel:
    """Provider and model names, plus the vector width when known up front."""

    provider: str
    name: str
    dim: int | None = None

    def __post_init__(self) -> None:
        provider = self.provider.strip().lower()
        name = self.name.strip()
        if not provider or not name:
            raise ValueError("provider and model name are required")
        if self.dim is not None and self.dim < 1:
            raise ValueError("dim must be >= 1 when provided")
        object.__setattr__(self, "provider", provider)
        object.__setattr__(self, "name", name)


@runtime_checkable
class EmbeddingsProvider(Protocol):
    """What the index needs from an embedding backend."""

    def describe_model(self, model: str) -> EmbeddingProviderModel:
        """Return metadata for ``model``; ``dim`` may stay unset."""

    def capabilities(
        self,
        *,
        model: str | None = None,
    ) -> EmbeddingProviderCaps:
        """Return batching limits, optionally specific to ``model``."""

    def embed_texts(
        self,
        texts: Sequence[str],
        *,
        model: str,
        options: EmbedRequestOptions,
    ) -> EmbeddingMatrix:
        """Embed ``texts`` using ``model``; one vector per input, in order."""


@dataclass(frozen=True, slots=True)
class ProviderInitContext:
    logger: Logger
    config: Mapping[str, object] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "config", MappingProxyType(dict(self.config or {}))
        )


ProviderFactory = Callable[[ProviderInitContext], EmbeddingsProvider]


class ProviderRegistryError(RuntimeError):
    """Raised on invalid registry operations."""


class ProviderNotRegisteredError(ProviderRegistryError):
    """Raised when no factory is registered for the requested provider."""


def _normalize_key(key: str) -> str:
    normalized = key.strip().lower()
    if not normalized:
        raise ValueError("provider key cannot be empty")
    return normalized


class ProviderRegistry:
    """Case-insensitive mapping from provider name to factory."""

    def __init__(
        self,
        factories: Mapping[str, ProviderFactory] | None = None,
    ) -> None:
        self._factories: dict[str, ProviderFactory] = {}
        for key, factory in (factories or {}).items():
            self.register(key, factory)

    def register(self, key: str, factory: ProviderFactory) -> None:
        normalized = _normalize_key(key)
        if normalized in self._factories:
            raise ProviderRegistryError(
                f"Provider {normalized!r} already registered"
            )
        self._factories[normalized] = factory

    def unregister(self, key: str) -> None:
        self._factories.pop(_normalize_key(key), None)

    def create(
        self,
        key: str,
        *,
        logger: Logger,
        config: Mapping[str, object] | None = None,
    ) -> EmbeddingsProvider:
        """Build the provider registered under ``key``.

        Raises:
            ProviderNotRegisteredError: If ``key`` is unknown.
        """

        normalized = _normalize_key(key)
        factory = self._factories.get(normalized)
        if factory is None:
            raise ProviderNotRegisteredError(
                f"No embedding provider registered as {normalized!r}"
            )
        return factory(ProviderInitContext(logger=logger, config=config))

    def snapshot(self) -> Mapping[str, ProviderFactory]:
        return MappingProxyType(dict(self._factories))


def _deferred(module: str, attribute: str) -> ProviderFactory:
    """Return a factory that imports ``module`` on first use."""

    def factory(context: ProviderInitContext) -> EmbeddingsProvider:
        loaded = import_module(module, __name__)
        return getattr(loaded, attribute)(context)

    return factory


_BUILTIN_PROVIDERS = {
    "ollama": (".ollama", "ollama_provider_factory"),
    "openai": (".openai", "openai_provider_factory"),
}


def create_default_provider_registry() -> ProviderRegistry:
    """Return a registry holding the built-in providers.

    Example:
        >>> sorted(create_default_provider_registry().snapshot())
        ['ollama', 'openai']
    """

    registry = ProviderRegistry()
    for key, (module, attribute) in _BUILTIN_PROVIDERS.items():
        registry.register(key, _deferred(module, attribute))
    return registry
