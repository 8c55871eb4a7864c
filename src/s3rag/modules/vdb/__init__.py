"""Vector database primitives: chunking, embeddings and the FAISS index.

The FAISS-backed pieces (:mod:`.faiss_index`, :mod:`.index`) are imported
from their modules directly so chunking and provider code stay importable
without the native library.
"""

from __future__ import annotations

from .chunker import DEFAULT_SEPARATORS, TextChunker
from .embeddings import (
    EmbeddingBackend,
    Embedder,
    OllamaBackend,
    OpenAIBackend,
    build_embedder,
    resolve_backend,
)
from .errors import (
    EmbeddingProviderConfigurationError,
    EmbeddingProviderError,
)
from .providers import (
    EmbedRequestOptions,
    EmbeddingMatrix,
    EmbeddingVector,
    EmbeddingsProvider,
    ProviderRegistry,
    create_default_provider_registry,
)

__all__ = [
    "DEFAULT_SEPARATORS",
    "EmbedRequestOptions",
    "Embedder",
    "EmbeddingBackend",
    "EmbeddingMatrix",
    "EmbeddingProviderConfigurationError",
    "EmbeddingProviderError",
    "EmbeddingVector",
    "EmbeddingsProvider",
    "OllamaBackend",
    "OpenAIBackend",
    "ProviderRegistry",
    "TextChunker",
    "build_embedder",
    "create_default_provider_registry",
    "resolve_backend",
]
