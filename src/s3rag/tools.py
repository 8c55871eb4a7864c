"""Transport-agnostic tool payloads for agents querying the index.

Each function takes a :class:`~s3rag.service.DocumentIndexService` and
returns plain JSON-ready mappings so any protocol layer can expose them.
"""

from __future__ import annotations

from typing import Any

from s3rag.core.logging import get_logger
from s3rag.modules.remote import RemoteStoreError
from s3rag.modules.sync import SyncMetrics, SyncMode
from s3rag.modules.sync.service import SyncServiceError
from s3rag.service import DocumentIndexService

__all__ = [
    "RESOURCE_MIME_TYPE",
    "RESOURCE_SCHEME",
    "ResourceURIError",
    "get_full_document",
    "list_resources",
    "read_resource",
    "refresh_index",
    "search_documentation",
]

RESOURCE_SCHEME = "s3doc://"
RESOURCE_MIME_TYPE = "text/markdown"
_SHORT_QUERY_WORDS = 2

_logger = get_logger(__name__)


class ResourceURIError(ValueError):
    """Raised when a resource URI does not use the ``s3doc://`` scheme."""


def _short_query_hint(query: str) -> str:
    return (
        f'Short keyword queries like "{query}" tend to score low even when '
        "the documents cover them. Try a full question instead, for example "
        f'"What is {query}?" or "How does {query} work?".'
    )


def search_documentation(
    service: DocumentIndexService,
    query: str,
    max_results: int | None = None,
) -> dict[str, Any]:
    """Search the index and format hits as results plus an LLM context."""

    hits = service.similarity_search(query, max_results)
    if not hits:
        threshold = service.index.min_similarity_score
        context = (
            f'No match found for "{query}". The query may be off-topic, the '
            "documents may not cover it, or every match scored below "
            f"{threshold:.0%}."
        )
        if len(query.split()) <= _SHORT_QUERY_WORDS:
            context = f"{context}\n\n{_short_query_hint(query)}"
        _logger.info("search-no-results", query=query)
        return {"results": [], "context": context, "total_results": 0}

    results = []
    sections = []
    for position, hit in enumerate(hits, start=1):
        chunk = hit.chunk
        chunk_info = f"Chunk {chunk.chunk_index + 1}/{chunk.total_chunks}"
        results.append(
            {
                "content": chunk.text,
                "source": chunk.key,
                "source_uri": chunk.source_uri,
                "score": round(hit.score, 2),
                "chunk_info": chunk_info,
            }
        )
        sections.append(
            f"## Source {position}: {chunk.key} "
            f"(similarity: {hit.score:.0%})\n{chunk_info}\n\n{chunk.text}"
        )
    return {
        "results": results,
        "context": "\n\n---\n\n".join(sections),
        "total_results": len(results),
    }


def _metrics_payload(metrics: SyncMetrics | None) -> dict[str, Any]:
    if metrics is None:
        return {
            "duration_seconds": 0.0,
            "documents_scanned": 0,
            "documents_added": 0,
            "documents_modified": 0,
            "documents_deleted": 0,
            "documents_unchanged": 0,
            "errors_count": 1,
        }
    return {
        "duration_seconds": round(metrics.duration, 2),
        "documents_scanned": metrics.documents_scanned,
        "documents_added": metrics.documents_added,
        "documents_modified": metrics.documents_modified,
        "documents_deleted": metrics.documents_deleted,
        "documents_unchanged": metrics.documents_unchanged,
        "errors_count": len(metrics.errors),
    }


def refresh_index(
    service: DocumentIndexService,
    force: bool = False,
) -> dict[str, Any]:
    """Run a sync; ``force`` selects a full rebuild instead of incremental."""

    mode = SyncMode.FULL if force else SyncMode.INCREMENTAL
    try:
        metrics = service.perform_sync(mode)
    except (SyncServiceError, RemoteStoreError) as exc:
        _logger.error("refresh-failed", mode=mode.value, error=str(exc))
        return {
            "success": False,
            "message": f"Error: {exc}",
            "metrics": _metrics_payload(None),
        }

    if metrics.success:
        message = f"{mode.value} synchronization completed successfully"
    else:
        message = (
            f"{mode.value} synchronization completed with "
            f"{len(metrics.errors)} error(s)"
        )
    return {
        "success": metrics.success,
        "message": message,
        "metrics": _metrics_payload(metrics),
        "errors": [
            {"key": error.key, "error": error.error} for error in metrics.errors
        ],
    }


def get_full_document(service: DocumentIndexService, key: str) -> dict[str, Any]:
    """Return the complete document text and its metadata.

    Raises:
        StaleDocumentError: If ``key`` is indexed but gone remotely.
        DocumentNotFoundError: If ``key`` does not exist.
    """

    document = service.get_full_document(key)
    record = service.get_document_sync_info(key)
    return {
        "s3_key": document.key,
        "content": document.content,
        "metadata": {
            "size_bytes": document.metadata.size,
            "last_modified": document.metadata.last_modified.isoformat(),
            "etag": document.metadata.etag,
            "chunk_count": record.chunk_count if record is not None else None,
        },
    }


def list_resources(service: DocumentIndexService) -> list[dict[str, Any]]:
    """List every indexed document as an ``s3doc://`` resource."""

    resources = []
    for item in service.get_indexed_files():
        key = item["key"]
        resources.append(
            {
                "uri": f"{RESOURCE_SCHEME}{key}",
                "name": key.rsplit("/", 1)[-1] or key,
                "description": (
                    f"Documentation file with {item['chunk_count']} chunks"
                ),
                "mimeType": RESOURCE_MIME_TYPE,
                "annotations": {
                    "lastModified": item["last_modified"].isoformat(),
                    "etag": item["etag"],
                    "chunks": item["chunk_count"],
                },
            }
        )
    return resources


def read_resource(service: DocumentIndexService, uri: str) -> dict[str, Any]:
    """Return the text behind an ``s3doc://`` URI.

    Raises:
        ResourceURIError: If ``uri`` has another scheme or no key.
    """

    if not uri.startswith(RESOURCE_SCHEME):
        raise ResourceURIError(f"Unsupported resource URI: {uri}")
    key = uri[len(RESOURCE_SCHEME):]
    if not key:
        raise ResourceURIError(f"Resource URI has no document key: {uri}")
    document = service.get_full_document(key)
    return {"uri": uri, "mimeType": RESOURCE_MIME_TYPE, "text": document.content}
