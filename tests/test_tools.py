from __future__ import annotations

import pytest

pytest.importorskip("faiss")

from s3rag import tools  # noqa: E402
from s3rag.modules.remote import DocumentNotFoundError  # noqa: E402
from s3rag.service import StaleDocumentError  # noqa: E402


@pytest.fixture
def synced(index_service, fake_store):
    fake_store.put("guides/setup.md", "alpha alpha setup steps", "e-setup")
    fake_store.put("guides/faq.md", "beta answers", "e-faq")
    index_service.perform_sync()
    return index_service


def test_search_formats_results_and_context(synced) -> None:
    payload = tools.search_documentation(synced, "alpha setup", max_results=2)

    assert payload["total_results"] == 1
    result = payload["results"][0]
    assert result["source"] == "guides/setup.md"
    assert result["source_uri"] == "s3://docs-bucket/guides/setup.md"
    assert result["chunk_info"] == "Chunk 1/1"
    assert result["score"] == 1.0
    assert payload["context"].startswith("## Source 1: guides/setup.md")
    assert "alpha alpha setup steps" in payload["context"]


def test_search_without_match_reports_threshold_and_hint(synced) -> None:
    payload = tools.search_documentation(synced, "epsilon")

    assert payload["results"] == []
    assert payload["total_results"] == 0
    assert "50%" in payload["context"]
    assert "What is epsilon?" in payload["context"]


def test_search_without_match_skips_hint_for_long_queries(synced) -> None:
    payload = tools.search_documentation(synced, "how do I configure epsilon")

    assert payload["total_results"] == 0
    assert "What is" not in payload["context"]


def test_refresh_reports_metrics(index_service, fake_store) -> None:
    fake_store.put("a.md", "alpha", "1")
    fake_store.put("b.md", "beta", "1")

    first = tools.refresh_index(index_service)
    second = tools.refresh_index(index_service, force=True)

    assert first["success"] is True
    assert first["message"] == "incremental synchronization completed successfully"
    assert first["metrics"]["documents_added"] == 2
    assert first["errors"] == []
    assert second["message"] == "full synchronization completed successfully"
    assert second["metrics"]["documents_added"] == 2
    assert second["metrics"]["documents_unchanged"] == 0


def test_refresh_lists_per_document_errors(index_service, fake_store) -> None:
    fake_store.put("a.md", "alpha", "1")
    fake_store.put("broken.md", "beta", "1")
    fake_store.fail_fetch.add("broken.md")

    payload = tools.refresh_index(index_service)

    assert payload["success"] is False
    assert payload["message"].endswith("with 1 error(s)")
    assert payload["metrics"]["errors_count"] == 1
    assert [error["key"] for error in payload["errors"]] == ["broken.md"]


def test_refresh_listing_failure_is_reported(index_service, fake_store) -> None:
    fake_store.fail_listing = True

    payload = tools.refresh_index(index_service)

    assert payload["success"] is False
    assert payload["message"].startswith("Error:")
    assert payload["metrics"]["errors_count"] == 1
    assert payload["metrics"]["documents_scanned"] == 0


def test_get_full_document_payload(synced) -> None:
    payload = tools.get_full_document(synced, "guides/faq.md")

    assert payload["s3_key"] == "guides/faq.md"
    assert payload["content"] == "beta answers"
    assert payload["metadata"]["etag"] == "e-faq"
    assert payload["metadata"]["size_bytes"] == len("beta answers")
    assert payload["metadata"]["chunk_count"] == 1
    assert payload["metadata"]["last_modified"].startswith("2024-01-01")


def test_list_resources_describes_indexed_documents(synced) -> None:
    resources = {item["uri"]: item for item in tools.list_resources(synced)}

    setup = resources["s3doc://guides/setup.md"]
    assert setup["name"] == "setup.md"
    assert setup["mimeType"] == "text/markdown"
    assert setup["description"] == "Documentation file with 1 chunks"
    assert setup["annotations"]["etag"] == "e-setup"
    assert set(resources) == {"s3doc://guides/setup.md", "s3doc://guides/faq.md"}


def test_read_resource_returns_text(synced) -> None:
    payload = tools.read_resource(synced, "s3doc://guides/faq.md")

    assert payload == {
        "uri": "s3doc://guides/faq.md",
        "mimeType": "text/markdown",
        "text": "beta answers",
    }


@pytest.mark.parametrize("uri", ["s3://docs-bucket/a.md", "s3doc://"])
def test_read_resource_rejects_bad_uris(synced, uri) -> None:
    with pytest.raises(tools.ResourceURIError):
        tools.read_resource(synced, uri)


def test_read_resource_of_deleted_document(synced, fake_store) -> None:
    fake_store.delete("guides/faq.md")

    with pytest.raises(StaleDocumentError):
        tools.read_resource(synced, "s3doc://guides/faq.md")
    with pytest.raises(DocumentNotFoundError):
        tools.read_resource(synced, "s3doc://guides/never.md")
