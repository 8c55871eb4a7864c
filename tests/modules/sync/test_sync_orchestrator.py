from __future__ import annotations

import threading

import pytest

pytest.importorskip("faiss")

from s3rag.modules.remote import RemoteListError  # noqa: E402
from s3rag.modules.sync import SyncMode, SyncStateStore, SyncStatus  # noqa: E402
from s3rag.modules.sync.service import (  # noqa: E402
    SyncInProgressError,
    SyncOrchestrator,
)
from s3rag.modules.vdb.chunker import TextChunker  # noqa: E402
from s3rag.modules.vdb.index import VectorIndex  # noqa: E402


@pytest.fixture
def build(tmp_path, fake_store, make_embedder, rag_settings, stub_logger):
    """Return a factory so tests can rebuild the orchestrator from disk."""

    def _build(*, embedder=None) -> SyncOrchestrator:
        index = VectorIndex(
            store_path=tmp_path / "vector-store",
            embedder=embedder or make_embedder(),
            settings=rag_settings,
            logger=stub_logger,
        )
        index.initialize()
        orchestrator = SyncOrchestrator(
            store=fake_store,
            index=index,
            chunker=TextChunker(chunk_size=40, chunk_overlap=5),
            state_store=SyncStateStore(
                tmp_path / ".sync-state.json", logger=stub_logger
            ),
            logger=stub_logger,
        )
        orchestrator.load_state()
        return orchestrator

    return _build


def _index(orchestrator: SyncOrchestrator) -> VectorIndex:
    return orchestrator._index


def test_add_modify_delete_scenario(build, fake_store) -> None:
    orchestrator = build()
    fake_store.put("a.md", "alpha notes", "etag1")

    first = orchestrator.perform_sync(SyncMode.INCREMENTAL)
    assert (first.documents_added, first.documents_modified) == (1, 0)
    assert first.success

    fake_store.put("a.md", "beta notes", "etag2")
    second = orchestrator.perform_sync()
    assert (second.documents_added, second.documents_modified) == (0, 1)
    hits = _index(orchestrator).similarity_search("beta")
    assert [hit.chunk.etag for hit in hits] == ["etag2"]
    assert _index(orchestrator).similarity_search("alpha") == []

    fake_store.delete("a.md")
    third = orchestrator.perform_sync()
    assert third.documents_deleted == 1
    assert _index(orchestrator).keys() == ()
    assert orchestrator.get_indexed_files() == []


def test_incremental_sync_is_idempotent(build, fake_store) -> None:
    orchestrator = build()
    fake_store.put("a.md", "alpha", "1")
    fake_store.put("b.md", "beta", "1")
    orchestrator.perform_sync()
    fetches_after_first = len(fake_store.fetches)

    again = orchestrator.perform_sync()

    assert again.documents_added == again.documents_modified == again.documents_deleted == 0
    assert again.documents_unchanged == 2
    assert len(fake_store.fetches) == fetches_after_first


def test_state_and_index_stay_consistent(build, fake_store) -> None:
    orchestrator = build()
    long_text = "alpha beta gamma delta epsilon " * 10
    fake_store.put("long.md", long_text, "1")
    fake_store.put("short.md", "gamma", "1")

    orchestrator.perform_sync()

    index = _index(orchestrator)
    assert set(orchestrator.state.documents) == set(index.keys())
    for key, record in orchestrator.state.documents.items():
        assert record.chunk_count == len(index.chunk_ids_for(key))
        assert record.status is SyncStatus.INDEXED
    assert orchestrator.state.documents["long.md"].chunk_count > 1
    chunk = index._chunks[index.chunk_ids_for("short.md")[0]]
    assert chunk.source_uri == "s3://docs-bucket/short.md"


def test_per_document_failures_do_not_stop_the_run(build, fake_store) -> None:
    orchestrator = build()
    fake_store.put("ok.md", "alpha", "1")
    fake_store.put("broken.md", "beta", "1")
    fake_store.put("empty.md", "   \n", "1")
    fake_store.fail_fetch.add("broken.md")

    metrics = orchestrator.perform_sync()

    assert metrics.documents_added == 1
    assert not metrics.success
    assert sorted(error.key for error in metrics.errors) == ["broken.md", "empty.md"]
    assert set(orchestrator.state.documents) == {"ok.md"}

    fake_store.fail_fetch.clear()
    retry = orchestrator.perform_sync()
    assert retry.documents_added == 1
    assert [error.key for error in retry.errors] == ["empty.md"]


def test_failed_modification_keeps_previous_record(build, fake_store) -> None:
    orchestrator = build()
    fake_store.put("a.md", "alpha", "1")
    orchestrator.perform_sync()

    fake_store.put("a.md", "beta", "2")
    fake_store.fail_fetch.add("a.md")
    metrics = orchestrator.perform_sync()

    assert metrics.documents_modified == 0
    assert [error.key for error in metrics.errors] == ["a.md"]
    assert orchestrator.get_document_sync_info("a.md").etag == "1"

    fake_store.fail_fetch.clear()
    healed = orchestrator.perform_sync()
    assert healed.documents_modified == 1
    assert orchestrator.get_document_sync_info("a.md").etag == "2"


def test_full_sync_rebuilds_everything(build, fake_store) -> None:
    orchestrator = build()
    fake_store.put("a.md", "alpha", "1")
    fake_store.put("b.md", "beta", "1")
    orchestrator.perform_sync()

    metrics = orchestrator.perform_sync(SyncMode.FULL)

    assert metrics.documents_added == 2
    assert metrics.documents_unchanged == 0
    assert metrics.documents_scanned == 2
    assert _index(orchestrator).unique_file_count == 2
    assert _index(orchestrator).total_chunks == 2


def test_listing_failure_propagates_without_changes(build, fake_store, tmp_path) -> None:
    orchestrator = build()
    fake_store.put("a.md", "alpha", "1")
    orchestrator.perform_sync()
    state_before = (tmp_path / ".sync-state.json").read_text("utf-8")
    fake_store.fail_listing = True

    with pytest.raises(RemoteListError):
        orchestrator.perform_sync()

    assert (tmp_path / ".sync-state.json").read_text("utf-8") == state_before
    assert _index(orchestrator).keys() == ("a.md",)


def test_state_and_snapshot_survive_restart(build, fake_store) -> None:
    fake_store.put("a.md", "alpha", "1")
    build().perform_sync()

    restarted = build()
    metrics = restarted.perform_sync()

    assert metrics.documents_unchanged == 1
    assert metrics.documents_added == 0
    assert restarted.get_stats()["indexed"] == 1
    assert [hit.chunk.key for hit in _index(restarted).similarity_search("alpha")] == [
        "a.md"
    ]


def test_concurrent_sync_is_rejected(build, fake_store) -> None:
    orchestrator = build()
    entered = threading.Event()
    release = threading.Event()
    original = fake_store.list_documents

    def slow_listing():
        entered.set()
        release.wait(timeout=5)
        return original()

    fake_store.list_documents = slow_listing
    worker = threading.Thread(target=orchestrator.perform_sync)
    worker.start()
    try:
        assert entered.wait(timeout=5)
        with pytest.raises(SyncInProgressError):
            orchestrator.perform_sync()
    finally:
        release.set()
        worker.join(timeout=5)


def test_sync_waits_for_a_reader_instead_of_failing(build, fake_store) -> None:
    orchestrator = build()
    fake_store.put("a.md", "alpha", "1")
    holding = threading.Event()
    release = threading.Event()
    results: list[object] = []

    def reader() -> None:
        with orchestrator.index_lock():
            holding.set()
            release.wait(timeout=5)

    def syncer() -> None:
        try:
            results.append(orchestrator.perform_sync())
        except SyncInProgressError as exc:
            results.append(exc)

    reading = threading.Thread(target=reader)
    reading.start()
    assert holding.wait(timeout=5)
    syncing = threading.Thread(target=syncer)
    syncing.start()
    syncing.join(timeout=0.2)
    assert results == []

    release.set()
    reading.join(timeout=5)
    syncing.join(timeout=5)

    assert len(results) == 1
    assert not isinstance(results[0], SyncInProgressError)
    assert results[0].documents_added == 1


def test_snapshot_outliving_its_state_is_pruned(build, fake_store) -> None:
    fake_store.put("a.md", "alpha", "1")
    first = build()
    first.perform_sync()
    fake_store.delete("a.md")
    first.perform_sync()

    restarted = build()
    assert _index(restarted).keys() == ("a.md",)
    assert restarted.state.documents == {}

    metrics = restarted.perform_sync()

    assert metrics.success
    assert _index(restarted).keys() == ()
    assert _index(restarted).similarity_search("alpha") == []


def test_readded_key_replaces_chunks_loaded_from_snapshot(build, fake_store) -> None:
    fake_store.put("a.md", "alpha", "1")
    first = build()
    first.perform_sync()
    fake_store.delete("a.md")
    first.perform_sync()
    fake_store.put("a.md", "alpha again", "2")

    restarted = build()
    metrics = restarted.perform_sync()

    index = _index(restarted)
    record = restarted.get_document_sync_info("a.md")
    assert metrics.documents_added == 1
    assert record.chunk_count == len(index.chunk_ids_for("a.md")) == 1
    assert [hit.chunk.etag for hit in index.similarity_search("alpha")] == ["2"]


def test_stats_and_metrics_mapping(build, fake_store) -> None:
    orchestrator = build()
    fake_store.put("docs/a.md", "alpha", "1")

    metrics = orchestrator.perform_sync()
    payload = metrics.to_mapping()

    assert payload["documents_added"] == 1
    assert payload["success"] is True
    assert payload["errors"] == []
    stats = orchestrator.get_stats()
    assert stats["total_documents"] == 1
    assert stats["indexed"] == 1
    assert stats["errors"] == 0
    files = orchestrator.get_indexed_files()
    assert files[0]["key"] == "docs/a.md"
    assert files[0]["chunk_count"] == 1
    assert orchestrator.get_document_sync_info("missing.md") is None
