"""Tests for the index commands in :mod:`s3rag.cli.index`."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
from typer.testing import CliRunner

pytest.importorskip("faiss")

from s3rag.cli import create_app  # noqa: E402
from s3rag.service import DocumentIndexService  # noqa: E402


@pytest.fixture(autouse=True)
def reset_root_logging(monkeypatch: pytest.MonkeyPatch):
    for name in ("S3RAG_WORKSPACE", "S3RAG_LOG_LEVEL", "SYNC_MODE", "S3_BUCKET_NAME"):
        monkeypatch.delenv(name, raising=False)
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def workspace(tmp_path: Path, runner: CliRunner) -> Path:
    root = tmp_path / "workspace"
    result = runner.invoke(
        create_app(),
        ["--workspace", str(root), "init", "--bucket", "docs-bucket"],
    )
    assert result.exit_code == 0, result.output
    return root


@pytest.fixture
def invoke(runner, workspace, fake_store, embedder, monkeypatch):
    """Run a command against ``workspace`` with the fake store wired in."""

    def _build(config, logger):
        return DocumentIndexService.from_config(
            config,
            logger=logger,
            store=fake_store,
            embedder=embedder,
        )

    monkeypatch.setattr("s3rag.cli.index._build_service", _build)

    def _invoke(*args: str):
        return runner.invoke(
            create_app(),
            ["--workspace", str(workspace), "--log-level", "error", *args],
        )

    return _invoke


def test_commands_require_initialized_workspace(tmp_path: Path, runner: CliRunner) -> None:
    result = runner.invoke(
        create_app(),
        ["--workspace", str(tmp_path / "missing"), "stats"],
    )

    assert result.exit_code == 1
    assert "s3rag init" in result.output


def test_sync_reports_metrics(invoke, fake_store) -> None:
    fake_store.put("a.md", "alpha", "1")
    fake_store.put("b.md", "beta", "1")

    first = invoke("sync", "--json")
    second = invoke("sync", "--json")

    assert first.exit_code == 0, first.output
    assert json.loads(first.stdout)["documents_added"] == 2
    assert json.loads(second.stdout)["documents_unchanged"] == 2


def test_sync_full_renders_summary(invoke, fake_store) -> None:
    fake_store.put("a.md", "alpha", "1")

    result = invoke("sync", "--full")

    assert result.exit_code == 0, result.output
    assert "Full sync completed" in result.stdout
    assert "added: 1" in result.stdout


def test_sync_with_document_errors_exits_2(invoke, fake_store) -> None:
    fake_store.put("a.md", "alpha", "1")
    fake_store.put("broken.md", "beta", "1")
    fake_store.fail_fetch.add("broken.md")

    result = invoke("sync")

    assert result.exit_code == 2
    assert "broken.md" in result.stdout


def test_sync_listing_failure_exits_1(invoke, fake_store) -> None:
    fake_store.fail_listing = True

    result = invoke("sync")

    assert result.exit_code == 1
    assert "Sync failed" in result.output


def test_watch_mode_syncs_until_interrupted(invoke, fake_store, monkeypatch) -> None:
    fake_store.put("a.md", "alpha", "1")
    sleeps: list[float] = []

    def _fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        if len(sleeps) == 2:
            raise KeyboardInterrupt
        fake_store.put("b.md", "beta", "1")

    monkeypatch.setattr("s3rag.cli.index._sleep", _fake_sleep)

    result = invoke("sync", "--watch", "--json")

    assert result.exit_code == 0, result.output
    assert sleeps == [300, 300]
    assert "Stopped watching." in result.stdout
    assert fake_store.fetches == ["a.md", "b.md"]


def test_search_runs_startup_sync_then_prints_hits(invoke, fake_store) -> None:
    fake_store.put("guides/setup.md", "alpha setup", "1")

    result = invoke("search", "alpha", "--json")

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["total_results"] == 1
    assert payload["results"][0]["source"] == "guides/setup.md"

    text = invoke("search", "alpha")
    assert "1. guides/setup.md (Chunk 1/1, score 1.00)" in text.stdout


def test_search_survives_failed_startup_sync(invoke, fake_store) -> None:
    fake_store.put("a.md", "alpha", "1")
    assert invoke("sync").exit_code == 0
    fake_store.fail_listing = True

    result = invoke("search", "alpha")

    assert result.exit_code == 0, result.output
    assert "Startup sync failed" in result.output
    assert "1. a.md" in result.stdout


def test_files_info_and_stats(invoke, fake_store) -> None:
    fake_store.put("a.md", "alpha", "etag-a")
    invoke("sync")

    files = json.loads(invoke("files", "--json").stdout)
    info = json.loads(invoke("info", "a.md", "--json").stdout)
    stats = json.loads(invoke("stats", "--json").stdout)
    missing = invoke("info", "nope.md")

    assert [item["key"] for item in files] == ["a.md"]
    assert info["etag"] == "etag-a"
    assert info["chunk_count"] == 1
    assert info["status"] == "indexed"
    assert stats["indexed"] == 1
    assert stats["index"]["total_chunks"] == 1
    assert missing.exit_code == 1


def test_get_prints_document(invoke, fake_store) -> None:
    fake_store.put("a.md", "# Alpha\n\nalpha text", "1")

    result = invoke("get", "a.md")

    assert result.exit_code == 0, result.output
    assert "alpha text" in result.stdout


def test_get_distinguishes_stale_from_unknown(invoke, fake_store, monkeypatch) -> None:
    fake_store.put("a.md", "alpha", "1")
    assert invoke("sync").exit_code == 0
    fake_store.delete("a.md")
    monkeypatch.setenv("SYNC_MODE", "manual")

    stale = invoke("get", "a.md")
    unknown = invoke("get", "other.md")

    assert stale.exit_code == 3
    assert "run a sync" in stale.output
    assert unknown.exit_code == 1
