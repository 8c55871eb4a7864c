"""Tests for :mod:`s3rag.cli.init`."""

from __future__ import annotations

import tomllib
from pathlib import Path
from zipfile import ZipFile

import tomlkit

from s3rag.cli.init import init_workspace
from s3rag.core.config import DEFAULTS_RESOURCE_NAME


def test_init_workspace_creates_layout_and_config(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"

    config = init_workspace(workspace=workspace, bucket="docs")

    for name in ("logs", "archives", "data"):
        assert (workspace / name).is_dir()
    assert (workspace / DEFAULTS_RESOURCE_NAME).is_file()

    rendered = tomllib.loads((workspace / "s3rag.toml").read_text(encoding="utf-8"))
    assert rendered["workspace"]["root"] == str(workspace.resolve())
    assert rendered["s3"]["bucket"] == "docs"
    assert rendered["log_level"] == "INFO"
    assert config.s3.bucket == "docs"
    assert config.state_file_path == workspace.resolve() / "data" / ".sync-state.json"


def test_init_workspace_reuses_existing_config_without_refresh(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"
    init_workspace(workspace=workspace)

    config_path = workspace / "s3rag.toml"
    rendered = tomlkit.loads(config_path.read_text(encoding="utf-8"))
    rendered["log_level"] = "WARNING"
    rendered["s3"]["prefix"] = "guides/"
    config_path.write_text(tomlkit.dumps(rendered), encoding="utf-8")

    config = init_workspace(workspace=workspace)

    assert config.log_level == "WARNING"
    assert config.s3.prefix == "guides/"
    reread = tomllib.loads(config_path.read_text(encoding="utf-8"))
    assert reread["s3"]["prefix"] == "guides/"


def test_refresh_archives_and_regenerates(tmp_path: Path) -> None:
    workspace = tmp_path / "custom"
    init_workspace(workspace=workspace)
    (workspace / "data" / ".sync-state.json").write_text("{}", encoding="utf-8")
    (workspace / "s3rag.toml").write_text('log_level = "ERROR"\n', encoding="utf-8")

    config = init_workspace(workspace=workspace, refresh=True, log_level="debug")

    assert config.log_level == "DEBUG"
    rendered = tomllib.loads((workspace / "s3rag.toml").read_text(encoding="utf-8"))
    assert rendered["log_level"] == "DEBUG"
    assert not (workspace / "data" / ".sync-state.json").exists()

    archives = list((workspace / "archives").iterdir())
    assert len(archives) == 1
    with ZipFile(archives[0]) as archive:
        names = archive.namelist()
    assert "s3rag.toml" in names
    assert "data/.sync-state.json" in names


def test_env_layer_applies_before_cli_flags(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"

    from_env = init_workspace(
        workspace=workspace,
        env_overrides={"log_level": "warning", "s3": {"bucket": "env-bucket"}},
    )
    from_cli = init_workspace(
        workspace=workspace,
        env_overrides={"log_level": "warning", "s3": {"bucket": "env-bucket"}},
        log_level="debug",
        bucket="cli-bucket",
    )

    assert (from_env.log_level, from_env.s3.bucket) == ("WARNING", "env-bucket")
    assert (from_cli.log_level, from_cli.s3.bucket) == ("DEBUG", "cli-bucket")
