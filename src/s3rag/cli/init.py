"""Helpers for the ``s3rag init`` command."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping

from s3rag.core.config import (
    AppConfig,
    DEFAULTS_RESOURCE_NAME,
    load_config,
    load_packaged_defaults,
    read_packaged_defaults_text,
    read_user_config,
    render_user_config,
)
from s3rag.core.paths import WorkspacePaths, archive_workspace, resolve_workspace


def _ensure_directories(paths: WorkspacePaths) -> None:
    """Create the workspace directories if they are missing."""

    for directory in (
        paths.workspace,
        paths.logs_dir,
        paths.archives_dir,
        paths.data_dir,
    ):
        directory.mkdir(parents=True, exist_ok=True)


def init_workspace(
    *,
    workspace: Path,
    refresh: bool = False,
    log_level: str | None = None,
    env_overrides: Mapping[str, Any] | None = None,
    bucket: str | None = None,
) -> AppConfig:
    """Bootstrap the workspace directory and its configuration files.

    Example:
        >>> from pathlib import Path
        >>> config = init_workspace(workspace=Path("/tmp/s3rag-example"))
        >>> str(config.workspace).endswith("s3rag-example")
        True

    Args:
        workspace: Target directory for the workspace.
        refresh: Archive the existing workspace contents first.
        log_level: Optional override for the configured logging level.
        env_overrides: Config layer derived from the environment.
        bucket: Optional S3 bucket name to record in ``s3rag.toml``.

    Returns:
        The resolved configuration after applying overrides.
    """

    paths = resolve_workspace(workspace_override=workspace)

    if refresh:
        archive_workspace(paths)

    _ensure_directories(paths)

    cli_overrides: dict[str, Any] = {"workspace": {"root": str(paths.workspace)}}
    if log_level:
        cli_overrides["log_level"] = log_level
    if bucket:
        cli_overrides["s3"] = {"bucket": bucket}

    config_path = paths.config_file
    user_config = {} if refresh else read_user_config(config_path)
    config = load_config(
        defaults=load_packaged_defaults(),
        user_config=user_config,
        env_config=env_overrides,
        cli_overrides=cli_overrides,
    )

    defaults_path = paths.workspace / DEFAULTS_RESOURCE_NAME
    if refresh or not defaults_path.exists():
        defaults_path.write_text(read_packaged_defaults_text(), encoding="utf-8")

    if refresh or not config_path.exists():
        config_path.write_text(render_user_config(config), encoding="utf-8")

    return config


__all__ = ["init_workspace"]
