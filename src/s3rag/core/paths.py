"""Workspace path helpers for :mod:`s3rag`."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable
from zipfile import ZIP_DEFLATED, ZipFile

__all__ = [
    "CONFIG_FILENAME",
    "WorkspacePaths",
    "archive_workspace",
    "resolve_workspace",
]

CONFIG_FILENAME = "s3rag.toml"
_DEFAULT_WORKSPACE = Path("~/.s3rag")


@dataclass(frozen=True, slots=True)
class WorkspacePaths:
    """Resolved locations for a workspace instance.

    Example:
        >>> from pathlib import Path
        >>> paths = WorkspacePaths.for_root(Path("/tmp/s3rag"))
        >>> paths.config_file.name
        's3rag.toml'
        >>> paths.data_dir.name
        'data'
    """

    workspace: Path
    config_file: Path
    logs_dir: Path
    archives_dir: Path
    data_dir: Path

    @classmethod
    def for_root(cls, root: Path) -> "WorkspacePaths":
        return cls(
            workspace=root,
            config_file=root / CONFIG_FILENAME,
            logs_dir=root / "logs",
            archives_dir=root / "archives",
            data_dir=root / "data",
        )

    def iter_all(self) -> Iterable[Path]:
        """Yield every path managed within the workspace."""

        yield from (
            self.workspace,
            self.config_file,
            self.logs_dir,
            self.archives_dir,
            self.data_dir,
        )

    def resolve(self, candidate: str | Path) -> Path:
        """Resolve ``candidate`` against the workspace root when relative.

        Example:
            >>> from pathlib import Path
            >>> paths = WorkspacePaths.for_root(Path("/tmp/s3rag"))
            >>> paths.resolve("data/vector-store").as_posix()
            '/tmp/s3rag/data/vector-store'
            >>> paths.resolve("/srv/index").as_posix()
            '/srv/index'
        """

        path = Path(candidate).expanduser()
        if path.is_absolute():
            return path
        return self.workspace / path


def resolve_workspace(
    *,
    workspace_override: Path | None = None,
    env_override: Path | None = None,
) -> WorkspacePaths:
    """Resolve canonical workspace locations.

    The CLI flag wins over the ``S3RAG_WORKSPACE`` environment value, which in
    turn wins over ``~/.s3rag``.

    Raises:
        ValueError: If the resolved workspace points to a regular file.
    """

    base = Path(workspace_override or env_override or _DEFAULT_WORKSPACE)
    raw = base.expanduser()
    if not raw.is_absolute():
        raw = Path.cwd() / raw
    workspace = raw.resolve(strict=False)

    if workspace.exists() and workspace.is_file():
        raise ValueError(f"Workspace file path not allowed: {workspace}")

    return WorkspacePaths.for_root(workspace)


def _next_archive_path(archive_root: Path, timestamp: str) -> Path:
    suffix = 0
    while True:
        tail = "" if suffix == 0 else f"-{suffix:02d}"
        candidate = archive_root / f"{timestamp}{tail}.zip"
        if not candidate.exists():
            return candidate
        suffix += 1


def _add_to_zip(root: Path, path: Path, zf: ZipFile) -> None:
    relative = path.relative_to(root).as_posix()
    if path.is_dir():
        zf.writestr(relative.rstrip("/") + "/", "")
        for child in sorted(path.iterdir()):
            _add_to_zip(root, child, zf)
    else:
        zf.write(path, relative)


def archive_workspace(paths: WorkspacePaths) -> Path | None:
    """Move the current workspace contents into a timestamped ZIP archive.

    Everything except the ``archives/`` directory is zipped and then removed
    so ``init --refresh`` can start from a clean slate.

    Returns:
        The archive path when contents were moved, otherwise ``None``.

    Raises:
        ValueError: If the workspace path exists but is not a directory.
    """

    workspace = paths.workspace
    if not workspace.exists():
        return None
    if not workspace.is_dir():
        raise ValueError(
            f"Workspace path '{workspace}' exists but is not a directory."
        )

    archive_root = paths.archives_dir
    archive_root.mkdir(parents=True, exist_ok=True)

    entries = sorted(
        entry for entry in workspace.iterdir() if entry != archive_root
    )
    if not entries:
        if not any(archive_root.iterdir()):
            archive_root.rmdir()
        return None

    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    archive_path = _next_archive_path(archive_root, timestamp)

    with ZipFile(archive_path, mode="w", compression=ZIP_DEFLATED) as zf:
        for entry in entries:
            _add_to_zip(workspace, entry, zf)

    for entry in entries:
        if entry.is_dir():
            shutil.rmtree(entry)
        else:
            entry.unlink()

    return archive_path
