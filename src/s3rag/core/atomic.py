"""Atomic file replacement helpers."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

__all__ = ["atomic_write_bytes", "atomic_write_text"]


def atomic_write_bytes(path: Path, data: bytes, *, prefix: str = ".s3rag-") -> None:
    """Write ``data`` to a sibling temp file and rename it over ``path``.

    Readers observe either the previous content or the new content, never a
    partial write. Parent directories are created when missing.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="wb",
            dir=path.parent,
            prefix=prefix,
            suffix=".tmp",
            delete=False,
        ) as handle:
            temp_path = Path(handle.name)
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    except OSError:
        if temp_path is not None:
            temp_path.unlink(missing_ok=True)
        raise


def atomic_write_text(
    path: Path,
    text: str,
    *,
    prefix: str = ".s3rag-",
) -> None:
    atomic_write_bytes(path, text.encode("utf-8"), prefix=prefix)
