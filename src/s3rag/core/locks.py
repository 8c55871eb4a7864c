"""Filesystem lock used to serialize writers of on-disk snapshots."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from pathlib import Path

__all__ = [
    "FileLock",
    "FileLockError",
    "FileLockTimeoutError",
    "lock_path_for",
]


class FileLockError(RuntimeError):
    """Base error type for lock file failures."""


class FileLockTimeoutError(FileLockError):
    """Raised when a lock could not be acquired before the timeout."""


@dataclass(slots=True)
class FileLock:
    """Exclusive lock file created with ``O_EXCL``.

    Example:
        >>> import tempfile
        >>> from pathlib import Path
        >>> target = Path(tempfile.mkdtemp()) / "index.lock"
        >>> with FileLock(target):
        ...     target.exists()
        True
        >>> target.exists()
        False
    """

    path: Path
    timeout: float = 5.0
    poll_interval: float = 0.05
    _handle: int | None = field(init=False, default=None, repr=False)

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> None:
        if self._handle is not None:
            return

        deadline = time.monotonic() + max(self.timeout, 0.0)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        while True:
            try:
                self._handle = os.open(
                    self.path,
                    os.O_CREAT | os.O_EXCL | os.O_WRONLY,
                )
                os.write(self._handle, str(os.getpid()).encode("ascii"))
                return
            except FileExistsError:
                if time.monotonic() >= deadline:
                    raise FileLockTimeoutError(
                        f"Timed out acquiring lock at {self.path}"
                    ) from None
                time.sleep(self.poll_interval)
            except OSError as exc:  # pragma: no cover - surfaced at runtime
                raise FileLockError(
                    f"Failed acquiring lock at {self.path}: {exc}"
                ) from exc

    def release(self) -> None:
        handle = self._handle
        if handle is None:
            return

        try:
            os.close(handle)
        finally:
            self._handle = None
            try:
                self.path.unlink()
            except FileNotFoundError:  # pragma: no cover - removed externally
                pass
            except OSError as exc:  # pragma: no cover - surfaced at runtime
                raise FileLockError(
                    f"Failed removing lock at {self.path}: {exc}"
                ) from exc

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def lock_path_for(target: Path, *, suffix: str = ".lock") -> Path:
    """Return the sibling lock file path guarding ``target``."""

    return target.with_name(f"{target.name}{suffix}")
