"""Load and persist :class:`SyncState` as JSON."""

from __future__ import annotations

from pathlib import Path

from pydantic import ValidationError

from s3rag.core.atomic import atomic_write_text
from s3rag.core.logging import Logger

from .models import SyncState

__all__ = ["SyncStateStore"]


class SyncStateStore:
    """File-backed store for the sync state.

    A missing, unreadable or invalid file is never fatal: :meth:`load` logs a
    warning and hands back a fresh empty state.
    """

    def __init__(self, path: Path, *, logger: Logger) -> None:
        self.path = path
        self._logger = logger

    def load(self) -> SyncState:
        if not self.path.exists():
            self._logger.debug("sync-state-missing", path=str(self.path))
            return SyncState()

        try:
            raw = self.path.read_text(encoding="utf-8")
            state = SyncState.model_validate_json(raw)
        except (OSError, ValidationError, ValueError) as exc:
            self._logger.warning(
                "sync-state-unreadable",
                path=str(self.path),
                error=str(exc),
            )
            return SyncState()

        self._logger.debug(
            "sync-state-loaded",
            path=str(self.path),
            documents=len(state.documents),
        )
        return state

    def save(self, state: SyncState) -> None:
        """Write ``state`` atomically, creating parent directories.

        Raises:
            OSError: If the file cannot be written.
        """

        atomic_write_text(self.path, state.to_json(), prefix=".sync-state-")
        self._logger.debug(
            "sync-state-saved",
            path=str(self.path),
            documents=len(state.documents),
        )
