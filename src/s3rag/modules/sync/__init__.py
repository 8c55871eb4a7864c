"""Incremental synchronization of the remote document set into the index."""

from __future__ import annotations

from .detector import detect_changes
from .models import (
    DetectedChanges,
    STATE_VERSION,
    SyncError,
    SyncMetrics,
    SyncMode,
    SyncRecord,
    SyncState,
    SyncStatus,
)
from .state import SyncStateStore

__all__ = [
    "DetectedChanges",
    "STATE_VERSION",
    "SyncError",
    "SyncMetrics",
    "SyncMode",
    "SyncRecord",
    "SyncState",
    "SyncStateStore",
    "SyncStatus",
    "detect_changes",
]
