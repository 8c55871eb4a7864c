"""Core utilities shared across :mod:`s3rag` modules.

Configuration loading, logging setup, workspace path resolution and the
snapshot writer lock live here so feature modules stay small.

Example:
    >>> from s3rag.core import get_logger
    >>> logger = get_logger(__name__)
    >>> isinstance(logger, object)
    True
"""

from __future__ import annotations

from .config import AppConfig, ConfigError, load_config
from .logging import configure_logging, get_logger
from .paths import WorkspacePaths, resolve_workspace

__all__ = [
    "AppConfig",
    "ConfigError",
    "configure_logging",
    "get_logger",
    "load_config",
    "WorkspacePaths",
    "resolve_workspace",
]
