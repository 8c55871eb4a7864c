"""Structured logging for s3rag.

Every module logs through :func:`get_logger` with kebab-case event names
(``sync-start``, ``s3-list-failed``). Human output is rendered by Rich on
stderr; when a workspace is known, the same events are appended as JSON lines
to ``<workspace>/logs/s3rag.log``, rotated daily and gzipped.
"""

from __future__ import annotations

import gzip
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
import shutil
from typing import Any

from rich.console import Console
from rich.logging import RichHandler
import structlog

Logger = structlog.stdlib.BoundLogger

LOG_DIRNAME = "logs"
LOG_FILENAME = "s3rag.log"
_KEEP_DAYS = 7

# S3 and embedding clients log every request at DEBUG.
_TRANSPORT_LOGGERS = ("botocore", "boto3", "urllib3", "httpx", "httpcore", "openai")

_PRE_CHAIN = (
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
)


def _level_number(level: str) -> int:
    name = level.strip().upper()
    name = {"WARN": "WARNING"}.get(name, name)
    number = logging.getLevelName(name)
    if not isinstance(number, int):
        raise ValueError(f"Unsupported log level: {level!r}")
    return number


def _formatter(renderer: Any) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=list(_PRE_CHAIN),
    )


def _compress_rotated(source: str, dest: str) -> None:
    with open(source, "rb") as plain, gzip.open(dest, "wb") as packed:
        shutil.copyfileobj(plain, packed)
    Path(source).unlink(missing_ok=True)


def log_file_path(workspace: str | Path) -> Path:
    """Return where the JSON log for ``workspace`` lives."""

    root = Path(workspace).expanduser().resolve(strict=False)
    return root / LOG_DIRNAME / LOG_FILENAME


def _json_file_handler(path: Path) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = TimedRotatingFileHandler(
        path,
        when="midnight",
        backupCount=_KEEP_DAYS,
        utc=True,
        encoding="utf-8",
        delay=True,
    )
    handler.suffix = "%Y-%m-%d"
    handler.namer = lambda name: name + ".gz"
    handler.rotator = _compress_rotated
    handler.setFormatter(
        _formatter(structlog.processors.JSONRenderer(sort_keys=True))
    )
    return handler


def _rich_handler(console: Console | None) -> logging.Handler:
    handler = RichHandler(
        console=console or Console(stderr=True),
        rich_tracebacks=True,
        show_path=False,
        markup=False,
        enable_link_path=False,
        log_time_format="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(_formatter(structlog.dev.ConsoleRenderer(colors=False)))
    return handler


def configure_logging(
    *,
    level: str = "INFO",
    workspace_path: str | Path | None = None,
    console: Console | None = None,
) -> None:
    """Route structlog and stdlib logging to Rich and, optionally, a JSON file.

    Calling it again replaces the handlers installed by the previous call.
    Transport loggers never go below WARNING so ``--log-level debug`` shows
    s3rag's own events rather than every S3 or embedding request.

    Raises:
        ValueError: If ``level`` is not a recognized log level name.
    """

    number = _level_number(level)

    structlog.reset_defaults()
    structlog.configure(
        processors=[
            *_PRE_CHAIN,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handlers = [_rich_handler(console)]
    if workspace_path is not None:
        handlers.append(_json_file_handler(log_file_path(workspace_path)))

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()
    root.setLevel(number)
    for handler in handlers:
        handler.setLevel(number)
        root.addHandler(handler)

    for name in _TRANSPORT_LOGGERS:
        logging.getLogger(name).setLevel(max(number, logging.WARNING))
    logging.captureWarnings(True)


def get_logger(name: str | None = None, **initial_context: Any) -> Logger:
    """Return a structured logger bound to ``initial_context``.

    Example:
        >>> logger = get_logger(__name__, component="sync")
        >>> isinstance(logger, structlog.stdlib.BoundLogger)
        True
    """

    return structlog.get_logger(name).bind(**initial_context)


__all__ = [
    "LOG_DIRNAME",
    "LOG_FILENAME",
    "Logger",
    "configure_logging",
    "get_logger",
    "log_file_path",
]
