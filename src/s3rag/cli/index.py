"""Typer commands for syncing and querying the document index."""

from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import typer

from s3rag.core.config import (
    AppConfig,
    ConfigError,
    SyncTrigger,
    env_config_from_environ,
    load_config,
    load_packaged_defaults,
    read_user_config,
)
from s3rag.core.logging import Logger, configure_logging, get_logger
from s3rag.core.paths import WorkspacePaths, resolve_workspace
from s3rag.modules.remote import DocumentNotFoundError, RemoteStoreError
from s3rag.modules.sync import SyncMetrics, SyncMode
from s3rag.modules.sync.service import SyncServiceError
from s3rag.modules.vdb.errors import EmbeddingProviderError
from s3rag.service import DocumentIndexService, StaleDocumentError


@dataclass(slots=True)
class CLIOptions:
    """Global options captured by the top-level callback."""

    workspace: Path | None = None
    log_level: str | None = None


@dataclass(slots=True)
class IndexCLIContext:
    """Shared state for the index commands."""

    paths: WorkspacePaths
    config: AppConfig
    service: DocumentIndexService
    logger: Logger


_sleep = time.sleep

_SERVICE_ERRORS = (
    ConfigError,
    EmbeddingProviderError,
    RemoteStoreError,
    SyncServiceError,
)


def _resolve_paths(workspace: Path | None) -> WorkspacePaths:
    env_workspace = os.environ.get("S3RAG_WORKSPACE")
    env_override = Path(env_workspace).expanduser() if env_workspace else None
    return resolve_workspace(
        workspace_override=workspace,
        env_override=env_override,
    )


def load_workspace_config(
    paths: WorkspacePaths,
    *,
    log_level: str | None = None,
    environ: dict[str, str] | None = None,
) -> AppConfig:
    """Merge packaged defaults, ``s3rag.toml``, environment and CLI flags."""

    cli_overrides: dict[str, Any] = {"workspace": {"root": str(paths.workspace)}}
    if log_level:
        cli_overrides["log_level"] = log_level
    return load_config(
        defaults=load_packaged_defaults(),
        user_config=read_user_config(paths.config_file),
        env_config=env_config_from_environ(
            os.environ if environ is None else environ
        ),
        cli_overrides=cli_overrides,
    )


def _build_service(config: AppConfig, logger: Logger) -> DocumentIndexService:
    return DocumentIndexService.from_config(config, logger=logger)


def _fail(
    action: str,
    error: Exception,
    *,
    logger: Logger | None = None,
) -> NoReturn:
    typer.secho(f"{action.capitalize()} failed: {error}", fg=typer.colors.RED)
    if logger is not None:
        logger.error("cli-action-failed", action=action, error=str(error))
    raise typer.Exit(code=1) from error


def _require_context(ctx: typer.Context) -> IndexCLIContext:
    """Build (once) the command context from the global options."""

    existing = getattr(ctx, "obj", None)
    if isinstance(existing, IndexCLIContext):
        return existing
    options = existing if isinstance(existing, CLIOptions) else CLIOptions()

    try:
        paths = _resolve_paths(options.workspace)
    except ValueError as exc:
        typer.secho(f"Workspace error: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc

    if not paths.config_file.exists():
        typer.secho(
            (
                "Workspace config not found at "
                f"{paths.config_file}. Run `s3rag init` first."
            ),
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)

    try:
        config = load_workspace_config(paths, log_level=options.log_level)
    except ConfigError as exc:
        typer.secho(f"Failed to load workspace config: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc

    configure_logging(level=config.log_level, workspace_path=config.workspace)
    logger = get_logger(__name__, command=ctx.info_name or "s3rag")

    try:
        service = _build_service(config, logger)
    except _SERVICE_ERRORS as exc:
        _fail("setup", exc, logger=logger)

    context = IndexCLIContext(
        paths=paths,
        config=config,
        service=service,
        logger=logger,
    )
    ctx.obj = context
    return context


def _sync_on_startup(context: IndexCLIContext) -> None:
    if context.config.sync.mode is not SyncTrigger.STARTUP:
        return
    try:
        metrics = context.service.perform_sync(SyncMode.INCREMENTAL)
    except _SERVICE_ERRORS as exc:
        # Serve from the existing snapshot when the startup sync fails.
        typer.secho(f"Startup sync failed: {exc}", fg=typer.colors.YELLOW, err=True)
        context.logger.warning("startup-sync-failed", error=str(exc))
        return
    context.logger.info("startup-sync", **metrics.to_mapping())


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _render_metrics(metrics: SyncMetrics, *, mode: SyncMode) -> None:
    color = typer.colors.GREEN if metrics.success else typer.colors.YELLOW
    status = "completed" if metrics.success else "completed with errors"
    typer.secho(f"{mode.value.capitalize()} sync {status}", fg=color, bold=True)
    typer.echo(f"  duration: {metrics.duration:.2f}s")
    typer.echo(f"  scanned: {metrics.documents_scanned}")
    typer.echo(f"  added: {metrics.documents_added}")
    typer.echo(f"  modified: {metrics.documents_modified}")
    typer.echo(f"  deleted: {metrics.documents_deleted}")
    typer.echo(f"  unchanged: {metrics.documents_unchanged}")
    for error in metrics.errors:
        typer.secho(f"  error: {error.key}: {error.error}", fg=typer.colors.RED)


def _run_sync(context: IndexCLIContext, mode: SyncMode, json_output: bool) -> SyncMetrics:
    try:
        metrics = context.service.perform_sync(mode)
    except _SERVICE_ERRORS as exc:
        _fail("sync", exc, logger=context.logger)
    if json_output:
        _echo_json(metrics.to_mapping())
    else:
        _render_metrics(metrics, mode=mode)
    return metrics


def sync_command(
    ctx: typer.Context,
    full: bool = typer.Option(
        False,
        "--full",
        help="Clear the index and re-embed every document.",
    ),
    watch: bool = typer.Option(
        False,
        "--watch",
        help=(
            "Keep running and sync every `sync.interval_minutes` until "
            "interrupted."
        ),
    ),
    json_output: bool = typer.Option(False, "--json", help="Emit JSON metrics."),
) -> None:
    """Synchronize the index with the remote document store."""

    context = _require_context(ctx)
    mode = SyncMode.FULL if full else SyncMode.INCREMENTAL
    metrics = _run_sync(context, mode, json_output)
    if not watch:
        if not metrics.success:
            raise typer.Exit(code=2)
        return

    interval = context.config.sync.interval_minutes * 60
    context.logger.info("sync-watch-start", interval_seconds=interval)
    try:
        while True:
            _sleep(interval)
            try:
                _run_sync(context, SyncMode.INCREMENTAL, json_output)
            except typer.Exit:
                # Keep watching; the failure was already reported.
                continue
    except KeyboardInterrupt:
        context.logger.info("sync-watch-stop")
        typer.echo("Stopped watching.")


def search_command(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="Question or search text."),
    k: int | None = typer.Option(
        None,
        "--k",
        "-k",
        min=1,
        help="Maximum number of results (defaults to rag.max_results).",
    ),
    json_output: bool = typer.Option(False, "--json", help="Emit JSON results."),
) -> None:
    """Run a similarity search against the index."""

    from s3rag.tools import search_documentation

    context = _require_context(ctx)
    _sync_on_startup(context)
    try:
        payload = search_documentation(context.service, query, k)
    except _SERVICE_ERRORS as exc:
        _fail("search", exc, logger=context.logger)

    if json_output:
        _echo_json(payload)
        return
    if not payload["results"]:
        typer.secho(payload["context"], fg=typer.colors.YELLOW)
        return
    for position, result in enumerate(payload["results"], start=1):
        typer.secho(
            f"{position}. {result['source']} "
            f"({result['chunk_info']}, score {result['score']:.2f})",
            fg=typer.colors.CYAN,
            bold=True,
        )
        typer.echo(result["content"])
        typer.echo("")


def files_command(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Emit JSON records."),
) -> None:
    """List the documents recorded as indexed."""

    context = _require_context(ctx)
    files = context.service.get_indexed_files()
    if json_output:
        _echo_json(files)
        return
    if not files:
        typer.secho("No indexed documents.", fg=typer.colors.YELLOW)
        return
    for item in files:
        typer.echo(
            f"{item['key']}  chunks={item['chunk_count']}  "
            f"etag={item['etag']}  modified={item['last_modified'].isoformat()}"
        )


def info_command(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Document key."),
    json_output: bool = typer.Option(False, "--json", help="Emit JSON."),
) -> None:
    """Show the sync record of one document."""

    context = _require_context(ctx)
    record = context.service.get_document_sync_info(key)
    if record is None:
        typer.secho(f"{key} is not tracked.", fg=typer.colors.YELLOW)
        raise typer.Exit(code=1)
    payload = record.model_dump(mode="json")
    if json_output:
        _echo_json(payload)
        return
    typer.secho(key, fg=typer.colors.CYAN, bold=True)
    for field_name, value in sorted(payload.items()):
        typer.echo(f"  {field_name}: {value}")


def get_command(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Document key."),
    json_output: bool = typer.Option(False, "--json", help="Emit JSON."),
) -> None:
    """Print the full text of one document from the remote store."""

    from s3rag.tools import get_full_document

    context = _require_context(ctx)
    _sync_on_startup(context)
    try:
        payload = get_full_document(context.service, key)
    except StaleDocumentError as exc:
        typer.secho(str(exc), fg=typer.colors.YELLOW)
        context.logger.warning("get-stale-document", key=key)
        raise typer.Exit(code=3) from exc
    except DocumentNotFoundError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc
    except RemoteStoreError as exc:
        _fail("get", exc, logger=context.logger)

    if json_output:
        _echo_json(payload)
        return
    typer.echo(payload["content"])


def stats_command(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Emit JSON."),
) -> None:
    """Show sync and index statistics."""

    context = _require_context(ctx)
    stats = context.service.get_stats()
    if json_output:
        _echo_json(stats)
        return
    typer.secho("Index statistics", fg=typer.colors.CYAN, bold=True)
    typer.echo(f"  last sync: {stats['last_sync_date']}")
    typer.echo(f"  tracked documents: {stats['total_documents']}")
    typer.echo(f"  indexed: {stats['indexed']}")
    typer.echo(f"  errors: {stats['errors']}")
    typer.echo(f"  index files: {stats['index']['unique_files']}")
    typer.echo(f"  index chunks: {stats['index']['total_chunks']}")
    typer.echo(f"  store: {stats['index']['store_path']}")


def register_index_commands(app: typer.Typer) -> None:
    """Attach the index commands to ``app``."""

    app.command("sync", help="Synchronize the index with S3.")(sync_command)
    app.command("search", help="Search the indexed documentation.")(search_command)
    app.command("files", help="List indexed documents.")(files_command)
    app.command("info", help="Show the sync record for a document.")(info_command)
    app.command("get", help="Print a full document from S3.")(get_command)
    app.command("stats", help="Show sync and index statistics.")(stats_command)


__all__ = [
    "CLIOptions",
    "IndexCLIContext",
    "load_workspace_config",
    "register_index_commands",
]
