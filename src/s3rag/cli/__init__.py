"""Command-line interface for :mod:`s3rag`.

This module exposes the Typer application behind the ``s3rag`` console script.
``init`` bootstraps a workspace; the index commands live in
:mod:`s3rag.cli.index`.

Example:
    >>> import typer
    >>> from s3rag.cli import create_app
    >>> app = create_app()
    >>> isinstance(app, typer.Typer)
    True
"""

from __future__ import annotations

import os
from pathlib import Path

import typer

from s3rag.cli.index import CLIOptions, register_index_commands
from s3rag.cli.init import init_workspace
from s3rag.core.config import (
    AppConfig,
    ConfigError,
    DEFAULTS_RESOURCE_NAME,
    env_config_from_environ,
)
from s3rag.core.logging import configure_logging, get_logger
from s3rag.core.paths import resolve_workspace

_app_help = (
    "Semantic search over Markdown documentation stored in S3."
    "\n\n"
    "Use `s3rag init` to bootstrap a workspace, then `s3rag sync` to build "
    "the index and `s3rag search` to query it."
)


def _emit_workspace_summary(
    *,
    config: AppConfig,
    refresh: bool,
    existing: bool,
) -> None:
    """Print a human-friendly summary of bootstrap results."""

    typer.secho("Workspace initialized", fg=typer.colors.GREEN, bold=True)
    typer.echo(f"  workspace: {config.workspace}")
    typer.echo(f"  config: {config.workspace / 's3rag.toml'}")
    typer.echo(f"  defaults: packaged resource ({DEFAULTS_RESOURCE_NAME})")
    typer.echo(f"  log level: {config.log_level}")
    typer.echo(f"  bucket: {config.s3.bucket or '(not set)'}")
    typer.echo(f"  embeddings: {config.embeddings.provider}")
    typer.echo(f"  vector store: {config.vector_store_path}")

    if existing and not refresh:
        typer.echo("  note: existing workspace detected; files left untouched")
    elif refresh:
        typer.echo("  note: archived previous workspace before refresh")


def create_app() -> "typer.Typer":
    """Return the Typer application powering the ``s3rag`` CLI.

    Returns:
        A configured Typer application ready to be invoked by ``s3rag``.
    """

    app = typer.Typer(
        help=_app_help,
        no_args_is_help=True,
        rich_markup_mode="rich",
        invoke_without_command=False,
        cls=typer.core.TyperGroup,
    )

    @app.callback()
    def main_callback(
        ctx: typer.Context,
        workspace: Path | None = typer.Option(
            None,
            "--workspace",
            "-w",
            help=(
                "Override the workspace directory (defaults to $HOME/.s3rag "
                "or S3RAG_WORKSPACE)."
            ),
        ),
        log_level: str | None = typer.Option(
            None,
            "--log-level",
            "-l",
            help="Override the logging level (DEBUG/INFO/WARNING/ERROR).",
        ),
    ) -> None:
        """Capture global options for the subcommands."""

        ctx.obj = CLIOptions(workspace=workspace, log_level=log_level)

    @app.command(
        "init",
        help="Bootstrap a workspace and seed configuration files.",
    )
    def init_command(
        ctx: typer.Context,
        refresh: bool = typer.Option(
            False,
            "--refresh",
            help=(
                "Archive existing workspace contents before regenerating a "
                "clean layout."
            ),
        ),
        bucket: str | None = typer.Option(
            None,
            "--bucket",
            "-b",
            help="S3 bucket holding the documentation.",
        ),
    ) -> None:
        """Initialize (or refresh) the local workspace.

        Example:
            >>> from typer.testing import CliRunner
            >>> runner = CliRunner()
            >>> app = create_app()
            >>> result = runner.invoke(app, ["init", "--help"])
            >>> result.exit_code
            0
        """

        options = ctx.obj if isinstance(ctx.obj, CLIOptions) else CLIOptions()

        env_workspace = os.environ.get("S3RAG_WORKSPACE")
        env_workspace_path = (
            Path(env_workspace).expanduser() if env_workspace else None
        )

        try:
            paths = resolve_workspace(
                workspace_override=options.workspace,
                env_override=env_workspace_path,
            )
        except ValueError as exc:
            typer.secho(f"Workspace error: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1) from exc

        workspace_exists = paths.workspace.exists()

        try:
            config = init_workspace(
                workspace=paths.workspace,
                refresh=refresh,
                log_level=options.log_level,
                env_overrides=env_config_from_environ(os.environ),
                bucket=bucket,
            )
        except (ConfigError, OSError, ValueError) as exc:
            typer.secho(
                f"Failed to initialize workspace: {exc}",
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1) from exc

        configure_logging(
            level=config.log_level,
            workspace_path=config.workspace,
        )
        logger = get_logger(__name__, command="init")
        logger.info(
            "init-complete",
            workspace=str(config.workspace),
            refresh=refresh,
            bucket=config.s3.bucket,
            provider=config.embeddings.provider,
        )

        _emit_workspace_summary(
            config=config,
            refresh=refresh,
            existing=workspace_exists,
        )

    register_index_commands(app)
    return app


__all__ = ["create_app"]
