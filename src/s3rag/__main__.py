"""Console-script entry point for :mod:`s3rag`."""

from __future__ import annotations

from s3rag.cli import create_app


def main() -> None:
    """Execute the CLI application.

    Example:
        >>> from s3rag.__main__ import main
        >>> main()  # doctest: +SKIP
    """

    app = create_app()
    app(prog_name="s3rag")


if __name__ == "__main__":  # pragma: no cover - exercised via console script
    main()


__all__ = ["main"]
