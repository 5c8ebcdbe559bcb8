"""Console-script entry point for :mod:`kbsync`."""

from __future__ import annotations

from kbsync.cli import create_app


def main() -> None:
    """Execute the CLI application."""

    app = create_app()
    app(prog_name="kbsync")


if __name__ == "__main__":  # pragma: no cover - exercised via console script
    main()


__all__ = ["main"]
