"""phasegate command-line interface (typer)."""

from phasegate.cli.app import app

__all__ = ["app"]
