"""Command line entry points for mailvault."""

from typer import Typer

from ..archive.cli import archive_app


cli = Typer(help="mailvault command line tools")
cli.add_typer(archive_app, name="archive")

__all__ = ["cli", "archive_app"]
