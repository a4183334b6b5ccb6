"""Command-line interface for GridSight."""

from gridsight.cli.main import cli

__all__ = ["cli"]
