"""
CLI layer for mapflow.

Provides a Typer application whose commands delegate to the operations
layer (``mapflow.ops``).  All business logic lives in ops; this package
handles only terminal transport: argument parsing, coloured output and
table formatting.

Entry point::

    mapflow --help
"""

from mapflow.cli.app import app

__all__ = ["app"]
