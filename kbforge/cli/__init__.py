"""kbforge command line interface."""

from kbforge.cli.main import app, cli_main

__all__ = ["app", "cli_main"]
