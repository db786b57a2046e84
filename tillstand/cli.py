#!/usr/bin/env python3
"""Tillstand CLI - Declarative VMs, containers and apps for TrueNAS."""

import typer
from rich.console import Console

from tillstand.cli_state_commands import register_state_commands
from tillstand.core.logger import get_logger

app = typer.Typer(
    name="tillstand",
    help="""Tillstand - Declarative VMs, containers and apps for TrueNAS

One YAML file. Devices + power state.

Quick start:
  ts plan          # See what will change
  ts apply         # Make it happen
  ts status        # What is tracked

More commands: ts --help
""",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

register_state_commands(app, console)

if __name__ == "__main__":
    app()
