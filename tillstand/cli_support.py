"""Shared utilities for Tillstand CLI modules."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from tillstand.core.state_store import DEFAULT_STATE_FILE, StateStore
from tillstand.services.truenas.gateway import MidcltGateway

# Default config search paths (ordered by proximity to current run)
CONFIG_PATHS = [
    "./tillstand.yml",
    str(Path.home() / ".config" / "tillstand" / "tillstand.yml"),
    "/etc/tillstand/tillstand.yml",
]


def find_config(config_path: Optional[str] = None) -> str:
    """Locate the active Tillstand configuration file."""
    if config_path:
        return config_path

    if env_config := os.environ.get("TILLSTAND_CONFIG"):
        return env_config

    for path in CONFIG_PATHS:
        if Path(path).exists():
            return path

    return "tillstand.yml"


def is_mock() -> bool:
    """Return True when CLI runs in mock mode."""
    return os.environ.get("TILLSTAND_MOCK") == "1"


def resolve_state_file(state_file: Optional[str] = None) -> Path:
    return Path(state_file) if state_file else Path.cwd() / DEFAULT_STATE_FILE


def setup_file_logging(
    log_file: Optional[str] = None,
    verbose: bool = False,
    state_file: Optional[str] = None,
) -> Path:
    """Start the run log, beside the state file unless a log path is configured."""
    from tillstand.core.logger import setup_file_logging as _setup_file_logging
    return _setup_file_logging(
        log_file=log_file,
        verbose=verbose,
        log_dir=resolve_state_file(state_file).parent,
    )


def build_runner(state_file: Optional[str] = None, mock: Optional[bool] = None):
    """Create an ApplyRunner wired to midclt and the state store."""
    from tillstand.core.applicator import ApplyRunner

    if mock is None:
        mock = is_mock()
    store = StateStore(resolve_state_file(state_file))
    return ApplyRunner(MidcltGateway(mock=mock), store)


def confirm_action(message: str, yes_flag: bool = False, mock: bool = False) -> bool:
    """Prompt user for confirmation unless --yes or mock mode."""
    if yes_flag or mock:
        return True
    return typer.confirm(message)


def handle_cli_error(
    e: Exception,
    console: Console,
    verbose: bool = False,
    exit_code: int = 1
) -> None:
    """Print an error and exit.

    Args:
        e: Exception to handle
        console: Rich console for output
        verbose: Show exception traceback if True
        exit_code: Exit code to use
    """
    console.print(f"[red]Error:[/red] {e}")
    if verbose:
        console.print_exception()
    raise typer.Exit(exit_code)


def print_success(console: Console, message: str, prefix: str = "✓") -> None:
    console.print(f"[green]{prefix}[/green] {message}")


def print_error(console: Console, message: str, prefix: str = "✗") -> None:
    console.print(f"[red]{prefix}[/red] {message}")


def print_warning(console: Console, message: str, prefix: str = "⚠") -> None:
    console.print(f"[yellow]{prefix}[/yellow] {message}")


def print_info(console: Console, message: str, prefix: str = "ℹ") -> None:
    console.print(f"[blue]{prefix}[/blue] {message}")
