"""State management commands: plan, apply, refresh, destroy, status."""
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from tillstand.config.loader import ConfigLoader
from tillstand.core.applicator import KIND_LABELS, SPEC_TYPES, format_plan
from tillstand.core.errors import TillstandError
from tillstand.core.lock import apply_lock
from tillstand.core.logger import get_logger

console = Console()
logger = get_logger(__name__)


def _load_plans(runner, config: Optional[str]):
    from tillstand.cli_support import find_config

    config_path = find_config(config)
    console.print(f"[dim]Using config: {config_path}[/dim]")
    specs = ConfigLoader(config_path).specs()
    return runner.plan(specs)


def plan(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Config file path"),
    state_file: Optional[str] = typer.Option(None, "--state-file", help="State file path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Show what apply would change (like 'terraform plan')."""
    from tillstand.cli_support import build_runner, handle_cli_error, setup_file_logging

    setup_file_logging(log_file=log_file, verbose=verbose, state_file=state_file)

    try:
        runner = build_runner(state_file)
        plans = _load_plans(runner, config)
    except (TillstandError, FileNotFoundError) as e:
        handle_cli_error(e, console, verbose)
        return

    console.print(format_plan(plans))


def apply(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Config file path"),
    state_file: Optional[str] = typer.Option(None, "--state-file", help="State file path"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show actions without applying"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Converge VMs, containers and apps to the configuration (like 'terraform apply')."""
    from tillstand.cli_support import (
        build_runner,
        confirm_action,
        handle_cli_error,
        is_mock,
        print_success,
        print_warning,
        setup_file_logging,
    )

    setup_file_logging(log_file=log_file, verbose=verbose, state_file=state_file)
    mock = is_mock()

    try:
        runner = build_runner(state_file, mock=mock)
        with apply_lock(state_file=runner.store.state_file):
            plans = _load_plans(runner, config)
            console.print(format_plan(plans))

            if mock or dry_run:
                # Mock responses carry no ids, so nothing past the plan can run
                print_warning(console, "DRY RUN - No changes applied")
                return

            if not any(p.has_changes for p in plans):
                # Still record refreshed state for resources that already match
                runner.apply(plans)
                print_success(console, "Infrastructure is up to date")
                return

            if not confirm_action("\nDo you want to apply these changes?", yes_flag=yes):
                print_warning(console, "Apply cancelled")
                return

            runner.apply(plans)
    except (TillstandError, FileNotFoundError) as e:
        logger.error(f"Apply failed: {e}")
        handle_cli_error(e, console, verbose)
        return

    changed = sum(1 for p in plans if p.has_changes)
    print_success(console, f"Apply complete: {changed} resource(s) changed")


def refresh(
    state_file: Optional[str] = typer.Option(None, "--state-file", help="State file path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Re-read every tracked resource and update the state file."""
    from tillstand.cli_support import build_runner, handle_cli_error, print_success, print_warning, setup_file_logging

    setup_file_logging(log_file=log_file, verbose=verbose, state_file=state_file)

    try:
        runner = build_runner(state_file)
        with apply_lock(state_file=runner.store.state_file):
            summary = runner.refresh()
    except TillstandError as e:
        handle_cli_error(e, console, verbose)
        return

    for label in summary["removed"]:
        print_warning(console, f"{label} no longer exists (removed from state)")
    print_success(console, f"Refreshed {len(summary['refreshed'])} resource(s)")


def destroy(
    kind: str = typer.Argument(..., help="Resource kind: vm, instance or app"),
    name: str = typer.Argument(..., help="Resource name"),
    state_file: Optional[str] = typer.Option(None, "--state-file", help="State file path"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Delete a tracked resource and forget it.

    Apps are only stopped; they stay installed.
    """
    from tillstand.cli_support import (
        build_runner,
        confirm_action,
        handle_cli_error,
        print_error,
        print_success,
        print_warning,
        setup_file_logging,
    )

    setup_file_logging(log_file=log_file, verbose=verbose, state_file=state_file)

    if kind not in SPEC_TYPES:
        print_error(console, f"Unknown kind '{kind}'. Use one of: {', '.join(SPEC_TYPES)}")
        raise typer.Exit(1)

    if not confirm_action(f"Destroy {kind} {name}?", yes_flag=yes):
        print_warning(console, "Destroy cancelled")
        return

    try:
        runner = build_runner(state_file)
        with apply_lock(state_file=runner.store.state_file):
            runner.destroy(kind, name)
    except TillstandError as e:
        handle_cli_error(e, console, verbose)
        return

    print_success(console, f"Destroyed {kind} {name}")


def status(
    state_file: Optional[str] = typer.Option(None, "--state-file", help="State file path"),
):
    """List tracked resources with their last known and desired state."""
    from tillstand.cli_support import print_info, resolve_state_file
    from tillstand.core.state_store import StateStore

    store = StateStore(resolve_state_file(state_file))
    tracked = store.list_resources()
    if not tracked:
        print_info(console, "No resources tracked yet. Run 'ts apply' first.")
        return

    table = Table(title="Tracked resources")
    table.add_column("Kind", style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("ID")
    table.add_column("State")
    table.add_column("Desired")

    for kind, name in tracked:
        spec = store.get_resource(kind, name) or {}
        current = spec.get("state") or "-"
        desired = spec.get("desired_state") or "-"
        style = "green" if current == desired else "yellow"
        table.add_row(
            kind,
            name,
            str(spec.get("id") if spec.get("id") is not None else "-"),
            f"[{style}]{current}[/{style}]",
            desired,
        )

    console.print(table)

    counts = ", ".join(f"{count} {KIND_LABELS[kind]}" for kind, count in store.get_stats().items())
    console.print(f"[dim]{counts}[/dim]")


def register_state_commands(app: typer.Typer, shared_console: Console):
    """Register state management commands with the main Typer app.

    Args:
        app: Main Typer application
        shared_console: Shared Rich console instance
    """
    global console
    console = shared_console

    app.command()(plan)
    app.command()(apply)
    app.command()(refresh)
    app.command()(destroy)
    app.command()(status)
