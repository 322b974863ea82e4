"""
Command-line interface for gcalsync.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from gcalsync import policy
from gcalsync.config import AppConfig
from gcalsync.config import load_config
from gcalsync.credentials import CredentialBroker
from gcalsync.db import StateDatabase
from gcalsync.executor import RateLimitedExecutor
from gcalsync.gateway import CalendarGateway
from gcalsync.gateway import GatewayPool
from gcalsync.models import DEFAULT_CONFIG
from gcalsync.models import DEFAULT_STATE_DB
from gcalsync.models import GcalsyncError
from gcalsync.models import SyncCancelled
from gcalsync.models import SyncStats
from gcalsync.models import UserError
from gcalsync.sync import CalendarSynchronizer
from gcalsync.sync import build_context

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Mirror events between Google calendars as blocker events.",
)

console = Console()

# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    state_db: Path = field(default_factory=lambda: DEFAULT_STATE_DB)
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    state_db: Annotated[
        Path,
        typer.Option("--state-db", help=f"State DB path (default: {DEFAULT_STATE_DB})"),
    ] = DEFAULT_STATE_DB,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.state_db = state_db
    state.verbose = verbose
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )
    logging.getLogger("googleapiclient").setLevel(logging.WARNING)


@contextmanager
def _guarded(action: str):
    """Map the error taxonomy onto a one-line message and the matching exit code."""
    try:
        yield
    except SyncCancelled as e:
        console.print(f"[yellow]Interrupted by user:[/] {e}")
        raise typer.Exit(e.exit_code) from None
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(SyncCancelled.exit_code) from None
    except GcalsyncError as e:
        console.print(f"[bold red]{action} failed:[/] {e}")
        raise typer.Exit(e.exit_code) from None
    except (typer.Exit, typer.Abort):
        raise
    except Exception as e:
        console.print_exception()
        console.print(f"[bold red]Unexpected error:[/] {e}")
        raise typer.Exit(1) from e


def _open_state_db() -> StateDatabase:
    return StateDatabase(state.state_db)


def _load_config() -> AppConfig:
    return load_config(state.config_path)


def _print_results(title: str, stats: SyncStats, dry_run: bool) -> None:
    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Added", str(stats.added))
    results.add_row("Modified", str(stats.modified))
    results.add_row("Deleted", str(stats.deleted))
    results.add_row("Unchanged", str(stats.unchanged))
    if stats.adopted:
        results.add_row("Adopted", str(stats.adopted))
    if dry_run:
        results.add_row("Mode", Text("DRY RUN", style="bold magenta"))

    console.print(Panel(results, title=f"[bold]{title}[/bold]", expand=False))


_DRY_RUN = Annotated[bool, typer.Option("--dry-run", "-n", help="Preview changes without applying")]
_YES = Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")]
_SOURCE = Annotated[str, typer.Argument(help="Calendar whose events are projected")]
_TARGET = Annotated[str, typer.Argument(help="Calendar that receives the blockers")]

# Every registered calendar receives blockers, so it must accept writes.
_WRITABLE_ROLES = ("owner", "writer")


# ---------------------------------------------------------------------------
# Subcommands: add / remove / list
# ---------------------------------------------------------------------------


def _print_picker_table(entries: list[dict]) -> None:
    """Print a numbered calendar table for interactive selection."""
    picker = Table(show_header=True, header_style="bold cyan")
    picker.add_column("#", style="bold", justify="right", width=3)
    picker.add_column("Name / Calendar ID", min_width=36, overflow="fold")
    picker.add_column("Access")
    for i, entry in enumerate(entries, 1):
        name_cell = Text()
        name_cell.append(entry.get("summary") or "(unnamed)", style="bold")
        if entry.get("primary"):
            name_cell.append("  (primary)", style="green")
        name_cell.append("\n")
        name_cell.append(entry["id"], style="dim")
        role = entry.get("accessRole", "")
        writable = role in _WRITABLE_ROLES
        picker.add_row(str(i), name_cell, Text(role, style="green" if writable else "yellow"))
    console.print(picker)


def _pick_calendars(entries: list[dict]) -> list[str]:
    """
    Prompt for a comma-separated list of entry numbers.
    Returns the chosen calendar IDs in the order given.
    """
    n = len(entries)
    answer = typer.prompt(f"Select calendars to sync [1-{n}, comma-separated]")
    chosen = []
    for part in answer.split(","):
        part = part.strip()
        if not part:
            continue
        if not part.isdigit() or not 1 <= int(part) <= n:
            console.print(f"[bold red]Error:[/] Invalid selection: {part!r}")
            raise typer.Exit(1)
        calendar_id = entries[int(part) - 1]["id"]
        if calendar_id not in chosen:
            chosen.append(calendar_id)
    return chosen


@app.command()
def add(
    account: Annotated[str, typer.Argument(help="Name for the Google account")],
    calendar: Annotated[
        list[str] | None,
        typer.Option("--calendar", "-C", help="Calendar ID to register (repeatable)"),
    ] = None,
) -> None:
    """Authorize an account and register its calendars.

    Without [cyan]--calendar[/], lists the account's calendars and prompts
    for the ones to sync.
    """
    with _guarded("Add"), _open_state_db() as db:
        cfg = _load_config()
        broker = CredentialBroker(cfg, db, interactive=True)
        executor = RateLimitedExecutor(cfg.rate_interval_ms)
        gateway = CalendarGateway(broker.get_service(account), executor, account)

        entries = gateway.list_calendars()
        calendar_ids = list(calendar or [])
        if not calendar_ids:
            if not entries:
                raise UserError(f"Account '{account}' has no calendars")
            _print_picker_table(entries)
            calendar_ids = _pick_calendars(entries)

        roles = {entry["id"]: entry.get("accessRole", "") for entry in entries}
        for calendar_id in calendar_ids:
            if calendar_id not in roles:
                logging.getLogger(__name__).warning(
                    f"{calendar_id} is not in the calendar list of '{account}'"
                )
            elif roles[calendar_id] not in _WRITABLE_ROLES:
                raise UserError(
                    f"Calendar {calendar_id} has '{roles[calendar_id]}' access for "
                    f"'{account}'; blockers need writer or owner access"
                )

        for calendar_id in calendar_ids:
            existing = db.get_calendar(calendar_id)
            if existing and existing.account_name != account:
                raise UserError(
                    f"Calendar {calendar_id} is already registered "
                    f"under account '{existing.account_name}'"
                )
            if db.add_calendar(account, calendar_id):
                console.print(f"[green]✓[/] Registered [bold]{calendar_id}[/] for {account}")
            else:
                console.print(f"[yellow]Already registered:[/] {calendar_id}")

    console.print("Run [cyan]gcalsync sync[/] to project events.")


@app.command()
def remove(
    calendar_id: Annotated[str, typer.Argument(help="Registered calendar ID")],
) -> None:
    """Unregister a calendar and drop its block edges.

    Blockers already placed in the calendar are withdrawn by the next sync.
    """
    with _guarded("Remove"), _open_state_db() as db:
        if not db.remove_calendar(calendar_id):
            raise UserError(f"Calendar {calendar_id} not found in gcalsync")
    console.print(f"[green]✓[/] Removed {calendar_id}. Run [cyan]gcalsync sync[/] to clean up.")


@app.command(name="list")
def list_() -> None:
    """Show registered calendars, blocker counts and block edges."""
    with _guarded("List"), _open_state_db() as db:
        calendars = db.list_calendars()
        counts = db.blocker_counts()
        blocks = db.list_blocks()

    if not calendars:
        console.print("[yellow]No calendars registered. Run[/] [cyan]gcalsync add ACCOUNT[/]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Account", style="bold")
    table.add_column("Calendar ID", overflow="fold")
    table.add_column("Blockers", justify="right")
    for cal in calendars:
        table.add_row(
            cal.account_name,
            cal.calendar_id,
            str(counts.get((cal.account_name, cal.calendar_id), 0)),
        )
    console.print(table)

    registered = {c.calendar_id for c in calendars}
    stale = {key: n for key, n in counts.items() if key[1] not in registered}
    for (account_name, calendar_id), n in sorted(stale.items()):
        console.print(
            f"[yellow]{n} blocker(s) left in unregistered {calendar_id} ({account_name})[/]"
        )

    if blocks:
        console.print("\n[bold]Blocked (Busy only):[/]")
        for source, target in blocks:
            console.print(f"  {source} → {target}")


# ---------------------------------------------------------------------------
# Subcommands: sync / desync
# ---------------------------------------------------------------------------


@app.command()
def sync(dry_run: _DRY_RUN = False) -> None:
    """Project every registered calendar's events into the others as blockers."""
    from gcalsync.preflight import run_preflight_checks

    if not run_preflight_checks(state.config_path, state.state_db, console):
        raise typer.Exit(1)

    with _guarded("Sync"), _open_state_db() as db:
        cfg = _load_config()
        broker = CredentialBroker(cfg, db, interactive=False)
        ctx = build_context(cfg, broker, dry_run=dry_run)
        stats = CalendarSynchronizer(ctx, db).sync()

    _print_results("Sync", stats, dry_run)


@app.command()
def desync(
    dry_run: _DRY_RUN = False,
    calendar: Annotated[
        str | None,
        typer.Option("--calendar", help="Only withdraw blockers held in this calendar"),
    ] = None,
    yes: _YES = False,
) -> None:
    """Withdraw every blocker gcalsync has created."""
    if not yes and not dry_run:
        scope = calendar or "all calendars"
        typer.confirm(f"Delete every gcalsync blocker from {scope}?", abort=True)

    with _guarded("Desync"), _open_state_db() as db:
        cfg = _load_config()
        broker = CredentialBroker(cfg, db, interactive=False)
        ctx = build_context(cfg, broker, dry_run=dry_run)
        stats = CalendarSynchronizer(ctx, db).desync(calendar)

    _print_results("Desync", stats, dry_run)


# ---------------------------------------------------------------------------
# Subcommands: block / unblock / blocks
# ---------------------------------------------------------------------------


@app.command()
def block(source: _SOURCE, target: _TARGET) -> None:
    """Show events from SOURCE in TARGET as anonymous 'Busy' blockers."""
    with _guarded("Block"), _open_state_db() as db:
        result = policy.add_block(db, source, target)
    if result is policy.PolicyResult.ADDED:
        console.print(f"[green]✓[/] Blocked {source} → {target}")
        console.print("Run [cyan]gcalsync sync[/] to apply.")


@app.command()
def unblock(source: _SOURCE, target: _TARGET) -> None:
    """Show full event titles from SOURCE in TARGET again."""
    with _guarded("Unblock"), _open_state_db() as db:
        result = policy.remove_block(db, source, target)
    if result is policy.PolicyResult.REMOVED:
        console.print(f"[green]✓[/] Unblocked {source} → {target}")
        console.print("Run [cyan]gcalsync sync[/] to apply.")


@app.command()
def blocks() -> None:
    """List block edges."""
    with _guarded("Blocks"), _open_state_db() as db:
        edges = policy.list_blocks(db)
    if not edges:
        console.print("No blocked calendars.")
        return
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Source", overflow="fold")
    table.add_column("Target", overflow="fold")
    for source, target in edges:
        table.add_row(source, target)
    console.print(table)


# ---------------------------------------------------------------------------
# Subcommand: verify
# ---------------------------------------------------------------------------


@app.command()
def verify() -> None:
    """Check that the index and the remote blockers agree.

    Exits with code 1 if any issues are found.
    """
    from gcalsync.verify import run_verify

    with _guarded("Verify"), _open_state_db() as db:
        cfg = _load_config()
        broker = CredentialBroker(cfg, db, interactive=False)
        executor = RateLimitedExecutor(cfg.rate_interval_ms)
        with executor.interruptible():
            ok = run_verify(db, GatewayPool(broker, executor), console)
    if not ok:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
