"""
Preflight checks run before sync to catch common misconfigurations early.
"""

import logging
import sqlite3
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from gcalsync.config import load_config
from gcalsync.models import ConfigError

logger = logging.getLogger(__name__)


def run_preflight_checks(
    config_path: Path,
    db_path: Path,
    console: Console,
    min_calendars: int = 2,
) -> bool:
    """Return True if sync may proceed; print issues and return False otherwise."""
    issues: list[tuple[str, str, str]] = []  # (label, detail, hint)

    # 1. Configuration loads
    try:
        load_config(config_path)
    except ConfigError as e:
        logger.error(f"Configuration unusable: {e}")
        issues.append(
            ("Configuration", str(e), f"Create {config_path} with a [google] client_id/secret")
        )

    # 2. State DB parent dir writable + DB readable if it exists
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Cannot create state DB directory {db_path.parent}: {e}")
        issues.append(
            ("State database", f"{db_path}: {e}", f"Check permissions on {db_path.parent}")
        )
    else:
        if not db_path.exists():
            issues.append(
                ("Calendars", "no state database yet", "Run: gcalsync add ACCOUNT")
            )
        else:
            try:
                conn = sqlite3.connect(db_path)
                # BEGIN IMMEDIATE needs a journal file next to the DB.
                conn.execute("BEGIN IMMEDIATE")
                conn.execute("ROLLBACK")
                # 3. Enough calendars registered to project anything, or rows to withdraw
                try:
                    registered = conn.execute("SELECT COUNT(*) FROM calendars").fetchone()[0]
                    recorded = conn.execute("SELECT COUNT(*) FROM blocker_events").fetchone()[0]
                except sqlite3.OperationalError:
                    registered = recorded = 0
                conn.close()
            except sqlite3.Error as e:
                logger.error(f"State DB not readable/writable ({db_path}): {e}")
                issues.append(
                    (
                        "State database",
                        f"{db_path}: {e}",
                        f"Check permissions on {db_path.parent} "
                        f"(journal files must be creatable alongside the DB)",
                    )
                )
            else:
                if registered < min_calendars and not recorded:
                    issues.append(
                        (
                            "Calendars",
                            f"{registered} calendar(s) registered, need {min_calendars}",
                            "Run: gcalsync add ACCOUNT",
                        )
                    )

    if issues:
        _print_issues(issues, console)
        return False

    return True


def _print_issues(issues: list[tuple[str, str, str]], console: Console) -> None:
    body = Text()
    for i, (label, detail, hint) in enumerate(issues):
        if i:
            body.append("\n")
        body.append(f"  ✗  {label}: ", style="bold red")
        body.append(detail, style="bold red")
        body.append(f"\n       → {hint}", style="yellow")

    console.print(Panel(body, title="[bold red]Preflight checks failed[/bold red]"))
