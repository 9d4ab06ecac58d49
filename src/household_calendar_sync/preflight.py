"""
Preflight checks run before sync to catch common misconfigurations early.
"""

import logging
import sqlite3

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from household_calendar_sync.models import AppConfig

logger = logging.getLogger(__name__)


def run_preflight_checks(cfg: AppConfig, console: Console, need_cron_secret: bool = False) -> bool:
    """Return True if sync may proceed; print issues and return False otherwise."""
    issues: list[tuple[str, str, str]] = []  # (label, detail, hint)

    # 1. Encryption secret present
    if not cfg.encryption_key:
        logger.error("No CalDAV encryption key configured")
        issues.append(
            (
                "Encryption key",
                "not configured",
                "Set CALDAV_ENCRYPTION_KEY or encryption_key in the config file",
            )
        )

    # 2. Cron secret present when the scheduled trigger is used
    if need_cron_secret and not cfg.cron_secret:
        logger.error("No cron secret configured")
        issues.append(
            ("Cron secret", "not configured", "Set CRON_SECRET or cron_secret in the config file")
        )

    # 3. Store parent dir writable + DB readable/writable if it exists
    db_path = cfg.state_db_path
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error("Cannot create database directory %s: %s", db_path.parent, e)
        issues.append(
            ("Database", f"{db_path}: {e}", f"Check permissions on {db_path.parent}")
        )
    else:
        if db_path.exists():
            try:
                conn = sqlite3.connect(db_path)
                conn.execute("SELECT count(*) FROM sqlite_master")
                conn.execute("BEGIN IMMEDIATE")
                conn.execute("ROLLBACK")
                conn.close()
            except sqlite3.Error as e:
                logger.error("Database not readable/writable (%s): %s", db_path, e)
                issues.append(
                    (
                        "Database",
                        f"{db_path}: {e}",
                        f"Check permissions on {db_path.parent} "
                        f"(journal files must be creatable alongside the DB)",
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
