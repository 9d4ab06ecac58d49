"""
Configuration loading: INI file plus environment overrides.
"""

import os
from configparser import ConfigParser
from configparser import Error as ConfigParserError
from pathlib import Path

from household_calendar_sync.models import DEFAULT_CONFIG
from household_calendar_sync.models import DEFAULT_STATE_DB
from household_calendar_sync.models import DEFAULT_SYNC_FUTURE_DAYS
from household_calendar_sync.models import DEFAULT_SYNC_PAST_DAYS
from household_calendar_sync.models import AppConfig
from household_calendar_sync.models import ConfigurationError

CONFIG_SECTION = "household-calendar-sync"
ENCRYPTION_KEY_ENV = "CALDAV_ENCRYPTION_KEY"
CRON_SECRET_ENV = "CRON_SECRET"


def load_config_file(config_path: Path) -> dict[str, str]:
    if not config_path.exists():
        return {}
    parser = ConfigParser()
    try:
        parser.read(config_path)
    except ConfigParserError as e:
        raise ConfigurationError(f"Cannot parse {config_path}: {e}") from e
    if CONFIG_SECTION not in parser:
        return {}
    return dict(parser[CONFIG_SECTION])


def _int_option(values: dict[str, str], key: str, default: int) -> int:
    raw = values.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from None
    if value < 0:
        raise ConfigurationError(f"{key} must not be negative")
    return value


def load_config(
    config_path: Path = DEFAULT_CONFIG,
    state_db: Path | None = None,
    verbose: bool = False,
    environ=None,
) -> AppConfig:
    """
    Resolve the runtime configuration.

    Precedence: explicit arguments, then environment variables, then the
    config file, then built-in defaults.
    """
    environ = os.environ if environ is None else environ
    values = load_config_file(config_path)

    if state_db is None:
        state_db = Path(values["state_db"]).expanduser() if values.get("state_db") else DEFAULT_STATE_DB

    return AppConfig(
        state_db_path=state_db,
        encryption_key=environ.get(ENCRYPTION_KEY_ENV) or values.get("encryption_key", ""),
        cron_secret=environ.get(CRON_SECRET_ENV) or values.get("cron_secret") or None,
        sync_past_days=_int_option(values, "sync_past_days", DEFAULT_SYNC_PAST_DAYS),
        sync_future_days=_int_option(values, "sync_future_days", DEFAULT_SYNC_FUTURE_DAYS),
        verbose=verbose,
    )
