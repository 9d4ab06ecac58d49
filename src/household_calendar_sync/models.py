"""
Pure data models. No CalDAV, iCalendar or sqlite imports here.
"""

from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from pathlib import Path

DEFAULT_STATE_DB = Path.home() / ".local/share/household-calendar-sync.db"
DEFAULT_CONFIG = Path.home() / ".config/household-calendar-sync.conf"

DEFAULT_SYNC_PAST_DAYS = 30
DEFAULT_SYNC_FUTURE_DAYS = 365


class CalendarSyncError(Exception):
    """Base exception for calendar sync errors."""

    pass


class ICalParseError(CalendarSyncError):
    """An iCalendar document could not be parsed."""

    pass


class CalDAVError(CalendarSyncError):
    """Transport, authentication or protocol failure talking to a CalDAV server."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class RemoteDeleteError(CalendarSyncError):
    """Deleting the remote copy failed, so the local delete was aborted."""

    pass


class ConfigurationError(CalendarSyncError):
    """Missing secret or unusable storage; fatal before any sync work."""

    pass


class ConnectionNotFoundError(CalendarSyncError):
    pass


class EventNotFoundError(CalendarSyncError):
    pass


class UnauthorizedError(CalendarSyncError):
    pass


@dataclass
class AppConfig:
    """Resolved runtime configuration."""

    state_db_path: Path
    encryption_key: str
    cron_secret: str | None = None
    sync_past_days: int = DEFAULT_SYNC_PAST_DAYS
    sync_future_days: int = DEFAULT_SYNC_FUTURE_DAYS
    verbose: bool = False


# --------------------------------------------------------------------------- #
# Stored entities                                                               #
# --------------------------------------------------------------------------- #


@dataclass
class ExternalAttendee:
    email: str
    name: str | None = None
    partstat: str = "needs-action"


@dataclass
class SelectedCalendar:
    """One remote calendar the user picked during connection setup."""

    name: str
    url: str
    enabled: bool = True
    color: str | None = None


@dataclass
class Category:
    id: str
    household_id: str
    owner_id: str
    name: str
    color: str
    visibility: str = "household"
    caldav_connection_id: str | None = None
    source: str = "manual"


@dataclass
class Event:
    """Canonical local representation of a calendar entry."""

    id: str
    household_id: str
    user_id: str
    title: str
    start_time: datetime
    end_time: datetime
    category_id: str | None = None
    description: str | None = None
    location: str | None = None
    all_day: bool = False
    recurrence_rule: str | None = None
    ical_uid: str | None = None
    status: str = "confirmed"
    sequence: int = 0
    ical_timestamp: datetime | None = None
    organizer_email: str | None = None
    organizer_name: str | None = None
    external_attendees: list[ExternalAttendee] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)
    last_push_at: datetime | None = None
    last_push_status: str | None = None
    last_push_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class CalDAVConnection:
    id: str
    user_id: str
    household_id: str
    email: str
    password_encrypted: str
    server_url: str
    enabled: bool = True
    selected_calendars: list[SelectedCalendar] = field(default_factory=list)
    sync_past_days: int = DEFAULT_SYNC_PAST_DAYS
    sync_future_days: int = DEFAULT_SYNC_FUTURE_DAYS
    last_sync_at: datetime | None = None
    last_sync_status: str | None = None
    last_sync_error: str | None = None

    @property
    def enabled_calendars(self) -> list[SelectedCalendar]:
        return [c for c in self.selected_calendars if c.enabled]


@dataclass
class CalDAVEventMapping:
    """Correlates one local event to one remote object on one connection."""

    id: int | None
    event_id: str
    caldav_connection_id: str
    external_uid: str
    external_calendar: str
    external_url: str | None = None
    etag: str | None = None
    sync_direction: str = "import"
    last_synced_at: datetime | None = None


# --------------------------------------------------------------------------- #
# Remote records (CalDAV capability)                                            #
# --------------------------------------------------------------------------- #


@dataclass
class RemoteCalendar:
    display_name: str
    url: str
    ctag: str | None = None
    sync_token: str | None = None
    color: str | None = None


@dataclass
class RemoteObject:
    url: str
    data: str
    etag: str | None = None


@dataclass
class ParsedAttendee:
    email: str
    name: str | None
    partstat: str


@dataclass
class ParsedEvent:
    """A decoded VEVENT, not yet merged into storage."""

    external_uid: str
    title: str
    start_time: datetime
    end_time: datetime
    all_day: bool
    external_calendar: str
    external_url: str
    description: str | None = None
    location: str | None = None
    recurrence_rule: str | None = None
    etag: str | None = None
    status: str = "confirmed"
    sequence: int = 0
    ical_uid: str | None = None
    ical_timestamp: datetime | None = None
    organizer_email: str | None = None
    organizer_name: str | None = None
    attendees: list[ParsedAttendee] = field(default_factory=list)
    # Set on instance overrides of a recurring series
    recurrence_id: datetime | None = None


# --------------------------------------------------------------------------- #
# Results                                                                       #
# --------------------------------------------------------------------------- #


@dataclass
class CalendarResult:
    """Counters for one remote calendar within a pull."""

    name: str
    events_found: int = 0
    synced_events: int = 0
    error_count: int = 0


@dataclass
class PushStats:
    pushed_events: int = 0
    error_count: int = 0


@dataclass
class SyncResult:
    """Outcome of one connection's sync cycle."""

    connection_id: str
    email: str
    success: bool = False
    events_found: int = 0
    synced_events: int = 0
    error_count: int = 0
    pushed_events: int = 0
    push_error_count: int = 0
    error: str | None = None
    calendars: list[CalendarResult] = field(default_factory=list)

    def add_calendar(self, calendar: CalendarResult):
        self.calendars.append(calendar)
        self.events_found += calendar.events_found
        self.synced_events += calendar.synced_events
        self.error_count += calendar.error_count

    def to_dict(self) -> dict:
        result = {
            "connectionId": self.connection_id,
            "email": self.email,
            "success": self.success,
            "eventsFound": self.events_found,
            "syncedEvents": self.synced_events,
            "errorCount": self.error_count,
            "pushedEvents": self.pushed_events,
            "pushErrorCount": self.push_error_count,
            "calendars": [
                {
                    "name": c.name,
                    "eventsFound": c.events_found,
                    "syncedEvents": c.synced_events,
                    "errorCount": c.error_count,
                }
                for c in self.calendars
            ],
        }
        if self.error is not None:
            result["error"] = self.error
        return result
