"""
SQLite persistence for events, categories, CalDAV connections and mappings.

JSON columns and timestamp strings are (de)serialised here only; callers see
the typed dataclasses from :mod:`household_calendar_sync.models`.
"""

import json
import logging
import sqlite3
from dataclasses import asdict
from datetime import datetime
from datetime import timezone
from pathlib import Path

from household_calendar_sync.ical import normalize_rrule
from household_calendar_sync.models import CalDAVConnection
from household_calendar_sync.models import CalDAVEventMapping
from household_calendar_sync.models import Category
from household_calendar_sync.models import Event
from household_calendar_sync.models import ExternalAttendee
from household_calendar_sync.models import SelectedCalendar

logger = logging.getLogger(__name__)

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS household_members (
        household_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        email TEXT NOT NULL,
        PRIMARY KEY (household_id, user_id)
    );

    CREATE TABLE IF NOT EXISTS caldav_connections (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        household_id TEXT NOT NULL,
        email TEXT NOT NULL,
        password_encrypted TEXT NOT NULL,
        server_url TEXT NOT NULL,
        enabled INTEGER NOT NULL DEFAULT 1,
        selected_calendars TEXT NOT NULL DEFAULT '[]',
        sync_past_days INTEGER NOT NULL DEFAULT 30,
        sync_future_days INTEGER NOT NULL DEFAULT 365,
        last_sync_at TEXT,
        last_sync_status TEXT,
        last_sync_error TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS categories (
        id TEXT PRIMARY KEY,
        household_id TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        name TEXT NOT NULL,
        color TEXT NOT NULL,
        visibility TEXT NOT NULL DEFAULT 'household',
        caldav_connection_id TEXT
            REFERENCES caldav_connections(id) ON DELETE SET NULL,
        source TEXT NOT NULL DEFAULT 'manual',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(household_id, name)
    );

    CREATE TABLE IF NOT EXISTS events (
        id TEXT PRIMARY KEY,
        household_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        category_id TEXT REFERENCES categories(id) ON DELETE SET NULL,
        title TEXT NOT NULL,
        description TEXT,
        location TEXT,
        all_day INTEGER NOT NULL DEFAULT 0,
        start_time TEXT NOT NULL,
        end_time TEXT NOT NULL,
        recurrence_rule TEXT,
        ical_uid TEXT,
        status TEXT NOT NULL DEFAULT 'confirmed',
        sequence TEXT NOT NULL DEFAULT '0',
        ical_timestamp TEXT,
        organizer_email TEXT,
        organizer_name TEXT,
        external_attendees TEXT NOT NULL DEFAULT '[]',
        metadata TEXT NOT NULL DEFAULT '{}',
        last_push_at TEXT,
        last_push_status TEXT,
        last_push_error TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS event_attendees (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_id TEXT NOT NULL REFERENCES events(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE(event_id, user_id)
    );

    CREATE TABLE IF NOT EXISTS caldav_event_mappings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_id TEXT NOT NULL REFERENCES events(id) ON DELETE CASCADE,
        caldav_connection_id TEXT NOT NULL
            REFERENCES caldav_connections(id) ON DELETE CASCADE,
        external_uid TEXT NOT NULL,
        external_calendar TEXT NOT NULL,
        external_url TEXT,
        etag TEXT,
        sync_direction TEXT NOT NULL,
        last_synced_at TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE(event_id, caldav_connection_id)
    );

    CREATE INDEX IF NOT EXISTS idx_mappings_connection_uid
        ON caldav_event_mappings (caldav_connection_id, external_uid);
    CREATE INDEX IF NOT EXISTS idx_events_category ON events (category_id);
"""

_EVENT_COLUMNS = (
    "household_id",
    "user_id",
    "category_id",
    "title",
    "description",
    "location",
    "all_day",
    "start_time",
    "end_time",
    "recurrence_rule",
    "ical_uid",
    "status",
    "sequence",
    "ical_timestamp",
    "organizer_email",
    "organizer_name",
    "external_attendees",
    "metadata",
    "last_push_at",
    "last_push_status",
    "last_push_error",
    "created_at",
    "updated_at",
)

_CONNECTION_COLUMNS = (
    "user_id",
    "household_id",
    "email",
    "password_encrypted",
    "server_url",
    "enabled",
    "selected_calendars",
    "sync_past_days",
    "sync_future_days",
    "last_sync_at",
    "last_sync_status",
    "last_sync_error",
    "updated_at",
)

_MAPPING_COLUMNS = (
    "external_uid",
    "external_calendar",
    "external_url",
    "etag",
    "sync_direction",
    "last_synced_at",
)

_CATEGORY_COLUMNS = ("name", "color", "visibility", "caldav_connection_id", "source", "updated_at")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime | None) -> str | None:
    """Serialise an aware datetime as a fixed-width UTC ISO string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _to_db_value(column: str, value):
    """Convert a Python value for one of the known columns to its SQLite form."""
    if isinstance(value, datetime):
        return to_db_time(value)
    if isinstance(value, bool):
        return int(value)
    if column == "sequence":
        return str(int(value))
    if column == "external_attendees":
        return json.dumps([asdict(a) if isinstance(a, ExternalAttendee) else a for a in value])
    if column == "selected_calendars":
        return json.dumps([asdict(c) if isinstance(c, SelectedCalendar) else c for c in value])
    if column == "metadata":
        return json.dumps(value or {})
    return value


def _row_to_event(row: sqlite3.Row) -> Event:
    attendees = [ExternalAttendee(**a) for a in json.loads(row["external_attendees"] or "[]")]
    return Event(
        id=row["id"],
        household_id=row["household_id"],
        user_id=row["user_id"],
        category_id=row["category_id"],
        title=row["title"],
        description=row["description"],
        location=row["location"],
        all_day=bool(row["all_day"]),
        start_time=from_db_time(row["start_time"]),
        end_time=from_db_time(row["end_time"]),
        recurrence_rule=row["recurrence_rule"],
        ical_uid=row["ical_uid"],
        status=row["status"],
        sequence=int(row["sequence"] or 0),
        ical_timestamp=from_db_time(row["ical_timestamp"]),
        organizer_email=row["organizer_email"],
        organizer_name=row["organizer_name"],
        external_attendees=attendees,
        metadata=json.loads(row["metadata"] or "{}"),
        last_push_at=from_db_time(row["last_push_at"]),
        last_push_status=row["last_push_status"],
        last_push_error=row["last_push_error"],
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


def _row_to_connection(row: sqlite3.Row) -> CalDAVConnection:
    selected = [SelectedCalendar(**c) for c in json.loads(row["selected_calendars"] or "[]")]
    return CalDAVConnection(
        id=row["id"],
        user_id=row["user_id"],
        household_id=row["household_id"],
        email=row["email"],
        password_encrypted=row["password_encrypted"],
        server_url=row["server_url"],
        enabled=bool(row["enabled"]),
        selected_calendars=selected,
        sync_past_days=int(row["sync_past_days"]),
        sync_future_days=int(row["sync_future_days"]),
        last_sync_at=from_db_time(row["last_sync_at"]),
        last_sync_status=row["last_sync_status"],
        last_sync_error=row["last_sync_error"],
    )


def _row_to_mapping(row: sqlite3.Row) -> CalDAVEventMapping:
    return CalDAVEventMapping(
        id=row["id"],
        event_id=row["event_id"],
        caldav_connection_id=row["caldav_connection_id"],
        external_uid=row["external_uid"],
        external_calendar=row["external_calendar"],
        external_url=row["external_url"],
        etag=row["etag"],
        sync_direction=row["sync_direction"],
        last_synced_at=from_db_time(row["last_synced_at"]),
    )


def _row_to_category(row: sqlite3.Row) -> Category:
    return Category(
        id=row["id"],
        household_id=row["household_id"],
        owner_id=row["owner_id"],
        name=row["name"],
        color=row["color"],
        visibility=row["visibility"],
        caldav_connection_id=row["caldav_connection_id"],
        source=row["source"],
    )


class CalendarStore:
    """Transactional row store backing the sync engine."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Open the database and make sure the schema exists."""
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.executescript(_SCHEMA)
        self.conn.commit()
        logger.debug(f"Opened calendar store at {self.db_path}")

    def _update(self, table: str, allowed: tuple, key_column: str, key, fields: dict):
        unknown = set(fields) - set(allowed)
        if unknown:
            raise ValueError(f"Unknown {table} column(s): {', '.join(sorted(unknown))}")
        if not fields:
            return
        assignments = ", ".join(f"{column} = ?" for column in fields)
        values = [_to_db_value(column, value) for column, value in fields.items()]
        self.conn.execute(
            f"UPDATE {table} SET {assignments} WHERE {key_column} = ?", (*values, key)
        )

    # ------------------------------------------------------------------ #
    # Household members                                                    #
    # ------------------------------------------------------------------ #

    def add_household_member(self, household_id: str, user_id: str, email: str):
        self.conn.execute(
            "INSERT INTO household_members (household_id, user_id, email) VALUES (?, ?, ?) "
            "ON CONFLICT(household_id, user_id) DO UPDATE SET email = excluded.email",
            (household_id, user_id, email),
        )

    def household_member_emails(self, household_id: str) -> dict[str, str]:
        """Map lower-cased member email → user id for a household."""
        cursor = self.conn.execute(
            "SELECT user_id, email FROM household_members WHERE household_id = ?",
            (household_id,),
        )
        return {row["email"].lower(): row["user_id"] for row in cursor.fetchall()}

    # ------------------------------------------------------------------ #
    # Categories                                                           #
    # ------------------------------------------------------------------ #

    def get_category(self, category_id: str) -> Category | None:
        cursor = self.conn.execute("SELECT * FROM categories WHERE id = ?", (category_id,))
        row = cursor.fetchone()
        return _row_to_category(row) if row else None

    def find_category(self, household_id: str, name: str) -> Category | None:
        cursor = self.conn.execute(
            "SELECT * FROM categories WHERE household_id = ? AND name = ? LIMIT 1",
            (household_id, name),
        )
        row = cursor.fetchone()
        return _row_to_category(row) if row else None

    def insert_category(self, category: Category):
        timestamp = to_db_time(_now())
        self.conn.execute(
            "INSERT INTO categories "
            "(id, household_id, owner_id, name, color, visibility, "
            " caldav_connection_id, source, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                category.id,
                category.household_id,
                category.owner_id,
                category.name,
                category.color,
                category.visibility,
                category.caldav_connection_id,
                category.source,
                timestamp,
                timestamp,
            ),
        )

    def update_category(self, category_id: str, **fields):
        fields.setdefault("updated_at", _now())
        self._update("categories", _CATEGORY_COLUMNS, "id", category_id, fields)

    def categories_for_connection(self, connection_id: str) -> list[Category]:
        cursor = self.conn.execute(
            "SELECT * FROM categories WHERE caldav_connection_id = ? ORDER BY name",
            (connection_id,),
        )
        return [_row_to_category(row) for row in cursor.fetchall()]

    # ------------------------------------------------------------------ #
    # Events                                                               #
    # ------------------------------------------------------------------ #

    def insert_event(self, event: Event):
        if event.end_time < event.start_time:
            raise ValueError(f"Event {event.id} ends before it starts")
        now = _now()
        if event.created_at is None:
            event.created_at = now
        if event.updated_at is None:
            event.updated_at = now
        event.recurrence_rule = normalize_rrule(event.recurrence_rule)
        values = [_to_db_value(column, getattr(event, column)) for column in _EVENT_COLUMNS]
        placeholders = ", ".join("?" for _ in range(len(_EVENT_COLUMNS) + 1))
        self.conn.execute(
            f"INSERT INTO events (id, {', '.join(_EVENT_COLUMNS)}) VALUES ({placeholders})",
            (event.id, *values),
        )

    def get_event(self, event_id: str) -> Event | None:
        cursor = self.conn.execute("SELECT * FROM events WHERE id = ?", (event_id,))
        row = cursor.fetchone()
        return _row_to_event(row) if row else None

    def update_event(self, event_id: str, **fields):
        """Update the given columns of one event. Does not touch updated_at implicitly."""
        start = fields.get("start_time")
        end = fields.get("end_time")
        if start is not None and end is not None and end < start:
            raise ValueError(f"Event {event_id} ends before it starts")
        if "recurrence_rule" in fields:
            fields["recurrence_rule"] = normalize_rrule(fields["recurrence_rule"])
        self._update("events", _EVENT_COLUMNS, "id", event_id, fields)

    def events_in_categories(self, category_ids: list[str]) -> list[Event]:
        if not category_ids:
            return []
        placeholders = ", ".join("?" for _ in category_ids)
        cursor = self.conn.execute(
            f"SELECT * FROM events WHERE category_id IN ({placeholders}) ORDER BY start_time",
            tuple(category_ids),
        )
        return [_row_to_event(row) for row in cursor.fetchall()]

    def events_with_push_error(self, household_id: str) -> list[Event]:
        cursor = self.conn.execute(
            "SELECT * FROM events WHERE household_id = ? AND last_push_status = 'error' "
            "ORDER BY start_time",
            (household_id,),
        )
        return [_row_to_event(row) for row in cursor.fetchall()]

    def delete_event(self, event_id: str):
        """Hard-delete an event; mappings and attendee rows cascade."""
        self.conn.execute("DELETE FROM events WHERE id = ?", (event_id,))

    def replace_event_attendees(self, event_id: str, user_ids: list[str]):
        timestamp = to_db_time(_now())
        self.conn.execute("DELETE FROM event_attendees WHERE event_id = ?", (event_id,))
        self.conn.executemany(
            "INSERT OR IGNORE INTO event_attendees (event_id, user_id, created_at) "
            "VALUES (?, ?, ?)",
            [(event_id, user_id, timestamp) for user_id in user_ids],
        )

    def get_event_attendees(self, event_id: str) -> list[str]:
        cursor = self.conn.execute(
            "SELECT user_id FROM event_attendees WHERE event_id = ? ORDER BY user_id",
            (event_id,),
        )
        return [row["user_id"] for row in cursor.fetchall()]

    # ------------------------------------------------------------------ #
    # Connections                                                          #
    # ------------------------------------------------------------------ #

    def insert_connection(self, connection: CalDAVConnection):
        timestamp = to_db_time(_now())
        self.conn.execute(
            "INSERT INTO caldav_connections "
            "(id, user_id, household_id, email, password_encrypted, server_url, enabled, "
            " selected_calendars, sync_past_days, sync_future_days, last_sync_status, "
            " created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                connection.id,
                connection.user_id,
                connection.household_id,
                connection.email,
                connection.password_encrypted,
                connection.server_url,
                int(connection.enabled),
                _to_db_value("selected_calendars", connection.selected_calendars),
                connection.sync_past_days,
                connection.sync_future_days,
                connection.last_sync_status,
                timestamp,
                timestamp,
            ),
        )

    def get_connection(self, connection_id: str) -> CalDAVConnection | None:
        cursor = self.conn.execute(
            "SELECT * FROM caldav_connections WHERE id = ?", (connection_id,)
        )
        row = cursor.fetchone()
        return _row_to_connection(row) if row else None

    def list_connections(
        self, user_id: str | None = None, enabled_only: bool = False
    ) -> list[CalDAVConnection]:
        query = "SELECT * FROM caldav_connections WHERE 1 = 1"
        params: list = []
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        if enabled_only:
            query += " AND enabled = 1"
        query += " ORDER BY created_at, id"
        cursor = self.conn.execute(query, params)
        return [_row_to_connection(row) for row in cursor.fetchall()]

    def update_connection(self, connection_id: str, **fields):
        self._update("caldav_connections", _CONNECTION_COLUMNS, "id", connection_id, fields)

    def delete_connection(self, connection_id: str):
        self.conn.execute("DELETE FROM caldav_connections WHERE id = ?", (connection_id,))

    # ------------------------------------------------------------------ #
    # Mappings                                                             #
    # ------------------------------------------------------------------ #

    def get_mapping_by_uid(self, connection_id: str, external_uid: str) -> CalDAVEventMapping | None:
        cursor = self.conn.execute(
            "SELECT * FROM caldav_event_mappings "
            "WHERE caldav_connection_id = ? AND external_uid = ? LIMIT 1",
            (connection_id, external_uid),
        )
        row = cursor.fetchone()
        return _row_to_mapping(row) if row else None

    def get_mapping_for_event(self, event_id: str, connection_id: str) -> CalDAVEventMapping | None:
        cursor = self.conn.execute(
            "SELECT * FROM caldav_event_mappings "
            "WHERE event_id = ? AND caldav_connection_id = ? LIMIT 1",
            (event_id, connection_id),
        )
        row = cursor.fetchone()
        return _row_to_mapping(row) if row else None

    def mappings_for_event(self, event_id: str) -> list[CalDAVEventMapping]:
        cursor = self.conn.execute(
            "SELECT * FROM caldav_event_mappings WHERE event_id = ? ORDER BY id", (event_id,)
        )
        return [_row_to_mapping(row) for row in cursor.fetchall()]

    def mappings_for_connection(self, connection_id: str) -> list[CalDAVEventMapping]:
        cursor = self.conn.execute(
            "SELECT * FROM caldav_event_mappings WHERE caldav_connection_id = ? ORDER BY id",
            (connection_id,),
        )
        return [_row_to_mapping(row) for row in cursor.fetchall()]

    def insert_mapping(self, mapping: CalDAVEventMapping) -> int:
        """Insert a mapping, or refresh the existing one for the same (event, connection)."""
        last_synced = mapping.last_synced_at or _now()
        self.conn.execute(
            "INSERT INTO caldav_event_mappings "
            "(event_id, caldav_connection_id, external_uid, external_calendar, "
            " external_url, etag, sync_direction, last_synced_at, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(event_id, caldav_connection_id) DO UPDATE SET "
            "external_uid = excluded.external_uid, "
            "external_calendar = excluded.external_calendar, "
            "external_url = excluded.external_url, "
            "etag = excluded.etag, "
            "sync_direction = excluded.sync_direction, "
            "last_synced_at = excluded.last_synced_at",
            (
                mapping.event_id,
                mapping.caldav_connection_id,
                mapping.external_uid,
                mapping.external_calendar,
                mapping.external_url,
                mapping.etag,
                mapping.sync_direction,
                to_db_time(last_synced),
                to_db_time(_now()),
            ),
        )
        # lastrowid is stale when the upsert took the UPDATE branch
        row = self.conn.execute(
            "SELECT id FROM caldav_event_mappings WHERE event_id = ? AND caldav_connection_id = ?",
            (mapping.event_id, mapping.caldav_connection_id),
        ).fetchone()
        mapping.id = row["id"]
        return mapping.id

    def update_mapping(self, mapping_id: int, **fields):
        self._update("caldav_event_mappings", _MAPPING_COLUMNS, "id", mapping_id, fields)

    def delete_mapping(self, mapping_id: int):
        self.conn.execute("DELETE FROM caldav_event_mappings WHERE id = ?", (mapping_id,))

    # ------------------------------------------------------------------ #
    # Reporting                                                            #
    # ------------------------------------------------------------------ #

    def connection_status(self) -> list[dict]:
        """Per-connection mapping counts by direction and event counts by push status."""
        rows = []
        for connection in self.list_connections():
            directions = {
                row["sync_direction"]: row["count"]
                for row in self.conn.execute(
                    "SELECT sync_direction, COUNT(*) AS count FROM caldav_event_mappings "
                    "WHERE caldav_connection_id = ? GROUP BY sync_direction",
                    (connection.id,),
                )
            }
            push_states = {
                (row["last_push_status"] or "never"): row["count"]
                for row in self.conn.execute(
                    "SELECT e.last_push_status, COUNT(*) AS count FROM events e "
                    "JOIN categories c ON c.id = e.category_id "
                    "WHERE c.caldav_connection_id = ? GROUP BY e.last_push_status",
                    (connection.id,),
                )
            }
            rows.append(
                {"connection": connection, "directions": directions, "push_states": push_states}
            )
        return rows

    def commit(self):
        """Commit pending transactions."""
        if self.conn:
            self.conn.commit()

    def rollback(self):
        """Discard the pending transaction."""
        if self.conn:
            self.conn.rollback()

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
