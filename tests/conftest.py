"""
Shared pytest fixtures and iCal helpers.
"""

import logging
from datetime import datetime
from datetime import timezone

import pytest

from household_calendar_sync.categories import CategoryMapper
from household_calendar_sync.crypto import PasswordCipher
from household_calendar_sync.db import CalendarStore
from household_calendar_sync.models import CalDAVConnection
from household_calendar_sync.models import Category
from household_calendar_sync.models import Event
from household_calendar_sync.models import SyncResult
from tests.fake_client import FakeCalDAVClient

HOUSEHOLD_ID = "household-1"
USER_ID = "user-alice"
OTHER_USER_ID = "user-bob"
ALICE_EMAIL = "alice@example.com"
BOB_EMAIL = "bob@example.com"
SECRET = "test-encryption-secret"
PASSWORD = "app-specific-password"

NOW = datetime(2025, 1, 1, 8, 0, tzinfo=timezone.utc)


def make_vevent(
    uid: str | None,
    summary: str = "Standup",
    dtstart: str = "20250101T090000Z",
    dtend: str | None = "20250101T093000Z",
    sequence: int | None = 0,
    dtstamp: str | None = "20241220T120000Z",
    status: str | None = None,
    extra: tuple[str, ...] = (),
) -> str:
    """Return a VEVENT iCal string (no VCALENDAR wrapper)."""
    lines = ["BEGIN:VEVENT"]
    if uid is not None:
        lines.append(f"UID:{uid}")
    if summary is not None:
        lines.append(f"SUMMARY:{summary}")
    if dtstart is not None:
        lines.append(f"DTSTART:{dtstart}" if ":" not in dtstart else f"DTSTART;{dtstart}")
    if dtend is not None:
        lines.append(f"DTEND:{dtend}" if ":" not in dtend else f"DTEND;{dtend}")
    if sequence is not None:
        lines.append(f"SEQUENCE:{sequence}")
    if dtstamp is not None:
        lines.append(f"DTSTAMP:{dtstamp}")
    if status is not None:
        lines.append(f"STATUS:{status}")
    lines.extend(extra)
    lines.append("END:VEVENT")
    return "\r\n".join(lines) + "\r\n"


def make_ics(*vevents: str) -> str:
    """Wrap VEVENT strings in a VCALENDAR document."""
    return (
        "BEGIN:VCALENDAR\r\n"
        "VERSION:2.0\r\n"
        "PRODID:-//Test//Remote Server//EN\r\n" + "".join(vevents) + "END:VCALENDAR\r\n"
    )


def make_event(event_id: str = "event-1", category_id: str | None = None, **overrides) -> Event:
    """Return a local Event with sensible defaults."""
    fields = {
        "id": event_id,
        "household_id": HOUSEHOLD_ID,
        "user_id": USER_ID,
        "title": "Dentist",
        "start_time": datetime(2025, 1, 10, 14, 0, tzinfo=timezone.utc),
        "end_time": datetime(2025, 1, 10, 15, 0, tzinfo=timezone.utc),
        "category_id": category_id,
        "created_at": datetime(2024, 12, 30, 10, 0, tzinfo=timezone.utc),
        "updated_at": datetime(2024, 12, 30, 10, 0, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return Event(**fields)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_calendar.db"


@pytest.fixture
def store(db_path):
    with CalendarStore(db_path) as db:
        db.add_household_member(HOUSEHOLD_ID, USER_ID, ALICE_EMAIL)
        db.add_household_member(HOUSEHOLD_ID, OTHER_USER_ID, BOB_EMAIL)
        db.commit()
        yield db


@pytest.fixture
def cipher():
    return PasswordCipher(SECRET)


@pytest.fixture
def connection(store, cipher):
    conn = CalDAVConnection(
        id="conn-1",
        user_id=USER_ID,
        household_id=HOUSEHOLD_ID,
        email=ALICE_EMAIL,
        password_encrypted=cipher.encrypt(PASSWORD),
        server_url="https://caldav.example.com",
        sync_past_days=30,
        sync_future_days=365,
    )
    store.insert_connection(conn)
    store.commit()
    return conn


@pytest.fixture
def synced_category(store, connection):
    """A CalDAV-bound category named like the fake server's 'Work' calendar."""
    category = Category(
        id="cat-work",
        household_id=HOUSEHOLD_ID,
        owner_id=USER_ID,
        name="Work",
        color="#3b82f6",
        caldav_connection_id=connection.id,
        source="caldav",
    )
    store.insert_category(category)
    store.commit()
    return category


@pytest.fixture
def fake_client():
    return FakeCalDAVClient()


@pytest.fixture
def mapper(store):
    return CategoryMapper(store)


@pytest.fixture
def sync_logger():
    return logging.getLogger("test_sync")


@pytest.fixture
def sync_result(connection):
    return SyncResult(connection_id=connection.id, email=connection.email)
