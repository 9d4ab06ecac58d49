"""
Connection registry: CalDAV account records and their encrypted passwords.
"""

import logging
import uuid

from household_calendar_sync.caldav_client import CalDAVClient
from household_calendar_sync.categories import suggest_calendar_color
from household_calendar_sync.crypto import PasswordCipher
from household_calendar_sync.db import CalendarStore
from household_calendar_sync.models import DEFAULT_SYNC_FUTURE_DAYS
from household_calendar_sync.models import DEFAULT_SYNC_PAST_DAYS
from household_calendar_sync.models import CalDAVConnection
from household_calendar_sync.models import CalDAVError
from household_calendar_sync.models import ConnectionNotFoundError
from household_calendar_sync.models import RemoteCalendar
from household_calendar_sync.models import SelectedCalendar
from household_calendar_sync.sync.utils import utcnow

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """CRUD over CalDAV connections; every mutation is scoped to the owning user."""

    def __init__(self, store: CalendarStore, cipher: PasswordCipher, client_factory=CalDAVClient):
        self.store = store
        self.cipher = cipher
        self.client_factory = client_factory

    def test_connection(self, server_url: str, email: str, password: str) -> list[RemoteCalendar]:
        """
        Verify credentials by listing the account's calendars.

        Each calendar carries the server's colour, or a deterministic
        suggestion derived from its name when the server has none.
        """
        if not server_url or not email or not password:
            raise ValueError("server URL, email and password are required")
        logger.info(f"Testing connection for {email}...")
        calendars = self.client_factory(server_url, email, password).fetch_calendars()
        if not calendars:
            raise CalDAVError("No calendars found. Check your credentials.", status=401)
        for calendar in calendars:
            if not calendar.color:
                calendar.color = suggest_calendar_color(calendar.display_name)
        logger.info(f"Found {len(calendars)} calendar(s) for {email}")
        return calendars

    def create_connection(
        self,
        user_id: str,
        household_id: str,
        email: str,
        password: str,
        server_url: str,
        selected_calendars: list[SelectedCalendar] | None = None,
        sync_past_days: int = DEFAULT_SYNC_PAST_DAYS,
        sync_future_days: int = DEFAULT_SYNC_FUTURE_DAYS,
    ) -> CalDAVConnection:
        if not server_url or not email or not password:
            raise ValueError("server URL, email and password are required")
        connection = CalDAVConnection(
            id=str(uuid.uuid4()),
            user_id=user_id,
            household_id=household_id,
            email=email,
            password_encrypted=self.cipher.encrypt(password),
            server_url=server_url,
            enabled=True,
            selected_calendars=list(selected_calendars or []),
            sync_past_days=sync_past_days,
            sync_future_days=sync_future_days,
            last_sync_status="pending",
        )
        self.store.insert_connection(connection)
        self.store.commit()
        logger.info(f"Saved connection {connection.id} for {email}")
        return connection

    def _owned(self, connection_id: str, user_id: str) -> CalDAVConnection:
        connection = self.store.get_connection(connection_id)
        if connection is None or connection.user_id != user_id:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        return connection

    def update_calendars(
        self,
        connection_id: str,
        user_id: str,
        selected_calendars: list[SelectedCalendar],
        sync_past_days: int | None = None,
        sync_future_days: int | None = None,
    ) -> CalDAVConnection:
        self._owned(connection_id, user_id)
        self.store.update_connection(
            connection_id,
            selected_calendars=list(selected_calendars or []),
            sync_past_days=DEFAULT_SYNC_PAST_DAYS if sync_past_days is None else sync_past_days,
            sync_future_days=(
                DEFAULT_SYNC_FUTURE_DAYS if sync_future_days is None else sync_future_days
            ),
            updated_at=utcnow(),
        )
        self.store.commit()
        return self.store.get_connection(connection_id)

    def set_enabled(self, connection_id: str, user_id: str, enabled: bool) -> CalDAVConnection:
        self._owned(connection_id, user_id)
        self.store.update_connection(connection_id, enabled=enabled, updated_at=utcnow())
        self.store.commit()
        logger.info(f"Connection {connection_id} {'enabled' if enabled else 'disabled'}")
        return self.store.get_connection(connection_id)

    def delete_connection(self, connection_id: str, user_id: str):
        """Remove a connection; its mappings cascade and its categories are unbound."""
        self._owned(connection_id, user_id)
        self.store.delete_connection(connection_id)
        self.store.commit()
        logger.info(f"Deleted connection {connection_id}")

    def get_connection(self, connection_id: str) -> CalDAVConnection:
        connection = self.store.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        return connection

    def list_connections(
        self, user_id: str | None = None, enabled_only: bool = False
    ) -> list[CalDAVConnection]:
        return self.store.list_connections(user_id=user_id, enabled_only=enabled_only)

    def decrypt_password(self, connection: CalDAVConnection) -> str:
        return self.cipher.decrypt(connection.password_encrypted)
