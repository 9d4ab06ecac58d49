"""
SyncOrchestrator: thin driver that runs the pull then push phase per connection.
"""

import logging
import sqlite3

from household_calendar_sync.caldav_client import CalDAVClient
from household_calendar_sync.categories import CategoryMapper
from household_calendar_sync.crypto import PasswordCipher
from household_calendar_sync.db import CalendarStore
from household_calendar_sync.models import CalDAVConnection
from household_calendar_sync.models import CalendarSyncError
from household_calendar_sync.models import PushStats
from household_calendar_sync.models import SyncResult
from household_calendar_sync.sync.pull import run_pull
from household_calendar_sync.sync.push import run_push
from household_calendar_sync.sync.utils import utcnow


class SyncOrchestrator:
    """Main synchronization engine."""

    def __init__(
        self,
        store: CalendarStore,
        cipher: PasswordCipher,
        client_factory=CalDAVClient,
        clock=utcnow,
    ):
        self.store = store
        self.cipher = cipher
        self.client_factory = client_factory
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self.mapper = CategoryMapper(store)

    def client_for(self, connection: CalDAVConnection):
        """Build a CalDAV client for a connection using its decrypted password."""
        password = self.cipher.decrypt(connection.password_encrypted)
        return self.client_factory(connection.server_url, connection.email, password)

    def _set_status(self, connection: CalDAVConnection, **fields):
        self.store.update_connection(connection.id, **fields)
        self.store.commit()

    def sync_connection(self, connection: CalDAVConnection) -> SyncResult:
        """Run one full cycle for a connection; never raises for sync failures."""
        result = SyncResult(connection_id=connection.id, email=connection.email)
        self.logger.info(f"Syncing {connection.email}...")
        self._set_status(connection, last_sync_status="pending", last_sync_error=None)

        try:
            now = self.clock()
            client = self.client_for(connection)

            run_pull(connection, result, self.logger, client, self.store, self.mapper, now)

            push_stats = PushStats()
            run_push(connection, push_stats, self.logger, client, self.store, now)
            result.pushed_events = push_stats.pushed_events
            result.push_error_count = push_stats.error_count
        except Exception as e:
            self.store.rollback()
            if isinstance(e, (CalendarSyncError, sqlite3.Error)):
                self.logger.error(f"Sync failed for {connection.email}: {e}")
            else:
                self.logger.exception(f"Unexpected error syncing {connection.email}")
            result.success = False
            result.error = str(e) or e.__class__.__name__
            self._set_status(connection, last_sync_status="error", last_sync_error=result.error)
            return result

        result.success = True
        self._set_status(
            connection,
            last_sync_at=self.clock(),
            last_sync_status="success",
            last_sync_error=None,
        )
        self.logger.info(
            f"Synced {connection.email}: {result.events_found} found, "
            f"{result.synced_events} synced, {result.error_count} error(s), "
            f"{result.pushed_events} pushed, {result.push_error_count} push error(s)"
        )
        return result

    def sync_all(self, connections: list[CalDAVConnection]) -> list[SyncResult]:
        """Sync connections one after another; one failure never stops the rest."""
        results = [self.sync_connection(connection) for connection in connections]
        succeeded = sum(1 for r in results if r.success)
        self.logger.info(f"Completed: {succeeded}/{len(results)} successful")
        return results
