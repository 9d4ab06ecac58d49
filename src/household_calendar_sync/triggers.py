"""
Entry points that start sync work: interactive, scheduled, push retry and
delete propagation. Each returns a JSON-ready dict.
"""

import hmac
import logging

from household_calendar_sync.caldav_client import CalDAVClient
from household_calendar_sync.crypto import PasswordCipher
from household_calendar_sync.db import CalendarStore
from household_calendar_sync.models import AppConfig
from household_calendar_sync.models import CalendarSyncError
from household_calendar_sync.models import ConfigurationError
from household_calendar_sync.models import ConnectionNotFoundError
from household_calendar_sync.models import Event
from household_calendar_sync.models import EventNotFoundError
from household_calendar_sync.models import PushStats
from household_calendar_sync.models import SyncResult
from household_calendar_sync.models import UnauthorizedError
from household_calendar_sync.sync import SyncOrchestrator
from household_calendar_sync.sync.push import delete_event_with_remote
from household_calendar_sync.sync.push import push_event
from household_calendar_sync.sync.utils import utcnow

logger = logging.getLogger(__name__)


def _summary(results: list[SyncResult]) -> dict:
    succeeded = sum(1 for r in results if r.success)
    return {
        "success": True,
        "results": [r.to_dict() for r in results],
        "message": f"Synced {succeeded} of {len(results)} connection(s)",
    }


class SyncTriggers:
    """Request-level operations over one store."""

    def __init__(
        self,
        store: CalendarStore,
        config: AppConfig,
        client_factory=CalDAVClient,
        clock=utcnow,
    ):
        self.store = store
        self.config = config
        self.clock = clock
        self.orchestrator = SyncOrchestrator(
            store, PasswordCipher(config.encryption_key), client_factory=client_factory, clock=clock
        )

    def interactive_sync(self, user_id: str, connection_id: str | None = None) -> dict:
        """Sync the caller's enabled connections, or just one of them."""
        connections = self.store.list_connections(user_id=user_id, enabled_only=True)
        if connection_id is not None:
            connections = [c for c in connections if c.id == connection_id]
        if not connections:
            raise ConnectionNotFoundError("No connections found")

        logger.info(f"Starting sync for {len(connections)} connection(s)...")
        return _summary(self.orchestrator.sync_all(connections))

    def scheduled_sync(self, provided_secret: str | None) -> dict:
        """Sync every enabled connection, gated by the shared cron secret."""
        expected = self.config.cron_secret
        if not expected:
            raise ConfigurationError("CRON_SECRET is not configured")
        if not provided_secret or not hmac.compare_digest(
            provided_secret.encode("utf-8"), expected.encode("utf-8")
        ):
            raise UnauthorizedError("Unauthorized")

        connections = self.store.list_connections(enabled_only=True)
        if not connections:
            return {"success": True, "results": [], "message": "No enabled connections to sync"}

        logger.info(f"Found {len(connections)} enabled connection(s)")
        return _summary(self.orchestrator.sync_all(connections))

    def push_single(self, event: Event, stats: PushStats) -> bool | None:
        """
        Push one event through the connection bound to its category.

        Returns None when the event's category is not CalDAV-bound, otherwise
        whether the push succeeded.
        """
        if not event.category_id:
            return None
        category = self.store.get_category(event.category_id)
        if category is None or not category.caldav_connection_id:
            return None
        connection = self.store.get_connection(category.caldav_connection_id)
        if connection is None:
            return None

        client = self.orchestrator.client_for(connection)
        return push_event(
            connection,
            stats,
            logger,
            client,
            self.store,
            event,
            self.clock(),
            category_name=category.name,
        )

    def retry_push(
        self, household_id: str, event_id: str | None = None, retry_all: bool = False
    ) -> dict:
        if retry_all:
            events = self.store.events_with_push_error(household_id)
            logger.info(f"Retrying {len(events)} failed event(s)")
        elif event_id:
            event = self.store.get_event(event_id)
            if event is None or event.household_id != household_id:
                raise EventNotFoundError(f"Event {event_id} not found")
            events = [event]
        else:
            raise ValueError("Either event_id or retry_all must be provided")

        stats = PushStats()
        for event in events:
            try:
                self.push_single(event, stats)
            except CalendarSyncError as e:
                logger.error(f"Failed to push event {event.id}: {e}")
                stats.error_count += 1

        return {
            "success": True,
            "message": (
                f"Retried {len(events)} event(s): {stats.pushed_events} succeeded, "
                f"{stats.error_count} failed"
            ),
            "successCount": stats.pushed_events,
            "errorCount": stats.error_count,
        }

    def delete_event(self, event_id: str) -> dict:
        """Delete an event everywhere; RemoteDeleteError propagates and keeps the local row."""
        delete_event_with_remote(self.store, event_id, self.orchestrator.client_for, logger)
        return {"success": True, "message": f"Event {event_id} deleted"}
