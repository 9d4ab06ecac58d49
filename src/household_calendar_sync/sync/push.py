"""
Push phase: local events → remote CalDAV objects, plus delete propagation.
"""

import logging
import sqlite3
from dataclasses import replace
from datetime import datetime

from household_calendar_sync.db import CalendarStore
from household_calendar_sync.ical import encode
from household_calendar_sync.models import CalDAVConnection
from household_calendar_sync.models import CalDAVError
from household_calendar_sync.models import CalDAVEventMapping
from household_calendar_sync.models import CalendarSyncError
from household_calendar_sync.models import Event
from household_calendar_sync.models import EventNotFoundError
from household_calendar_sync.models import PushStats
from household_calendar_sync.models import RemoteCalendar
from household_calendar_sync.models import RemoteDeleteError
from household_calendar_sync.sync.utils import is_push_eligible

_GONE_STATUSES = (404, 410)


class RemoteCalendars:
    """Lazily fetched, cached list of a connection's remote calendars."""

    def __init__(self, client):
        self._client = client
        self._calendars: list[RemoteCalendar] | None = None

    def all(self) -> list[RemoteCalendar]:
        if self._calendars is None:
            self._calendars = self._client.fetch_calendars()
        return self._calendars

    def by_name(self, name: str | None) -> RemoteCalendar | None:
        if not name:
            return None
        for calendar in self.all():
            if calendar.display_name == name:
                return calendar
        return None


def resolve_target_calendar(
    connection: CalDAVConnection,
    calendars: RemoteCalendars,
    mapping: CalDAVEventMapping | None,
    category_name: str | None,
) -> RemoteCalendar:
    """
    Choose where a new remote object is created.

    Order: the calendar recorded on the mapping, the calendar named like the
    event's category, the first enabled selected calendar, then the first
    calendar on the server.
    """
    selected_by_name = {c.name: c for c in connection.enabled_calendars}

    for name in (mapping.external_calendar if mapping else None, category_name):
        if not name:
            continue
        if name in selected_by_name:
            selected = selected_by_name[name]
            return RemoteCalendar(display_name=selected.name, url=selected.url, color=selected.color)
        found = calendars.by_name(name)
        if found is not None:
            return found

    if connection.enabled_calendars:
        selected = connection.enabled_calendars[0]
        return RemoteCalendar(display_name=selected.name, url=selected.url, color=selected.color)

    remote = calendars.all()
    if not remote:
        raise CalDAVError(f"No remote calendar available for {connection.email}")
    return remote[0]


def _send(
    connection: CalDAVConnection,
    client,
    store: CalendarStore,
    calendars: RemoteCalendars,
    event: Event,
    category_name: str | None,
    uid: str,
    ics: str,
    now: datetime,
):
    mapping = store.get_mapping_for_event(event.id, connection.id)

    if mapping is None or not mapping.external_url:
        calendar = resolve_target_calendar(connection, calendars, mapping, category_name)
        url, etag = client.create_object(calendar, f"{uid}.ics", ics)
        store.insert_mapping(
            CalDAVEventMapping(
                id=None,
                event_id=event.id,
                caldav_connection_id=connection.id,
                external_uid=uid,
                external_calendar=calendar.display_name,
                external_url=url,
                etag=etag,
                sync_direction="bidirectional" if mapping else "export",
                last_synced_at=now,
            )
        )
        return

    etag = client.update_object(mapping.external_url, ics, mapping.etag)
    direction = "bidirectional" if mapping.sync_direction == "import" else mapping.sync_direction
    store.update_mapping(mapping.id, etag=etag, sync_direction=direction, last_synced_at=now)


def push_event(
    connection: CalDAVConnection,
    stats: PushStats,
    logger,
    client,
    store: CalendarStore,
    event: Event,
    now: datetime,
    category_name: str | None = None,
    calendars: RemoteCalendars | None = None,
) -> bool:
    """
    Push one event to the connection's server.

    The event is marked pending before the network call. Any failure is
    recorded on the event and counted; it never propagates.
    """
    calendars = calendars or RemoteCalendars(client)
    uid = event.ical_uid or event.id
    stamp = now.replace(microsecond=0)
    sequence = event.sequence + 1

    store.update_event(event.id, last_push_status="pending", last_push_at=now)
    store.commit()

    try:
        ics = encode(replace(event, ical_uid=uid, sequence=sequence), dtstamp=stamp)
        _send(connection, client, store, calendars, event, category_name, uid, ics, now)
        store.update_event(
            event.id,
            ical_uid=uid,
            sequence=sequence,
            ical_timestamp=stamp,
            last_push_at=now,
            last_push_status="success",
            last_push_error=None,
        )
        store.commit()
    except (CalendarSyncError, sqlite3.Error, ValueError) as e:
        store.rollback()
        logger.error(f"Failed to push event {event.id} ('{event.title}'): {e}")
        store.update_event(event.id, last_push_status="error", last_push_error=str(e))
        store.commit()
        stats.error_count += 1
        return False

    stats.pushed_events += 1
    logger.debug(f"Pushed event {event.id} as {uid} (sequence {sequence})")
    return True


def run_push(
    connection: CalDAVConnection,
    stats: PushStats,
    logger,
    client,
    store: CalendarStore,
    now: datetime,
):
    """Push every eligible event in the categories bound to this connection."""
    categories = {c.id: c.name for c in store.categories_for_connection(connection.id)}
    eligible = [e for e in store.events_in_categories(list(categories)) if is_push_eligible(e)]
    if not eligible:
        logger.debug(f"Nothing to push for {connection.email}")
        return

    logger.info(f"Pushing {len(eligible)} event(s) for {connection.email}")
    calendars = RemoteCalendars(client)
    for event in eligible:
        push_event(
            connection,
            stats,
            logger,
            client,
            store,
            event,
            now,
            category_name=categories.get(event.category_id),
            calendars=calendars,
        )


def delete_event_with_remote(store: CalendarStore, event_id: str, client_for, logger=None):
    """
    Delete an event locally after removing each mapped remote object.

    ``client_for(connection)`` returns a CalDAV client for a connection. If a
    remote delete fails, RemoteDeleteError is raised and the event stays,
    together with every mapping whose remote object was not deleted.
    """
    logger = logger or logging.getLogger(__name__)
    event = store.get_event(event_id)
    if event is None:
        raise EventNotFoundError(f"Event {event_id} not found")

    for mapping in store.mappings_for_event(event_id):
        if not mapping.external_url:
            continue
        connection = store.get_connection(mapping.caldav_connection_id)
        try:
            client_for(connection).delete_object(mapping.external_url, mapping.etag)
        except CalDAVError as e:
            if e.status not in _GONE_STATUSES:
                raise RemoteDeleteError(
                    f"Failed to delete remote copy of event {event_id}: {e}"
                ) from e
            logger.info(f"Remote object {mapping.external_url} already gone")
        except CalendarSyncError as e:
            raise RemoteDeleteError(f"Failed to delete remote copy of event {event_id}: {e}") from e
        store.delete_mapping(mapping.id)
        store.commit()
        logger.debug(f"Deleted remote object {mapping.external_url}")

    store.delete_event(event_id)
    store.commit()
    logger.info(f"Deleted event {event_id} ('{event.title}')")
