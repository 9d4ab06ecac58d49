"""
Pull phase: remote CalDAV objects → local events and mappings.
"""

import sqlite3
import uuid
from datetime import datetime

from household_calendar_sync.categories import CategoryMapper
from household_calendar_sync.db import CalendarStore
from household_calendar_sync.ical import decode
from household_calendar_sync.models import CalDAVConnection
from household_calendar_sync.models import CalDAVEventMapping
from household_calendar_sync.models import CalendarResult
from household_calendar_sync.models import CalendarSyncError
from household_calendar_sync.models import Event
from household_calendar_sync.models import ParsedEvent
from household_calendar_sync.models import RemoteCalendar
from household_calendar_sync.models import RemoteObject
from household_calendar_sync.models import SyncResult
from household_calendar_sync.sync.utils import changed_fields
from household_calendar_sync.sync.utils import content_fields
from household_calendar_sync.sync.utils import incoming_wins
from household_calendar_sync.sync.utils import sync_window


def select_calendars(connection: CalDAVConnection, remote: list[RemoteCalendar]) -> list[RemoteCalendar]:
    """
    Pick the remote calendars to pull.

    With no selection stored, every remote calendar is pulled. Otherwise only
    enabled selections are pulled, matched to the server's calendars by URL
    then by name; the selection's colour overrides the server's.
    """
    if not connection.selected_calendars:
        return list(remote)

    by_url = {c.url.rstrip("/"): c for c in remote}
    by_name = {c.display_name: c for c in remote}
    chosen = []
    for selected in connection.enabled_calendars:
        match = by_url.get(selected.url.rstrip("/")) or by_name.get(selected.name)
        if match is None:
            match = RemoteCalendar(display_name=selected.name, url=selected.url)
        chosen.append(
            RemoteCalendar(
                display_name=selected.name,
                url=match.url,
                ctag=match.ctag,
                sync_token=match.sync_token,
                color=selected.color or match.color,
            )
        )
    return chosen


def _sync_attendees(store: CalendarStore, household_id: str, event_id: str, parsed: ParsedEvent):
    """Rebuild first-class attendee rows from ICS attendees that are household members."""
    if not parsed.attendees:
        return
    members = store.household_member_emails(household_id)
    user_ids = []
    for attendee in parsed.attendees:
        user_id = members.get(attendee.email.lower())
        if user_id and user_id not in user_ids:
            user_ids.append(user_id)
    store.replace_event_attendees(event_id, user_ids)


def _apply_cancellation(connection, logger, store: CalendarStore, parsed: ParsedEvent, now: datetime):
    mapping = store.get_mapping_by_uid(connection.id, parsed.external_uid)
    if mapping is None:
        logger.debug(f"Cancellation for unknown UID {parsed.external_uid} ignored")
        return
    event = store.get_event(mapping.event_id)
    if event is not None and event.status == "cancelled":
        store.update_mapping(mapping.id, last_synced_at=now)
        return
    store.update_event(
        mapping.event_id,
        status="cancelled",
        updated_at=now,
        last_push_at=now,
        last_push_status="success",
        last_push_error=None,
    )
    store.update_mapping(mapping.id, last_synced_at=now)
    logger.info(f"Cancelled event {mapping.event_id} (UID {parsed.external_uid})")


def _insert_new(
    connection: CalDAVConnection,
    logger,
    store: CalendarStore,
    mapper: CategoryMapper,
    parsed: ParsedEvent,
    calendar: RemoteCalendar,
    now: datetime,
):
    category_id = mapper.find_or_create_category(
        connection.household_id,
        connection.user_id,
        calendar.display_name,
        connection.id,
        calendar.color,
    )
    event = Event(
        id=str(uuid.uuid4()),
        household_id=connection.household_id,
        user_id=connection.user_id,
        category_id=category_id,
        created_at=now,
        updated_at=now,
        last_push_at=now,
        last_push_status="success",
        **content_fields(parsed),
    )
    store.insert_event(event)
    store.insert_mapping(
        CalDAVEventMapping(
            id=None,
            event_id=event.id,
            caldav_connection_id=connection.id,
            external_uid=parsed.external_uid,
            external_calendar=parsed.external_calendar,
            external_url=parsed.external_url,
            etag=parsed.etag,
            sync_direction="import",
            last_synced_at=now,
        )
    )
    _sync_attendees(store, connection.household_id, event.id, parsed)
    logger.debug(f"Imported {parsed.external_uid} as event {event.id}")


def _merge_existing(
    connection: CalDAVConnection,
    logger,
    store: CalendarStore,
    mapping: CalDAVEventMapping,
    parsed: ParsedEvent,
    now: datetime,
):
    event = store.get_event(mapping.event_id)
    if event is None:
        raise CalendarSyncError(f"Mapping {mapping.id} points at missing event {mapping.event_id}")

    if not incoming_wins(parsed.sequence, parsed.ical_timestamp, event.sequence, event.ical_timestamp):
        logger.debug(
            f"Local wins for {parsed.external_uid}: "
            f"incoming seq {parsed.sequence} vs local seq {event.sequence}"
        )
        store.update_mapping(mapping.id, last_synced_at=now)
        return

    changes = changed_fields(event, parsed)
    if not changes:
        store.update_mapping(mapping.id, last_synced_at=now)
        return

    store.update_event(
        event.id,
        updated_at=now,
        last_push_at=now,
        last_push_status="success",
        last_push_error=None,
        **changes,
    )
    store.update_mapping(
        mapping.id, etag=parsed.etag, external_url=parsed.external_url, last_synced_at=now
    )
    _sync_attendees(store, connection.household_id, event.id, parsed)
    logger.debug(f"Updated event {event.id} from {parsed.external_uid}: {', '.join(sorted(changes))}")


def _process_parsed_event(connection, logger, store, mapper, parsed, calendar, now):
    if parsed.status == "cancelled":
        _apply_cancellation(connection, logger, store, parsed, now)
        return
    mapping = store.get_mapping_by_uid(connection.id, parsed.external_uid)
    if mapping is None:
        _insert_new(connection, logger, store, mapper, parsed, calendar, now)
    else:
        _merge_existing(connection, logger, store, mapping, parsed, now)


def _process_object(
    connection: CalDAVConnection,
    calendar_result: CalendarResult,
    logger,
    store: CalendarStore,
    mapper: CategoryMapper,
    calendar: RemoteCalendar,
    obj: RemoteObject,
    now: datetime,
):
    """Decode one remote object and merge each of its VEVENTs; errors stay inside."""
    if not obj.data:
        return
    try:
        parsed_events = decode(obj.data, calendar.display_name, obj.url or calendar.url)
    except CalendarSyncError as e:
        logger.error(f"Failed to parse {obj.url}: {e}")
        calendar_result.error_count += 1
        return

    for parsed in parsed_events:
        if parsed.recurrence_id is not None:
            logger.debug(
                f"Skipping override of {parsed.external_uid} at {parsed.recurrence_id.isoformat()}"
            )
            continue
        parsed.etag = obj.etag
        try:
            _process_parsed_event(connection, logger, store, mapper, parsed, calendar, now)
            store.commit()
            calendar_result.synced_events += 1
        except (CalendarSyncError, sqlite3.Error, ValueError) as e:
            store.rollback()
            logger.error(f"Failed to save {parsed.external_uid} from {calendar.display_name}: {e}")
            calendar_result.error_count += 1


def run_pull(
    connection: CalDAVConnection,
    result: SyncResult,
    logger,
    client,
    store: CalendarStore,
    mapper: CategoryMapper,
    now: datetime,
):
    """
    Pull every selected calendar of a connection into the local store.

    A failure to list calendars propagates to the caller. A failure to fetch
    one calendar, or to handle one object, is logged and counted, and the
    loop moves on.
    """
    start, end = sync_window(connection, now)
    calendars = select_calendars(connection, client.fetch_calendars())
    logger.info(f"Pulling {len(calendars)} calendar(s) for {connection.email}")

    for calendar in calendars:
        calendar_result = CalendarResult(name=calendar.display_name)
        try:
            objects = client.fetch_calendar_objects(calendar, start, end)
        except CalendarSyncError as e:
            logger.error(f"Failed to fetch calendar '{calendar.display_name}': {e}")
            calendar_result.error_count += 1
            result.add_calendar(calendar_result)
            continue

        calendar_result.events_found = len(objects)
        for obj in objects:
            _process_object(connection, calendar_result, logger, store, mapper, calendar, obj, now)

        logger.info(
            f"Calendar '{calendar.display_name}': {calendar_result.events_found} found, "
            f"{calendar_result.synced_events} synced, {calendar_result.error_count} error(s)"
        )
        result.add_calendar(calendar_result)
