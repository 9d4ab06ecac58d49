"""
Stateless helpers shared by the pull and push reconcilers.
"""

from datetime import datetime
from datetime import timedelta
from datetime import timezone

from household_calendar_sync.models import CalDAVConnection
from household_calendar_sync.models import Event
from household_calendar_sync.models import ExternalAttendee
from household_calendar_sync.models import ParsedEvent


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sync_window(connection: CalDAVConnection, now: datetime) -> tuple[datetime, datetime]:
    """Return the [start, end] range pulled for a connection."""
    return (
        now - timedelta(days=connection.sync_past_days),
        now + timedelta(days=connection.sync_future_days),
    )


def incoming_wins(
    incoming_sequence: int,
    incoming_timestamp: datetime | None,
    existing_sequence: int,
    existing_timestamp: datetime | None,
) -> bool:
    """
    Decide whether a remote revision should overwrite the local event.

    Higher SEQUENCE wins. On equal SEQUENCE the newer DTSTAMP wins, where a
    missing timestamp is older than any present one. Anything else (including
    a full tie) keeps the local copy.
    """
    if incoming_sequence != existing_sequence:
        return incoming_sequence > existing_sequence
    if incoming_timestamp is None:
        return False
    if existing_timestamp is None:
        return True
    return incoming_timestamp > existing_timestamp


def external_attendees(parsed: ParsedEvent) -> list[ExternalAttendee]:
    return [ExternalAttendee(email=a.email, name=a.name, partstat=a.partstat) for a in parsed.attendees]


def content_fields(parsed: ParsedEvent) -> dict:
    """Event columns populated from a decoded VEVENT."""
    return {
        "title": parsed.title,
        "description": parsed.description,
        "location": parsed.location,
        "start_time": parsed.start_time,
        "end_time": parsed.end_time,
        "all_day": parsed.all_day,
        "recurrence_rule": parsed.recurrence_rule,
        "ical_uid": parsed.ical_uid,
        "status": parsed.status,
        "sequence": parsed.sequence,
        "ical_timestamp": parsed.ical_timestamp,
        "organizer_email": parsed.organizer_email,
        "organizer_name": parsed.organizer_name,
        "external_attendees": external_attendees(parsed),
    }


def changed_fields(event: Event, parsed: ParsedEvent) -> dict:
    """Return only the content fields whose incoming value differs from the stored one."""
    return {
        name: value
        for name, value in content_fields(parsed).items()
        if getattr(event, name) != value
    }


def is_push_eligible(event: Event) -> bool:
    """An event needs pushing if never pushed, last push failed, or edited since."""
    if event.last_push_at is None:
        return True
    if event.last_push_status == "error":
        return True
    return event.updated_at is not None and event.updated_at > event.last_push_at
