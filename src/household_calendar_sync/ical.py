"""
iCalendar codec: remote ICS text ⇄ ParsedEvent, local Event → ICS text.
"""

import logging
from datetime import date
from datetime import datetime
from datetime import timedelta
from datetime import timezone

from icalendar import Calendar
from icalendar import Event as VEvent
from icalendar import vCalAddress
from icalendar import vRecur

from household_calendar_sync.models import Event
from household_calendar_sync.models import ICalParseError
from household_calendar_sync.models import ParsedAttendee
from household_calendar_sync.models import ParsedEvent

logger = logging.getLogger(__name__)

PRODID = "-//Home Dashboard//Calendar Sync//EN"
DEFAULT_TITLE = "Untitled Event"


def _to_instant(value) -> datetime:
    """Convert a DATE or DATE-TIME value to an aware UTC datetime.

    Floating times are read as UTC; DATE values become midnight UTC.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def _is_date_only(value) -> bool:
    return isinstance(value, date) and not isinstance(value, datetime)


def _strip_mailto(address) -> str:
    text = str(address)
    if text.lower().startswith("mailto:"):
        text = text[len("mailto:") :]
    return text.lower()


def _param(address, name: str) -> str | None:
    params = getattr(address, "params", None)
    if not params:
        return None
    value = params.get(name)
    return str(value) if value else None


def _as_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def normalize_rrule(rule: str | None) -> str | None:
    """Rewrite an RRULE string in the part order icalendar serialises it in."""
    if not rule:
        return None
    return vRecur.from_ical(rule).to_ical().decode("utf-8")


def _recurrence_string(component) -> str | None:
    rrule = component.get("RRULE")
    if rrule is None:
        return None
    # Several RRULE lines are legal but only the first is kept
    if isinstance(rrule, list):
        rrule = rrule[0]
    return rrule.to_ical().decode("utf-8")


def _decode_component(component, calendar_name: str, calendar_url: str) -> ParsedEvent | None:
    uid = component.get("UID")
    if not uid:
        logger.warning(f"Skipping VEVENT without UID in calendar '{calendar_name}'")
        return None
    uid = str(uid)

    dtstart = component.get("DTSTART")
    dtend = component.get("DTEND")
    if dtstart is None and dtend is None:
        logger.warning(f"Skipping VEVENT {uid}: no DTSTART or DTEND")
        return None

    start_value = dtstart.dt if dtstart is not None else dtend.dt
    all_day = _is_date_only(start_value)
    start_time = _to_instant(start_value)

    if dtend is not None:
        end_time = _to_instant(dtend.dt)
    else:
        duration = component.get("DURATION")
        if duration is not None:
            end_time = start_time + duration.dt
        elif all_day:
            end_time = start_time + timedelta(days=1)
        else:
            end_time = start_time

    summary = str(component.get("SUMMARY") or "").strip()
    description = component.get("DESCRIPTION")
    location = component.get("LOCATION")

    status = component.get("STATUS")
    status = str(status).lower() if status else "confirmed"

    try:
        sequence = int(component.get("SEQUENCE") or 0)
    except (TypeError, ValueError):
        sequence = 0

    dtstamp = component.get("DTSTAMP")
    ical_timestamp = _to_instant(dtstamp.dt) if dtstamp is not None else None
    recurrence_id = component.get("RECURRENCE-ID")

    organizer = component.get("ORGANIZER")
    organizer_email = _strip_mailto(organizer) if organizer else None
    organizer_name = _param(organizer, "CN") if organizer else None

    attendees = []
    for attendee in _as_list(component.get("ATTENDEE")):
        partstat = _param(attendee, "PARTSTAT")
        attendees.append(
            ParsedAttendee(
                email=_strip_mailto(attendee),
                name=_param(attendee, "CN"),
                partstat=partstat.lower() if partstat else "needs-action",
            )
        )

    return ParsedEvent(
        external_uid=uid,
        title=summary or DEFAULT_TITLE,
        description=str(description) if description else None,
        location=str(location) if location else None,
        start_time=start_time,
        end_time=end_time,
        all_day=all_day,
        recurrence_rule=_recurrence_string(component),
        external_calendar=calendar_name,
        external_url=calendar_url,
        etag=None,
        status=status,
        sequence=sequence,
        ical_uid=uid,
        ical_timestamp=ical_timestamp,
        organizer_email=organizer_email,
        organizer_name=organizer_name,
        attendees=attendees,
        recurrence_id=_to_instant(recurrence_id.dt) if recurrence_id is not None else None,
    )


def decode(ics_text: str, calendar_name: str, calendar_url: str) -> list[ParsedEvent]:
    """
    Parse an ICS document into ParsedEvents, one per usable VEVENT.

    VEVENTs without a UID or without any DTSTART/DTEND are logged and
    skipped. A document that cannot be parsed at all raises ICalParseError.
    """
    try:
        calendar = Calendar.from_ical(ics_text)
    except (ValueError, IndexError, KeyError) as e:
        raise ICalParseError(f"Malformed iCalendar data from {calendar_url}: {e}") from e

    events = []
    for component in calendar.walk("VEVENT"):
        try:
            parsed = _decode_component(component, calendar_name, calendar_url)
        except (ValueError, TypeError, AttributeError) as e:
            raise ICalParseError(
                f"Unreadable VEVENT {component.get('UID', '<no uid>')}: {e}"
            ) from e
        if parsed is not None:
            events.append(parsed)
    return events


def _time_value(value: datetime, all_day: bool):
    value = _to_instant(value)
    return value.date() if all_day else value


def encode(event: Event, dtstamp: datetime | None = None) -> str:
    """Render a local event as a single-VEVENT VCALENDAR document."""
    calendar = Calendar()
    calendar.add("prodid", PRODID)
    calendar.add("version", "2.0")

    vevent = VEvent()
    vevent.add("uid", event.ical_uid or event.id)
    vevent.add("summary", event.title)
    if event.description:
        vevent.add("description", event.description)
    if event.location:
        vevent.add("location", event.location)

    vevent.add("dtstart", _time_value(event.start_time, event.all_day))
    vevent.add("dtend", _time_value(event.end_time, event.all_day))

    if event.recurrence_rule:
        vevent.add("rrule", vRecur.from_ical(event.recurrence_rule))

    vevent.add("status", (event.status or "confirmed").upper())
    vevent.add("sequence", int(event.sequence or 0))
    vevent.add("dtstamp", _to_instant(dtstamp or datetime.now(timezone.utc)))
    if event.created_at:
        vevent.add("created", _to_instant(event.created_at))
    if event.updated_at:
        vevent.add("last-modified", _to_instant(event.updated_at))

    if event.organizer_email:
        organizer = vCalAddress(f"mailto:{event.organizer_email}")
        if event.organizer_name:
            organizer.params["CN"] = event.organizer_name
        vevent.add("organizer", organizer)

    for attendee in event.external_attendees:
        address = vCalAddress(f"mailto:{attendee.email}")
        if attendee.name:
            address.params["CN"] = attendee.name
        address.params["PARTSTAT"] = (attendee.partstat or "needs-action").upper()
        vevent.add("attendee", address)

    calendar.add_component(vevent)
    return calendar.to_ical().decode("utf-8")
