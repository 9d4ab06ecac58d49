"""
Thin wrapper around the caldav library.

Every server interaction goes through one of five calls so the reconcilers
can be exercised against an in-memory fake with the same surface.
"""

import logging
from datetime import datetime

import caldav
from caldav.elements import dav
from caldav.elements import ical
from caldav.lib import error

from household_calendar_sync.models import CalDAVError
from household_calendar_sync.models import RemoteCalendar
from household_calendar_sync.models import RemoteObject

logger = logging.getLogger(__name__)

ICS_CONTENT_TYPE = "text/calendar; charset=utf-8"


def _check_status(response, action: str, url: str):
    status = getattr(response, "status", None)
    if status is None or not 200 <= int(status) < 300:
        reason = getattr(response, "reason", "") or ""
        raise CalDAVError(f"{action} {url} failed: {status} {reason}".rstrip(), status=status)


class CalDAVClient:
    """CalDAV access for one account, authenticated with HTTP Basic auth."""

    def __init__(self, server_url: str, username: str, password: str):
        self.server_url = server_url
        self.username = username
        self._password = password
        self._client: caldav.DAVClient | None = None
        self._principal = None
        self._calendars: dict[str, caldav.Calendar] = {}

    def _connect(self):
        if self._principal is not None:
            return
        try:
            self._client = caldav.DAVClient(
                url=self.server_url, username=self.username, password=self._password
            )
            self._principal = self._client.principal()
        except error.AuthorizationError as e:
            raise CalDAVError(f"Authentication failed for {self.username}: {e}", status=401) from e
        except (error.DAVError, OSError) as e:
            raise CalDAVError(f"Cannot reach CalDAV server {self.server_url}: {e}") from e

    def _properties(self, calendar: caldav.Calendar) -> dict:
        try:
            return calendar.get_properties([dav.GetEtag(), dav.SyncToken(), ical.CalendarColor()])
        except error.DAVError as e:
            # Optional properties; some servers reject the PROPFIND outright
            logger.debug(f"Could not read properties of {calendar.url}: {e}")
            return {}

    def fetch_calendars(self) -> list[RemoteCalendar]:
        """List the account's calendars."""
        self._connect()
        try:
            calendars = self._principal.calendars()
        except (error.DAVError, OSError) as e:
            raise CalDAVError(f"Failed to list calendars: {e}") from e

        result = []
        for calendar in calendars:
            url = str(calendar.url)
            try:
                name = calendar.get_display_name()
            except error.DAVError:
                name = None
            props = self._properties(calendar)
            color = props.get(ical.CalendarColor.tag)
            self._calendars[url] = calendar
            result.append(
                RemoteCalendar(
                    display_name=name or url.rstrip("/").rsplit("/", 1)[-1],
                    url=url,
                    ctag=props.get(dav.GetEtag.tag),
                    sync_token=props.get(dav.SyncToken.tag),
                    color=color.strip() if isinstance(color, str) else None,
                )
            )
        logger.debug(f"Found {len(result)} calendar(s) for {self.username}")
        return result

    def _calendar(self, remote: RemoteCalendar) -> caldav.Calendar:
        calendar = self._calendars.get(remote.url)
        if calendar is None:
            self._connect()
            calendar = caldav.Calendar(client=self._client, url=remote.url)
            self._calendars[remote.url] = calendar
        return calendar

    def fetch_calendar_objects(
        self, calendar: RemoteCalendar, start: datetime | None = None, end: datetime | None = None
    ) -> list[RemoteObject]:
        """Fetch every VEVENT object whose time range intersects [start, end]."""
        dav_calendar = self._calendar(calendar)
        try:
            if start is not None and end is not None:
                found = dav_calendar.search(
                    start=start, end=end, event=True, expand=False, props=[dav.GetEtag()]
                )
            else:
                found = dav_calendar.search(event=True, props=[dav.GetEtag()])
        except (error.DAVError, OSError) as e:
            raise CalDAVError(f"Failed to fetch objects from '{calendar.display_name}': {e}") from e

        objects = []
        for obj in found:
            props = getattr(obj, "props", None) or {}
            objects.append(
                RemoteObject(url=str(obj.url), data=obj.data, etag=props.get(dav.GetEtag.tag))
            )
        return objects

    def _request(self, url: str, method: str, body: str = "", headers: dict | None = None):
        self._connect()
        try:
            return self._client.request(url, method, body, headers or {})
        except error.AuthorizationError as e:
            raise CalDAVError(f"{method} {url} rejected: {e}", status=401) from e
        except (error.DAVError, OSError) as e:
            raise CalDAVError(f"{method} {url} failed: {e}") from e

    def create_object(self, calendar: RemoteCalendar, filename: str, ics: str) -> tuple[str, str | None]:
        """PUT a new object; returns (url, etag)."""
        url = f"{calendar.url.rstrip('/')}/{filename}"
        response = self._request(
            url, "PUT", ics, {"Content-Type": ICS_CONTENT_TYPE, "If-None-Match": "*"}
        )
        _check_status(response, "Create", url)
        return url, response.headers.get("ETag")

    def update_object(self, url: str, ics: str, etag: str | None = None) -> str | None:
        """PUT over an existing object; returns the new etag when the server sends one."""
        headers = {"Content-Type": ICS_CONTENT_TYPE}
        if etag:
            headers["If-Match"] = etag
        response = self._request(url, "PUT", ics, headers)
        _check_status(response, "Update", url)
        return response.headers.get("ETag")

    def delete_object(self, url: str, etag: str | None = None):
        headers = {"If-Match": etag} if etag else {}
        response = self._request(url, "DELETE", "", headers)
        _check_status(response, "Delete", url)

