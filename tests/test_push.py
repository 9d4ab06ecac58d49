"""
Tests for the push phase and remote delete propagation.
"""

from datetime import timedelta

import pytest

from household_calendar_sync.models import CalDAVConnection
from household_calendar_sync.models import CalDAVError
from household_calendar_sync.models import CalDAVEventMapping
from household_calendar_sync.models import EventNotFoundError
from household_calendar_sync.models import PushStats
from household_calendar_sync.models import RemoteDeleteError
from household_calendar_sync.models import SelectedCalendar
from household_calendar_sync.models import SyncResult
from household_calendar_sync.sync.pull import run_pull
from household_calendar_sync.sync.push import RemoteCalendars
from household_calendar_sync.sync.push import delete_event_with_remote
from household_calendar_sync.sync.push import push_event
from household_calendar_sync.sync.push import resolve_target_calendar
from household_calendar_sync.sync.push import run_push
from household_calendar_sync.sync.utils import is_push_eligible
from tests.conftest import HOUSEHOLD_ID
from tests.conftest import NOW
from tests.conftest import USER_ID
from tests.conftest import make_event
from tests.conftest import make_ics
from tests.conftest import make_vevent
from tests.fake_client import FakeCalDAVClient


def _push(connection, store, client, logger, now=NOW) -> PushStats:
    stats = PushStats()
    run_push(connection, stats, logger, client, store, now)
    return stats


def _pull(connection, store, client, mapper, logger, now=NOW):
    result = SyncResult(connection_id=connection.id, email=connection.email)
    run_pull(connection, result, logger, client, store, mapper, now)
    return result


class TestEligibility:
    def test_never_pushed(self):
        assert is_push_eligible(make_event())

    def test_last_push_failed(self):
        assert is_push_eligible(make_event(last_push_at=NOW, last_push_status="error"))

    def test_edited_since_push(self):
        event = make_event(
            last_push_at=NOW, last_push_status="success", updated_at=NOW + timedelta(seconds=1)
        )
        assert is_push_eligible(event)

    def test_up_to_date(self):
        event = make_event(last_push_at=NOW, last_push_status="success", updated_at=NOW)
        assert not is_push_eligible(event)


class TestCreate:
    def test_new_event_created_as_export(self, store, connection, synced_category, fake_client, sync_logger):
        store.insert_event(make_event(category_id=synced_category.id))
        store.commit()

        stats = _push(connection, store, fake_client, sync_logger)

        assert stats.pushed_events == 1
        assert stats.error_count == 0
        [url] = fake_client.creates
        assert url == f"{fake_client.calendar('Work').url}event-1.ics"

        mapping = store.get_mapping_for_event("event-1", connection.id)
        assert mapping.sync_direction == "export"
        assert mapping.external_uid == "event-1"
        assert mapping.external_url == url
        assert mapping.etag == fake_client.get(url).etag

        event = store.get_event("event-1")
        assert event.ical_uid == "event-1"
        assert event.sequence == 1
        assert event.ical_timestamp == NOW
        assert event.last_push_status == "success"
        assert event.last_push_error is None
        assert not is_push_eligible(event)

        body = fake_client.get(url).data
        assert "UID:event-1" in body
        assert "SEQUENCE:1" in body
        assert "DTSTAMP:20250101T080000Z" in body

    def test_events_outside_bound_categories_ignored(self, store, connection, fake_client, sync_logger):
        store.insert_event(make_event())
        store.commit()

        stats = _push(connection, store, fake_client, sync_logger)

        assert stats.pushed_events == 0
        assert fake_client.creates == []

    def test_pushed_event_not_reimported(
        self, store, connection, synced_category, fake_client, mapper, sync_logger
    ):
        store.insert_event(make_event(category_id=synced_category.id))
        store.commit()
        _push(connection, store, fake_client, sync_logger)
        before = store.get_event("event-1")

        result = _pull(connection, store, fake_client, mapper, sync_logger)

        assert result.synced_events == 1
        assert store.get_event("event-1") == before
        assert store.get_mapping_for_event("event-1", connection.id).sync_direction == "export"
        assert _push(connection, store, fake_client, sync_logger).pushed_events == 0

    def test_marked_pending_before_network_call(self, store, connection, synced_category, sync_logger):
        seen = []

        class InspectingClient(FakeCalDAVClient):
            def create_object(self, calendar, filename, ics):
                seen.append(store.get_event("event-1").last_push_status)
                return super().create_object(calendar, filename, ics)

        store.insert_event(make_event(category_id=synced_category.id))
        store.commit()

        _push(connection, store, InspectingClient(), sync_logger)

        assert seen == ["pending"]


class TestUpdate:
    def test_imported_event_updated_and_promoted(
        self, store, connection, fake_client, mapper, sync_logger
    ):
        obj = fake_client.put("Work", "abc123.ics", make_ics(make_vevent("abc123")))
        _pull(connection, store, fake_client, mapper, sync_logger)
        mapping = store.get_mapping_by_uid(connection.id, "abc123")
        store.update_event(mapping.event_id, title="Standup v2", updated_at=NOW + timedelta(hours=1))
        store.commit()

        stats = _push(connection, store, fake_client, sync_logger, now=NOW + timedelta(hours=2))

        assert stats.pushed_events == 1
        assert fake_client.creates == []
        assert fake_client.updates == [(obj.url, obj.etag)]

        mapping = store.get_mapping_by_uid(connection.id, "abc123")
        assert mapping.sync_direction == "bidirectional"
        assert mapping.etag == fake_client.get(obj.url).etag
        assert mapping.etag != obj.etag

        event = store.get_event(mapping.event_id)
        assert event.ical_uid == "abc123"
        assert event.sequence == 1
        assert "SUMMARY:Standup v2" in fake_client.get(obj.url).data

    def test_stale_etag_recorded_as_error(self, store, connection, fake_client, mapper, sync_logger):
        fake_client.put("Work", "abc123.ics", make_ics(make_vevent("abc123")))
        _pull(connection, store, fake_client, mapper, sync_logger)
        # Edited on another device after our pull
        fake_client.put("Work", "abc123.ics", make_ics(make_vevent("abc123", summary="Theirs")))
        mapping = store.get_mapping_by_uid(connection.id, "abc123")
        store.update_event(mapping.event_id, title="Ours", updated_at=NOW + timedelta(hours=1))
        store.commit()

        stats = _push(connection, store, fake_client, sync_logger, now=NOW + timedelta(hours=2))

        assert stats.error_count == 1
        event = store.get_event(mapping.event_id)
        assert event.last_push_status == "error"
        assert "412" in event.last_push_error
        assert event.sequence == 0
        assert is_push_eligible(event)


class TestFailureIsolation:
    def test_one_failure_does_not_block_others(self, store, connection, synced_category, fake_client, sync_logger):
        store.insert_event(make_event("event-a", category_id=synced_category.id))
        store.insert_event(make_event("event-b", category_id=synced_category.id))
        store.commit()
        fake_client.fail_create["event-a.ics"] = CalDAVError("PUT failed: 507", status=507)

        stats = _push(connection, store, fake_client, sync_logger)

        assert stats.pushed_events == 1
        assert stats.error_count == 1
        failed = store.get_event("event-a")
        assert failed.last_push_status == "error"
        assert "507" in failed.last_push_error
        assert store.get_mapping_for_event("event-a", connection.id) is None
        assert store.get_event("event-b").last_push_status == "success"

    def test_failed_event_retried_next_run(self, store, connection, synced_category, fake_client, sync_logger):
        store.insert_event(make_event(category_id=synced_category.id))
        store.commit()
        fake_client.fail_create["event-1.ics"] = CalDAVError("timeout")
        _push(connection, store, fake_client, sync_logger)

        del fake_client.fail_create["event-1.ics"]
        stats = _push(connection, store, fake_client, sync_logger)

        assert stats.pushed_events == 1
        assert store.get_event("event-1").last_push_status == "success"

    def test_no_remote_calendar_is_push_error(self, store, connection, synced_category, sync_logger):
        client = FakeCalDAVClient(calendar_names=())
        event = make_event(category_id=synced_category.id)
        store.insert_event(event)
        store.commit()
        stats = PushStats()

        ok = push_event(connection, stats, sync_logger, client, store, event, NOW)

        assert ok is False
        assert stats.error_count == 1
        assert store.get_event("event-1").last_push_status == "error"


class TestResolveTargetCalendar:
    def _connection(self, selected=()):
        return CalDAVConnection(
            id="conn-x",
            user_id=USER_ID,
            household_id=HOUSEHOLD_ID,
            email="x@example.com",
            password_encrypted="",
            server_url="https://caldav.example.com",
            selected_calendars=list(selected),
        )

    def test_mapping_calendar_first(self):
        client = FakeCalDAVClient(calendar_names=("Work", "Family"))
        mapping = CalDAVEventMapping(None, "e", "conn-x", "u", "Family")
        target = resolve_target_calendar(self._connection(), RemoteCalendars(client), mapping, "Work")
        assert target.display_name == "Family"

    def test_category_name_matches_selected_calendar(self):
        client = FakeCalDAVClient(calendar_names=("Work",))
        connection = self._connection([SelectedCalendar("Kids", "https://caldav.example.com/kids/")])
        target = resolve_target_calendar(connection, RemoteCalendars(client), None, "Kids")
        assert target.url == "https://caldav.example.com/kids/"
        assert client.fetch_calls == 0

    def test_falls_back_to_first_enabled_selection(self):
        client = FakeCalDAVClient(calendar_names=("Work",))
        connection = self._connection(
            [
                SelectedCalendar("Off", "https://caldav.example.com/off/", enabled=False),
                SelectedCalendar("Home", "https://caldav.example.com/home/"),
            ]
        )
        target = resolve_target_calendar(connection, RemoteCalendars(client), None, "Unknown")
        assert target.display_name == "Home"

    def test_falls_back_to_first_remote(self):
        client = FakeCalDAVClient(calendar_names=("Work", "Family"))
        target = resolve_target_calendar(self._connection(), RemoteCalendars(client), None, None)
        assert target.display_name == "Work"

    def test_nothing_available_raises(self):
        client = FakeCalDAVClient(calendar_names=())
        with pytest.raises(CalDAVError):
            resolve_target_calendar(self._connection(), RemoteCalendars(client), None, None)

    def test_calendar_list_fetched_once(self):
        client = FakeCalDAVClient(calendar_names=("Work",))
        calendars = RemoteCalendars(client)
        calendars.by_name("Work")
        calendars.by_name("Other")
        calendars.all()
        assert client.fetch_calls == 1


class TestDeleteEvent:
    def _pushed_event(self, store, connection, category, client, logger):
        store.insert_event(make_event(category_id=category.id))
        store.commit()
        _push(connection, store, client, logger)
        return store.get_mapping_for_event("event-1", connection.id)

    def test_remote_deleted_before_local(self, store, connection, synced_category, fake_client, sync_logger):
        mapping = self._pushed_event(store, connection, synced_category, fake_client, sync_logger)

        delete_event_with_remote(store, "event-1", lambda c: fake_client, sync_logger)

        assert fake_client.deletes == [(mapping.external_url, mapping.etag)]
        assert store.get_event("event-1") is None
        assert store.mappings_for_event("event-1") == []

    def test_remote_failure_keeps_local(self, store, connection, synced_category, fake_client, sync_logger):
        self._pushed_event(store, connection, synced_category, fake_client, sync_logger)
        fake_client.fail_delete = CalDAVError("DELETE failed: 500", status=500)

        with pytest.raises(RemoteDeleteError):
            delete_event_with_remote(store, "event-1", lambda c: fake_client, sync_logger)

        assert store.get_event("event-1") is not None
        assert len(store.mappings_for_event("event-1")) == 1

    def test_already_gone_treated_as_deleted(self, store, connection, synced_category, fake_client, sync_logger):
        mapping = self._pushed_event(store, connection, synced_category, fake_client, sync_logger)
        fake_client.delete_object(mapping.external_url)
        fake_client.reset_counters()

        delete_event_with_remote(store, "event-1", lambda c: fake_client, sync_logger)

        assert store.get_event("event-1") is None

    def test_mapping_without_url_skipped(self, store, connection, fake_client, sync_logger):
        store.insert_event(make_event())
        store.insert_mapping(CalDAVEventMapping(None, "event-1", connection.id, "event-1", "Work"))
        store.commit()

        delete_event_with_remote(store, "event-1", lambda c: fake_client, sync_logger)

        assert fake_client.deletes == []
        assert store.get_event("event-1") is None

    def test_event_without_mappings_deleted(self, store, fake_client, sync_logger):
        store.insert_event(make_event())
        store.commit()

        delete_event_with_remote(store, "event-1", lambda c: fake_client, sync_logger)

        assert store.get_event("event-1") is None

    def test_partial_failure_keeps_unfinished_mappings(
        self, store, connection, synced_category, fake_client, sync_logger
    ):
        self._pushed_event(store, connection, synced_category, fake_client, sync_logger)
        second = CalDAVConnection(
            id="conn-2",
            user_id=USER_ID,
            household_id=HOUSEHOLD_ID,
            email="alice@work.example.com",
            password_encrypted=connection.password_encrypted,
            server_url="https://other.example.com",
        )
        store.insert_connection(second)
        store.insert_mapping(
            CalDAVEventMapping(
                None, "event-1", second.id, "event-1", "Work", "https://other.example.com/e1.ics"
            )
        )
        store.commit()
        other_client = FakeCalDAVClient()
        other_client.fail_delete = CalDAVError("DELETE failed: 503", status=503)
        clients = {connection.id: fake_client, second.id: other_client}

        with pytest.raises(RemoteDeleteError):
            delete_event_with_remote(store, "event-1", lambda c: clients[c.id], sync_logger)

        assert len(fake_client.deletes) == 1
        remaining = store.mappings_for_event("event-1")
        assert [m.caldav_connection_id for m in remaining] == ["conn-2"]
        assert store.get_event("event-1") is not None

    def test_missing_event_raises(self, store, fake_client):
        with pytest.raises(EventNotFoundError):
            delete_event_with_remote(store, "nope", lambda c: fake_client)
