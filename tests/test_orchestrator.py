"""
Tests for SyncOrchestrator — one full pull-then-push cycle per connection,
with connection status bookkeeping and per-connection failure isolation.
"""

from dataclasses import replace

import pytest

from household_calendar_sync.models import CalDAVError
from household_calendar_sync.sync import SyncOrchestrator
from tests.conftest import ALICE_EMAIL
from tests.conftest import NOW
from tests.conftest import PASSWORD
from tests.conftest import make_event
from tests.conftest import make_ics
from tests.conftest import make_vevent
from tests.fake_client import FakeCalDAVClient


@pytest.fixture
def factory_calls():
    return []


@pytest.fixture
def orchestrator(store, cipher, fake_client, factory_calls):
    def factory(server_url, username, password):
        factory_calls.append((server_url, username, password))
        return fake_client

    return SyncOrchestrator(store, cipher, client_factory=factory, clock=lambda: NOW)


class TestSyncConnection:
    def test_full_cycle(self, orchestrator, store, connection, synced_category, fake_client):
        fake_client.put("Work", "abc123.ics", make_ics(make_vevent("abc123")))
        store.insert_event(make_event(category_id=synced_category.id))
        store.commit()

        result = orchestrator.sync_connection(connection)

        assert result.success is True
        assert result.error is None
        assert result.events_found == 1
        assert result.synced_events == 1
        assert result.pushed_events == 1
        assert result.push_error_count == 0

        stored = store.get_connection(connection.id)
        assert stored.last_sync_status == "success"
        assert stored.last_sync_at == NOW
        assert stored.last_sync_error is None

    def test_client_built_with_decrypted_password(self, orchestrator, connection, factory_calls):
        orchestrator.sync_connection(connection)
        assert factory_calls == [(connection.server_url, ALICE_EMAIL, PASSWORD)]

    def test_listing_failure_recorded_not_raised(self, orchestrator, store, connection, fake_client):
        fake_client.fail_fetch_calendars = CalDAVError("Authentication failed", status=401)

        result = orchestrator.sync_connection(connection)

        assert result.success is False
        assert result.error == "Authentication failed"
        stored = store.get_connection(connection.id)
        assert stored.last_sync_status == "error"
        assert stored.last_sync_error == "Authentication failed"
        assert stored.last_sync_at is None

    def test_unexpected_error_recorded(self, store, cipher, connection):
        def factory(server_url, username, password):
            raise RuntimeError("socket exploded")

        orchestrator = SyncOrchestrator(store, cipher, client_factory=factory, clock=lambda: NOW)

        result = orchestrator.sync_connection(connection)

        assert result.success is False
        assert result.error == "socket exploded"
        assert store.get_connection(connection.id).last_sync_status == "error"

    def test_undecryptable_password_fails_connection(self, orchestrator, store, connection):
        broken = replace(connection, password_encrypted="not-a-valid-token")

        result = orchestrator.sync_connection(broken)

        assert result.success is False
        assert store.get_connection(connection.id).last_sync_status == "error"

    def test_push_errors_do_not_fail_sync(self, orchestrator, store, connection, synced_category, fake_client):
        store.insert_event(make_event(category_id=synced_category.id))
        store.commit()
        fake_client.fail_create["event-1.ics"] = CalDAVError("PUT failed: 500", status=500)

        result = orchestrator.sync_connection(connection)

        assert result.success is True
        assert result.push_error_count == 1
        assert result.to_dict()["pushErrorCount"] == 1


class TestSyncAll:
    def test_one_failure_does_not_stop_others(self, store, cipher, connection):
        second = replace(connection, id="conn-2", email="alice@other.example.com")
        store.insert_connection(second)
        store.commit()

        good = FakeCalDAVClient()
        good.put("Work", "abc123.ics", make_ics(make_vevent("abc123")))
        bad = FakeCalDAVClient()
        bad.fail_fetch_calendars = CalDAVError("Connection refused")
        clients = {ALICE_EMAIL: bad, "alice@other.example.com": good}

        orchestrator = SyncOrchestrator(
            store, cipher, client_factory=lambda url, user, pw: clients[user], clock=lambda: NOW
        )
        results = orchestrator.sync_all([connection, second])

        assert [r.success for r in results] == [False, True]
        assert results[1].synced_events == 1
        assert store.get_connection("conn-2").last_sync_status == "success"


class TestResultShape:
    def test_to_dict_keys(self, orchestrator, connection, fake_client):
        payload = orchestrator.sync_connection(connection).to_dict()

        assert payload == {
            "connectionId": connection.id,
            "email": ALICE_EMAIL,
            "success": True,
            "eventsFound": 0,
            "syncedEvents": 0,
            "errorCount": 0,
            "pushedEvents": 0,
            "pushErrorCount": 0,
            "calendars": [{"name": "Work", "eventsFound": 0, "syncedEvents": 0, "errorCount": 0}],
        }

    def test_error_key_only_on_failure(self, orchestrator, connection, fake_client):
        fake_client.fail_fetch_calendars = CalDAVError("nope")
        assert orchestrator.sync_connection(connection).to_dict()["error"] == "nope"
