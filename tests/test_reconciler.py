"""Tests for applying change-feed events locally."""

import asyncio

import pytest

from tests.factories import TRIP_ID, make_expense, make_trip
from tests.fakes import InMemoryChangeFeed
from tripsync.models.audit import AuditEventType
from tripsync.models.sync import ChangeEvent, ChangeEventType
from tripsync.services.storage.interface import RemoteUnavailableError
from tripsync.services.storage.local import LocalAuditStorage
from tripsync.sync.reconciler import RealtimeReconciler


def event(event_type, entity_id, table="expenses", parent_id=TRIP_ID, payload=None):
    return ChangeEvent(
        table=table,
        event_type=event_type,
        entity_id=entity_id,
        parent_id=parent_id,
        payload=payload,
    )


def audit_types(store, entity_id, table="expenses"):
    events = asyncio.run(LocalAuditStorage(store).get_events_by_entity(table, entity_id))
    return [e.event_type for e in events]


class TestScope:
    """Tests for deciding which events concern this client."""

    def test_tracking_child_collection_makes_trip_visible(self, reconciler):
        reconciler.track("expenses", TRIP_ID)
        assert TRIP_ID in reconciler.visible_trips

    def test_tracking_all_trips(self, reconciler, store):
        store.upsert("trips", make_trip().to_payload())
        store.upsert("trips", make_trip(id="trip-2").to_payload())
        assert len(reconciler.track("trips")) == 2
        assert reconciler.visible_trips == {TRIP_ID, "trip-2"}

    def test_unknown_table(self, reconciler):
        with pytest.raises(LookupError):
            reconciler.track("receipts")

    def test_relevance_rules(self, reconciler):
        reconciler.set_visible_trips([TRIP_ID])

        assert reconciler.is_relevant(event(ChangeEventType.UPDATE, "e-1"))
        assert not reconciler.is_relevant(event(ChangeEventType.UPDATE, "e-1", parent_id="trip-9"))
        assert reconciler.is_relevant(event(ChangeEventType.INSERT, "trip-9", table="trips", parent_id=None))
        assert not reconciler.is_relevant(event(ChangeEventType.UPDATE, "trip-9", table="trips", parent_id=None))
        assert reconciler.is_relevant(event(ChangeEventType.DELETE, "e-1", parent_id=None))
        assert not reconciler.is_relevant(event(ChangeEventType.UPDATE, "e-1", parent_id=None))

    def test_irrelevant_event_ignored(self, reconciler, remote, store):
        expense = make_expense(trip_id="trip-9")
        remote.seed("expenses", expense.to_payload())

        changed = asyncio.run(reconciler.handle(event(ChangeEventType.INSERT, expense.id, parent_id="trip-9")))

        assert changed is False
        assert remote.calls == []
        assert store.get("expenses", expense.id) is None


class TestHandle:
    """Tests for applying inserts, updates and deletes."""

    def test_insert_refetches_and_appends(self, reconciler, remote, store):
        reconciler.track("expenses", TRIP_ID)
        seen = []
        reconciler.add_listener(seen.append)
        expense = make_expense()
        row = remote.seed("expenses", expense.to_payload())

        changed = asyncio.run(reconciler.handle(event(ChangeEventType.INSERT, expense.id)))

        assert changed is True
        assert store.get("expenses", expense.id) == row
        assert reconciler.collection("expenses", TRIP_ID) == [row]
        assert len(seen) == 1
        assert AuditEventType.REMOTE_CHANGE_APPLIED in audit_types(store, expense.id)

    def test_feed_payload_not_trusted(self, reconciler, remote, store):
        """Test that the canonical row wins over the payload in the event."""
        reconciler.track("expenses", TRIP_ID)
        expense = make_expense(title="Real")
        remote.seed("expenses", expense.to_payload())
        spoofed = {**expense.to_payload(), "title": "Spoofed"}

        asyncio.run(reconciler.handle(event(ChangeEventType.UPDATE, expense.id, payload=spoofed)))

        assert store.get("expenses", expense.id)["title"] == "Real"

    def test_update_replaces_in_place(self, reconciler, remote, store):
        first = make_expense(id="e-1")
        second = make_expense(id="e-2")
        for expense in (first, second):
            store.upsert("expenses", remote.seed("expenses", expense.to_payload()))
        reconciler.track("expenses", TRIP_ID)

        remote.remote_edit("expenses", "e-1", title="Renamed")
        asyncio.run(reconciler.handle(event(ChangeEventType.UPDATE, "e-1")))

        collection = reconciler.collection("expenses", TRIP_ID)
        assert [row["id"] for row in collection] == ["e-1", "e-2"]
        assert collection[0]["title"] == "Renamed"

    def test_row_moved_to_other_trip(self, reconciler, remote, store):
        expense = make_expense()
        store.upsert("expenses", remote.seed("expenses", expense.to_payload()))
        reconciler.track("expenses", TRIP_ID)
        reconciler.track("expenses", "trip-2")

        remote.remote_edit("expenses", expense.id, trip_id="trip-2")
        asyncio.run(reconciler.handle(event(ChangeEventType.UPDATE, expense.id, parent_id="trip-2")))

        assert reconciler.collection("expenses", TRIP_ID) == []
        assert [row["id"] for row in reconciler.collection("expenses", "trip-2")] == [expense.id]

    def test_delete_removes_without_refetch(self, reconciler, remote, store):
        expense = make_expense()
        store.upsert("expenses", expense.to_payload())
        reconciler.track("expenses", TRIP_ID)

        changed = asyncio.run(reconciler.handle(event(ChangeEventType.DELETE, expense.id)))

        assert changed is True
        assert remote.calls == []
        assert store.get("expenses", expense.id) is None
        assert reconciler.collection("expenses", TRIP_ID) == []
        assert AuditEventType.REMOTE_CHANGE_DELETED in audit_types(store, expense.id)

    def test_refetch_finding_nothing_is_a_delete(self, reconciler, store):
        expense = make_expense()
        store.upsert("expenses", expense.to_payload())
        reconciler.track("expenses", TRIP_ID)

        asyncio.run(reconciler.handle(event(ChangeEventType.UPDATE, expense.id)))

        assert store.get("expenses", expense.id) is None

    def test_refetch_failure_logged_and_skipped(self, reconciler, remote, store):
        reconciler.track("expenses", TRIP_ID)
        expense = make_expense()
        remote.seed("expenses", expense.to_payload())
        remote.fail_next(RemoteUnavailableError("HTTP 502"))

        changed = asyncio.run(reconciler.handle(event(ChangeEventType.INSERT, expense.id)))

        assert changed is False
        assert store.get("expenses", expense.id) is None
        assert AuditEventType.REFETCH_FAILED in audit_types(store, expense.id)

    def test_refetch_timeout(self, store, remote, audit_logger):
        reconciler = RealtimeReconciler(store, remote, audit_logger, refetch_timeout_seconds=0.05)
        reconciler.set_visible_trips([TRIP_ID])
        expense = make_expense()
        remote.seed("expenses", expense.to_payload())
        remote.delay = 0.5

        changed = asyncio.run(reconciler.handle(event(ChangeEventType.INSERT, expense.id)))

        assert changed is False
        assert store.get("expenses", expense.id) is None

    def test_new_trip_becomes_visible(self, reconciler, remote, store):
        trip = make_trip(id="trip-new")
        remote.seed("trips", trip.to_payload())

        asyncio.run(reconciler.handle(event(ChangeEventType.INSERT, "trip-new", table="trips", parent_id=None)))

        assert "trip-new" in reconciler.visible_trips
        assert store.get("trips", "trip-new")["name"] == "Lisbon"

    def test_trip_delete_hides_trip(self, reconciler, store):
        store.upsert("trips", make_trip().to_payload())
        reconciler.track("trips")

        asyncio.run(reconciler.handle(event(ChangeEventType.DELETE, TRIP_ID, table="trips", parent_id=None)))

        assert TRIP_ID not in reconciler.visible_trips
        assert reconciler.collection("trips") == []

    def test_listener_errors_contained(self, reconciler, remote):
        reconciler.set_visible_trips([TRIP_ID])

        def broken(change):
            raise RuntimeError("ui gone")

        reconciler.add_listener(broken)
        expense = make_expense()
        remote.seed("expenses", expense.to_payload())

        assert asyncio.run(reconciler.handle(event(ChangeEventType.INSERT, expense.id)))


class TestRun:
    """Tests for consuming the feed."""

    def test_run_applies_events_and_survives_bad_ones(self, reconciler, remote, store):
        reconciler.set_visible_trips([TRIP_ID])
        good = make_expense()
        remote.seed("expenses", good.to_payload())
        feed = InMemoryChangeFeed([
            event(ChangeEventType.INSERT, "r-1", table="receipts"),
            event(ChangeEventType.INSERT, good.id),
        ])
        feed.close()

        asyncio.run(reconciler.run(feed, "alice"))

        assert feed.subscribed_as == "alice"
        assert store.get("expenses", good.id) is not None

    def test_local_queue_untouched(self, reconciler, remote, queue, store):
        """Test that incoming rows never drop queued local mutations."""
        reconciler.set_visible_trips([TRIP_ID])
        expense = make_expense()
        queue.enqueue("expenses", "insert", expense.to_payload())
        remote.seed("expenses", {**expense.to_payload(), "title": "Remote"})

        asyncio.run(reconciler.handle(event(ChangeEventType.INSERT, expense.id)))

        assert queue.pending_count() == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
