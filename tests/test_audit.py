"""Tests for the audit logger and the logical clock."""

import asyncio

import pytest

from tests.factories import make_expense
from tripsync.audit import AuditLogger, create_correlation_id
from tripsync.clock import LogicalClock
from tripsync.models.audit import AuditEvent, AuditEventBuilder, AuditEventType
from tripsync.models.sync import MergeResult, MutationRecord, MutationStatus
from tripsync.services.storage.interface import AuditStorageInterface
from tripsync.services.storage.local import LocalAuditStorage


class BrokenAuditStorage(AuditStorageInterface):
    async def append_event(self, event: AuditEvent) -> bool:
        raise OSError("disk full")

    async def get_events_by_entity(self, entity_type, entity_id):
        return []

    async def get_recent_events(self, limit=100):
        return []


def conflicted_record() -> MutationRecord:
    expense = make_expense()
    return MutationRecord(
        seq=7,
        table="expenses",
        operation="update",
        entity_id=expense.id,
        payload=expense.to_payload(),
        enqueued_at=1,
        status=MutationStatus.CONFLICT,
    )


class TestAuditLogger:
    """Tests for logging and persisting audit events."""

    def test_log_without_storage(self):
        logger = AuditLogger()
        assert asyncio.run(logger.log(AuditEventBuilder.mutations_recovered(1)))

    def test_log_persists(self, store):
        storage = LocalAuditStorage(store)
        logger = AuditLogger(storage)
        record = conflicted_record()

        asyncio.run(logger.log_conflict(record, MergeResult(overlapping_fields=["title"])))

        [event] = asyncio.run(storage.get_events_by_entity("expenses", record.entity_id))
        assert event.event_type == AuditEventType.MUTATION_CONFLICT
        assert event.mutation_seq == 7
        assert event.details["overlapping_fields"] == ["title"]

    def test_storage_failure_does_not_raise(self):
        """Test that a failing audit store never breaks the caller."""
        logger = AuditLogger(BrokenAuditStorage())
        assert asyncio.run(logger.log(AuditEventBuilder.mutations_recovered(1))) is False

    def test_correlation_id_carried(self, store):
        storage = LocalAuditStorage(store)
        logger = AuditLogger(storage)
        record = conflicted_record()
        correlation_id = create_correlation_id()

        asyncio.run(logger.log_synced(record, correlation_id))

        [event] = asyncio.run(storage.get_events_by_entity("expenses", record.entity_id))
        assert event.correlation_id == correlation_id
        assert event.description == "Update reached remote backend"

    def test_resolution_logged_as_user_action(self, store):
        storage = LocalAuditStorage(store)
        record = conflicted_record()

        asyncio.run(AuditLogger(storage).log_resolution(record, kept_local=False))

        [event] = asyncio.run(storage.get_events_by_entity("expenses", record.entity_id))
        assert event.event_type == AuditEventType.CONFLICT_ACCEPTED_REMOTE
        assert event.is_user_action

    def test_error_event(self, store):
        storage = LocalAuditStorage(store)
        asyncio.run(AuditLogger(storage).log_error("ValueError", "bad input", {"field": "cost"}))

        [event] = asyncio.run(storage.get_recent_events())
        assert event.event_type == AuditEventType.SYSTEM_ERROR
        assert event.details == {"field": "cost"}


class TestLogicalClock:
    """Tests for monotonic timestamps."""

    def test_strictly_increasing_when_time_stalls(self):
        clock = LogicalClock(lambda: 1000)
        assert [clock.now_ms() for _ in range(3)] == [1000, 1001, 1002]

    def test_never_goes_backwards(self):
        readings = iter([5000, 4000])
        clock = LogicalClock(lambda: next(readings))
        first = clock.now_ms()
        assert clock.now_ms() > first

    def test_observe_moves_forward_only(self):
        clock = LogicalClock(lambda: 1000)
        clock.observe(9000)
        assert clock.now_ms() == 9001
        clock.observe(10)
        assert clock.now_ms() == 9002

    def test_wall_clock_default(self):
        assert LogicalClock().now_ms() > 1_700_000_000_000


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
