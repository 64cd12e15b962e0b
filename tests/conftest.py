"""Shared fixtures: an in-memory local store, fake remote and wired queue."""

from datetime import datetime, timezone

import pytest

from tests.fakes import FakeTime, InMemoryRemoteBackend
from tripsync.audit import AuditLogger
from tripsync.clock import LogicalClock
from tripsync.orchestrator import TripSyncService
from tripsync.services.storage.local import LocalAuditStorage, LocalStore
from tripsync.sync.queue import MutationQueue, RetryPolicy
from tripsync.sync.reconciler import RealtimeReconciler


@pytest.fixture
def fake_time() -> FakeTime:
    return FakeTime()


@pytest.fixture
def clock(fake_time) -> LogicalClock:
    return LogicalClock(fake_time)


@pytest.fixture
def store():
    local = LocalStore(":memory:")
    yield local
    local.close()


@pytest.fixture
def remote(fake_time) -> InMemoryRemoteBackend:
    return InMemoryRemoteBackend(fake_time)


@pytest.fixture
def audit_logger(store) -> AuditLogger:
    return AuditLogger(LocalAuditStorage(store))


@pytest.fixture
def queue(store, remote, clock, audit_logger) -> MutationQueue:
    return MutationQueue(
        store=store,
        remote=remote,
        clock=clock,
        audit_logger=audit_logger,
        retry_policy=RetryPolicy(),
        clock_skew_grace_ms=1000,
        dispatch_timeout_seconds=1.0,
    )


@pytest.fixture
def reconciler(store, remote, audit_logger) -> RealtimeReconciler:
    return RealtimeReconciler(store, remote, audit_logger=audit_logger, refetch_timeout_seconds=1.0)


@pytest.fixture
def service(store, queue, reconciler, clock, audit_logger) -> TripSyncService:
    return TripSyncService(
        store=store,
        queue=queue,
        reconciler=reconciler,
        clock=clock,
        audit_logger=audit_logger,
        now=lambda: datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc),
    )
