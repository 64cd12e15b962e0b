"""
Main Orchestrator for TripSync

This module ties together all the components and defines the flows
callers use:
1. Local writes (entity -> local store -> mutation queue -> background sync)
2. Ledger reads (local store -> budget / settlement, never the network)
3. Conflict resolution (keep mine / accept remote)

DESIGN DECISION: The orchestrator enforces the boundaries:
- Every write lands in the local store before any network attempt
- Splits are validated by the allocator before they are stored
- Ledger values are derived from local records and never written back

This is the "glue" that keeps the sync engine and the ledger consistent
even when the network or the local cache misbehave.
"""

import asyncio
from datetime import date, datetime, timezone
from typing import Callable, Mapping, Optional

import structlog

from tripsync.audit import AuditLogger
from tripsync.clock import LogicalClock
from tripsync.config import LedgerSettings, get_settings
from tripsync.ledger.allocation import AllocationError, custom_split
from tripsync.ledger.budget import compute_piggy_bank
from tripsync.ledger.settlement import compute_balances
from tripsync.models.entities import (
    EXPENSES,
    TRIP_MEMBERS,
    TRIPS,
    EntitySchema,
    ExpenseRecord,
    SyncedEntity,
    Trip,
    TripMember,
)
from tripsync.models.ledger import BalanceSummary, BudgetSnapshot
from tripsync.models.money import MoneyValue
from tripsync.models.sync import MutationOperation, MutationRecord, QueueRunReport
from tripsync.services.storage import (
    ChangeFeed,
    GoogleSheetsRemoteBackend,
    LocalAuditStorage,
    LocalStore,
    LocalStoreError,
    NotFoundError,
    RemoteBackend,
)
from tripsync.sync.queue import MutationQueue, RetryPolicy
from tripsync.sync.reconciler import RealtimeReconciler
from tripsync.sync.triggers import SyncTriggers


logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TripSyncService:
    """
    Facade over the local store, sync engine and ledger.

    Write methods are synchronous: they return as soon as the change is
    stored locally and queued. Dispatch happens in the background.
    """

    def __init__(
        self,
        store: LocalStore,
        queue: MutationQueue,
        reconciler: Optional[RealtimeReconciler] = None,
        triggers: Optional[SyncTriggers] = None,
        clock: Optional[LogicalClock] = None,
        audit_logger: Optional[AuditLogger] = None,
        ledger_settings: Optional[LedgerSettings] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._queue = queue
        self._reconciler = reconciler
        self._triggers = triggers
        self._clock = clock or LogicalClock()
        self._audit = audit_logger or AuditLogger()
        self._ledger_settings = ledger_settings or LedgerSettings()
        self._now = now
        self._feed_task: Optional[asyncio.Task] = None

    @property
    def store(self) -> LocalStore:
        return self._store

    @property
    def queue(self) -> MutationQueue:
        return self._queue

    @property
    def reconciler(self) -> Optional[RealtimeReconciler]:
        return self._reconciler

    @property
    def triggers(self) -> Optional[SyncTriggers]:
        return self._triggers

    # =========================================================================
    # Local writes
    # =========================================================================

    def _save(self, schema: EntitySchema, entity: SyncedEntity) -> SyncedEntity:
        stamped = entity.model_copy(update={"updated_at": self._clock.now_ms()})
        payload = stamped.to_payload()
        try:
            existing = self._store.get(schema.table, entity.id)
            known = True
        except LocalStoreError as e:
            # Unknown local state: an UPDATE without base recreates a missing
            # remote row and conflicts with a newer one
            logger.warning("local_read_failed", table=schema.table, entity_id=entity.id, error=str(e))
            existing, known = None, False
        operation = (
            MutationOperation.UPDATE if existing or not known else MutationOperation.INSERT
        )

        # Optimistic local write first; the queue still captures the intent
        # if the store is unwritable
        try:
            self._store.upsert(schema.table, payload)
        except LocalStoreError as e:
            logger.warning("optimistic_write_failed", table=schema.table, entity_id=entity.id, error=str(e))

        self._queue.enqueue(
            schema.table, operation, payload, base_payload=existing, read_base=known
        )
        if self._triggers:
            self._triggers.kick()

        logger.info("entity_saved", table=schema.table, entity_id=entity.id, operation=operation.value)
        return stamped

    def save_trip(self, trip: Trip) -> Trip:
        return self._save(TRIPS, trip)

    def save_member(self, member: TripMember) -> TripMember:
        """
        Save a membership.

        Switching the daily budget on (again) stamps a new activation time,
        which starts a fresh budget cycle.
        """
        try:
            existing = self._store.get(TRIP_MEMBERS.table, member.id)
        except LocalStoreError as e:
            logger.warning("local_read_failed", table=TRIP_MEMBERS.table, entity_id=member.id, error=str(e))
            # Previous state unknown: only stamp when no activation is set
            existing = {"budget_enabled": member.budget_activated_at is not None}
        was_enabled = bool(existing and existing.get("budget_enabled"))
        if member.budget_enabled and not was_enabled:
            member = member.model_copy(update={"budget_activated_at": self._now()})
        return self._save(TRIP_MEMBERS, member)

    def save_expense(
        self,
        expense: ExpenseRecord,
        custom_amounts: Optional[Mapping[str, MoneyValue]] = None,
    ) -> ExpenseRecord:
        """
        Validate and save an expense.

        Args:
            expense: The expense record
            custom_amounts: User-entered per-party amounts. Off-by-one-cent
                totals are absorbed by the first party; anything wider is
                rejected with SplitMismatchError.
        """
        if custom_amounts:
            details = custom_split(
                expense.cost,
                custom_amounts,
                tolerance_minor_units=self._ledger_settings.split_tolerance_minor_units,
            )
            expense = ExpenseRecord.model_validate({
                **expense.model_dump(),
                "split_details": details,
            })

        if not expense.is_private and not expense.involved_parties:
            raise AllocationError("A shared expense needs at least one party to split with")

        return self._save(EXPENSES, expense)

    def delete_expense(self, expense_id: str) -> bool:
        """
        Delete locally and queue the remote delete. False if unknown.

        When the local store cannot be read the delete is queued anyway;
        a remote delete of a missing row is a no-op.
        """
        try:
            existing = self._store.get(EXPENSES.table, expense_id)
        except LocalStoreError as e:
            logger.warning("local_read_failed", table=EXPENSES.table, entity_id=expense_id, error=str(e))
            existing = {"id": expense_id}
        if existing is None:
            return False
        try:
            self._store.delete(EXPENSES.table, expense_id)
        except LocalStoreError as e:
            logger.warning("optimistic_delete_failed", entity_id=expense_id, error=str(e))
        self._queue.enqueue(EXPENSES.table, MutationOperation.DELETE, existing)
        if self._triggers:
            self._triggers.kick()
        logger.info("entity_deleted", table=EXPENSES.table, entity_id=expense_id)
        return True

    # =========================================================================
    # Reads
    # =========================================================================

    def get_trip(self, trip_id: str) -> Trip:
        record = self._store.get(TRIPS.table, trip_id)
        if record is None:
            raise NotFoundError(f"Trip not found: {trip_id}")
        return Trip.model_validate(record)

    def list_members(self, trip_id: str) -> list[TripMember]:
        return [
            TripMember.model_validate(record)
            for record in self._store.get_by_parent(TRIP_MEMBERS.table, trip_id)
        ]

    def list_expenses(self, trip_id: str, party_id: Optional[str] = None) -> list[ExpenseRecord]:
        """
        Expenses of a trip, oldest first.

        When party_id is given, other parties' private expenses are hidden.
        """
        expenses = [
            ExpenseRecord.model_validate(record)
            for record in self._store.get_by_parent(EXPENSES.table, trip_id)
        ]
        if party_id is not None:
            expenses = [e for e in expenses if not e.is_private or e.paid_by == party_id]
        expenses.sort(key=lambda e: (e.occurred_at, e.id))
        return expenses

    async def budget_snapshot(
        self,
        trip_id: str,
        party_id: str,
        today: Optional[date] = None,
    ) -> Optional[BudgetSnapshot]:
        """
        Rolling daily budget for a party, or None if their budget is off.

        Results are cached against the trip, the member and the expense data
        version. If the cache itself fails, the snapshot is computed directly.
        """
        trip = self.get_trip(trip_id)
        member = next((m for m in self.list_members(trip_id) if m.party_id == party_id), None)
        if member is None or not member.budget_enabled or member.daily_budget is None:
            return None
        today = today or self._now().date()

        def compute() -> BudgetSnapshot:
            return compute_piggy_bank(
                trip_start=trip.start_date,
                today=today,
                daily_budget=member.daily_budget,
                party_id=party_id,
                expenses=self.list_expenses(trip_id),
                activated_at=member.budget_activated_at,
            )

        try:
            key = ":".join([
                "budget",
                trip_id,
                party_id,
                today.isoformat(),
                str(trip.updated_at),
                trip.start_date.isoformat(),
                str(member.updated_at),
                self._store.data_version(EXPENSES.table, trip_id),
            ])
            cached = self._store.get_cached(key)
        except LocalStoreError as e:
            logger.warning("budget_cache_unavailable", trip_id=trip_id, error=str(e))
            await self._audit.log_cache_error(f"budget:{trip_id}:{party_id}", str(e))
            return compute()

        if cached is not None:
            return BudgetSnapshot.model_validate(cached)

        snapshot = compute()
        try:
            self._store.put_cached(key, snapshot.model_dump(mode="json"))
        except LocalStoreError as e:
            logger.warning("budget_cache_write_failed", key=key, error=str(e))
        return snapshot

    def balances(self, trip_id: str, party_id: str) -> BalanceSummary:
        trip = self.get_trip(trip_id)
        return compute_balances(
            expenses=self.list_expenses(trip_id),
            member_ids=[m.party_id for m in self.list_members(trip_id)],
            party_id=party_id,
            currency=trip.base_currency,
        )

    # =========================================================================
    # Sync control
    # =========================================================================

    async def sync_now(self) -> Optional[QueueRunReport]:
        return await self._queue.process_queue()

    def conflicts(self) -> list[MutationRecord]:
        return self._queue.conflicts()

    async def resolve_keep_mine(self, seq: int) -> MutationRecord:
        record = await self._queue.keep_mine(seq)
        if self._triggers:
            self._triggers.kick()
        return record

    async def resolve_accept_remote(self, seq: int) -> None:
        await self._queue.accept_remote(seq)

    async def wait_idle(self) -> None:
        """Wait until scheduled drains and any active queue run are done."""
        if self._triggers:
            await self._triggers.wait_idle()
        await self._queue.wait_idle()

    def start(self, feed: Optional[ChangeFeed] = None, party_id: Optional[str] = None) -> None:
        """Start background sync on the running event loop."""
        if self._triggers:
            self._triggers.start()
        if feed is not None and party_id is not None and self._reconciler is not None:
            self._feed_task = asyncio.get_running_loop().create_task(
                self._reconciler.run(feed, party_id)
            )

    async def stop(self) -> None:
        if self._triggers:
            await self._triggers.stop()
        if self._feed_task is not None:
            self._feed_task.cancel()
            await asyncio.gather(self._feed_task, return_exceptions=True)
            self._feed_task = None


def create_app_components(
    remote: Optional[RemoteBackend] = None,
    store_path: Optional[str] = None,
) -> TripSyncService:
    """
    Factory function to create all application components.

    Args:
        remote: Remote backend to sync against. Defaults to Google Sheets
                configured from GOOGLE_SHEETS_* settings.
        store_path: SQLite path. Defaults to LOCAL_STORE_PATH.

    Returns:
        A fully wired TripSyncService
    """
    settings = get_settings()
    sync_settings = settings.sync

    store = LocalStore(store_path or settings.local_store.path)
    audit_logger = AuditLogger(LocalAuditStorage(store))
    clock = LogicalClock()
    remote = remote or GoogleSheetsRemoteBackend()

    queue = MutationQueue(
        store=store,
        remote=remote,
        clock=clock,
        audit_logger=audit_logger,
        retry_policy=RetryPolicy.from_settings(sync_settings),
        clock_skew_grace_ms=sync_settings.clock_skew_grace_ms,
        dispatch_timeout_seconds=sync_settings.dispatch_timeout_seconds,
    )
    reconciler = RealtimeReconciler(
        store=store,
        remote=remote,
        audit_logger=audit_logger,
        refetch_timeout_seconds=sync_settings.refetch_timeout_seconds,
    )
    triggers = SyncTriggers(queue, interval_seconds=sync_settings.periodic_interval_seconds)

    return TripSyncService(
        store=store,
        queue=queue,
        reconciler=reconciler,
        triggers=triggers,
        clock=clock,
        audit_logger=audit_logger,
        ledger_settings=settings.ledger,
    )
