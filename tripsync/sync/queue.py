"""
Mutation Queue and Dispatcher

Every local write is captured as a durable MutationRecord and replayed
against the remote backend in enqueue order once connectivity allows.

DESIGN DECISION: Local intent is captured first, the network comes second.
1. enqueue() is synchronous and never raises; if the durable append fails
   the record is held in memory until the next run
2. process_queue() is single-flight: a call while a run is active is a no-op
3. A record leaves the queue only on confirmed remote success, or when a
   person accepts the remote version
4. Once a record for an entity is held back, later records for the same
   entity wait too, so edits are never applied out of order
"""

import asyncio
from enum import Enum
from typing import Any, Callable, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from tripsync.audit import AuditLogger, create_correlation_id
from tripsync.clock import LogicalClock
from tripsync.config import SyncSettings
from tripsync.models.sync import (
    MANUAL_STATUSES,
    MergeResult,
    MutationOperation,
    MutationRecord,
    MutationStatus,
    QueueRunReport,
)
from tripsync.services.storage.interface import (
    LocalStoreError,
    NotFoundError,
    RemoteBackend,
    RemoteBackendError,
    RemoteRejectedError,
    RemoteUnavailableError,
)
from tripsync.services.storage.local import LocalStore
from tripsync.sync.merge import ConflictResolver


logger = structlog.get_logger(__name__)


ConflictListener = Callable[[MutationRecord], None]
SyncListener = Callable[[QueueRunReport], None]

TRANSIENT_ERRORS = (RemoteUnavailableError, asyncio.TimeoutError, OSError)


class RetryPolicy(BaseModel):
    """
    When a FAILED record may be dispatched again.

    Defaults retry on every run with no limit. Records past max_retries
    stay FAILED and are left for manual handling.
    """

    max_retries: Optional[int] = Field(default=None, ge=1)
    backoff_base_ms: int = Field(default=0, ge=0)
    backoff_max_ms: int = Field(default=300000, ge=0)

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            backoff_base_ms=settings.backoff_base_ms,
            backoff_max_ms=settings.backoff_max_ms,
        )

    def delay_ms(self, retries: int) -> int:
        if self.backoff_base_ms == 0 or retries < 1:
            return 0
        return min(self.backoff_max_ms, self.backoff_base_ms * 2 ** (retries - 1))

    def is_exhausted(self, record: MutationRecord) -> bool:
        return self.max_retries is not None and record.retries >= self.max_retries

    def is_eligible(self, record: MutationRecord, now_ms: int) -> bool:
        if record.status == MutationStatus.PENDING:
            return True
        if record.status != MutationStatus.FAILED or self.is_exhausted(record):
            return False
        if record.last_attempt_at is None:
            return True
        return now_ms >= record.last_attempt_at + self.delay_ms(record.retries)


class _Outcome(str, Enum):
    SYNCED = "synced"
    MERGED = "merged"
    FAILED = "failed"
    REJECTED = "rejected"
    CONFLICT = "conflict"


class MutationQueue:
    """
    Durable outbound queue of local mutations.

    Usage:
        queue.enqueue("expenses", MutationOperation.INSERT, expense.to_payload())
        report = await queue.process_queue()
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteBackend,
        clock: Optional[LogicalClock] = None,
        resolver: Optional[ConflictResolver] = None,
        audit_logger: Optional[AuditLogger] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock_skew_grace_ms: int = 1000,
        dispatch_timeout_seconds: float = 30.0,
    ):
        self._store = store
        self._remote = remote
        self._clock = clock or LogicalClock()
        self._resolver = resolver or ConflictResolver()
        self._audit = audit_logger or AuditLogger()
        self._retry = retry_policy or RetryPolicy()
        self._grace_ms = clock_skew_grace_ms
        self._timeout = dispatch_timeout_seconds

        self._lock = asyncio.Lock()
        self._buffer: list[MutationRecord] = []
        self._conflict_listeners: list[ConflictListener] = []
        self._sync_listeners: list[SyncListener] = []

    @property
    def is_processing(self) -> bool:
        return self._lock.locked()

    @property
    def buffered(self) -> list[MutationRecord]:
        """Records captured while the local store was unwritable."""
        return list(self._buffer)

    # =========================================================================
    # Capture
    # =========================================================================

    def enqueue(
        self,
        table: str,
        operation: MutationOperation,
        payload: dict[str, Any],
        base_payload: Optional[dict[str, Any]] = None,
        read_base: bool = True,
    ) -> Optional[MutationRecord]:
        """
        Capture a local mutation.

        For UPDATE without an explicit base, the current local copy is used
        as the pre-mutation snapshot, so call this before writing locally.
        Pass read_base=False when no trustworthy snapshot exists. An
        unreadable snapshot leaves the base empty; the record is still kept.

        Returns the stored record, the buffered record if the store was
        unavailable, or None if the input could not be captured at all.
        """
        try:
            operation = MutationOperation(operation)
            entity_id = str(payload["id"])
            if operation == MutationOperation.UPDATE and base_payload is None and read_base:
                base_payload = self._read_snapshot(table, entity_id)
            record = MutationRecord(
                table=table,
                operation=operation,
                entity_id=entity_id,
                payload=dict(payload),
                base_payload=dict(base_payload) if base_payload is not None else None,
                enqueued_at=self._clock.now_ms(),
            )
        except Exception as e:
            logger.error("enqueue_invalid", table=table, operation=str(operation), error=str(e))
            return None

        try:
            stored = self._store.append_mutation(record)
        except LocalStoreError as e:
            self._buffer.append(record)
            logger.warning(
                "enqueue_buffered",
                table=table,
                entity_id=record.entity_id,
                error=str(e),
                buffered=len(self._buffer),
            )
            return record

        logger.info(
            "mutation_enqueued",
            table=table,
            operation=operation.value,
            entity_id=stored.entity_id,
            seq=stored.seq,
        )
        return stored

    def _read_snapshot(self, table: str, entity_id: str) -> Optional[dict[str, Any]]:
        try:
            return self._store.get(table, entity_id)
        except LocalStoreError as e:
            logger.warning("snapshot_unavailable", table=table, entity_id=entity_id, error=str(e))
            return None

    def _flush_buffer(self) -> None:
        remaining = []
        for record in self._buffer:
            try:
                self._store.append_mutation(record)
            except LocalStoreError as e:
                remaining.append(record)
                logger.warning("buffer_flush_failed", entity_id=record.entity_id, error=str(e))
        flushed = len(self._buffer) - len(remaining)
        self._buffer = remaining
        if flushed:
            logger.info("buffer_flushed", count=flushed)

    def recover_interrupted(self) -> int:
        """Reset records left SYNCING by a crash mid-dispatch to PENDING."""
        stuck = self._store.list_mutations([MutationStatus.SYNCING])
        for record in stuck:
            self._store.update_mutation(
                record.model_copy(update={"status": MutationStatus.PENDING})
            )
        if stuck:
            logger.warning("mutations_recovered", count=len(stuck))
        return len(stuck)

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def process_queue(self) -> Optional[QueueRunReport]:
        """
        Dispatch every eligible record once, in enqueue order.

        Returns None without doing anything if a run is already active.
        """
        if self._lock.locked():
            logger.debug("queue_run_skipped")
            return None

        async with self._lock:
            report = await self._run()

        self._notify_sync(report)
        return report

    async def wait_idle(self) -> None:
        """Wait until the active run, if any, has finished."""
        async with self._lock:
            pass

    async def _run(self) -> QueueRunReport:
        report = QueueRunReport()
        correlation_id = create_correlation_id()

        self._flush_buffer()
        recovered = self.recover_interrupted()
        if recovered:
            await self._audit.log_recovered(recovered)

        now = self._clock.now_ms()
        held: set[tuple[str, str]] = set()

        for record in self._store.list_mutations():
            key = (record.table, record.entity_id)

            if record.status in MANUAL_STATUSES:
                held.add(key)
                continue
            if key in held:
                report.skipped += 1
                continue
            if not self._retry.is_eligible(record, now):
                report.deferred += 1
                held.add(key)
                continue

            outcome = await self._dispatch(record, correlation_id)
            report.processed += 1
            if outcome == _Outcome.SYNCED:
                report.synced += 1
            elif outcome == _Outcome.MERGED:
                report.merged += 1
            else:
                held.add(key)
                if outcome == _Outcome.FAILED:
                    report.failed += 1
                elif outcome == _Outcome.REJECTED:
                    report.rejected += 1
                else:
                    report.conflicts += 1

        logger.info(
            "queue_run_completed",
            correlation_id=str(correlation_id),
            **report.model_dump(),
        )
        return report

    async def _dispatch(self, record: MutationRecord, correlation_id: UUID) -> _Outcome:
        record = record.model_copy(update={
            "status": MutationStatus.SYNCING,
            "last_attempt_at": self._clock.now_ms(),
        })
        self._store.update_mutation(record)

        try:
            return await asyncio.wait_for(
                self._apply(record, correlation_id),
                timeout=self._timeout,
            )
        except RemoteRejectedError as e:
            rejected = record.model_copy(update={
                "status": MutationStatus.REJECTED,
                "error_message": str(e)[:1000],
            })
            if not self._mark(rejected):
                return _Outcome.SYNCED
            await self._audit.log_rejected(rejected, correlation_id)
            self._notify_conflict(rejected)
            return _Outcome.REJECTED
        except TRANSIENT_ERRORS as e:
            failed = record.model_copy(update={
                "status": MutationStatus.FAILED,
                "retries": record.retries + 1,
                "error_message": (str(e) or type(e).__name__)[:1000],
            })
            if not self._mark(failed):
                return _Outcome.SYNCED
            await self._audit.log_failed(failed, correlation_id)
            return _Outcome.FAILED
        except Exception as e:
            self._mark(record.model_copy(update={
                "status": MutationStatus.FAILED,
                "retries": record.retries + 1,
                "error_message": (str(e) or type(e).__name__)[:1000],
            }))
            logger.exception("dispatch_crashed", seq=record.seq, entity_id=record.entity_id)
            await self._audit.log_error(
                type(e).__name__,
                str(e),
                details={"seq": record.seq, "table": record.table, "entity_id": record.entity_id},
                correlation_id=correlation_id,
            )
            raise

    def _mark(self, record: MutationRecord) -> bool:
        """Persist a status change. False if the record already left the queue."""
        try:
            self._store.update_mutation(record)
        except NotFoundError:
            # Completed remotely before the timeout cancelled the dispatch
            logger.warning("mutation_already_completed", seq=record.seq, entity_id=record.entity_id)
            return False
        return True

    async def _apply(self, record: MutationRecord, correlation_id: UUID) -> _Outcome:
        if record.operation == MutationOperation.INSERT:
            stored = await self._remote.upsert(record.table, record.payload)
            return await self._complete(record, stored, correlation_id)

        if record.operation == MutationOperation.DELETE:
            await self._remote.delete(record.table, record.entity_id)
            return await self._complete(record, None, correlation_id)

        remote_row = await self._remote.fetch(record.table, record.entity_id)
        if remote_row is None:
            # Deleted or never created remotely: recreate it
            stored = await self._remote.upsert(record.table, record.payload)
            return await self._complete(record, stored, correlation_id)

        remote_ts = int(remote_row.get("updated_at") or 0)
        self._clock.observe(remote_ts)

        if record.base_payload is None:
            if remote_ts <= int(record.payload.get("updated_at") or 0) + self._grace_ms:
                stored = await self._remote.upsert(record.table, record.payload)
                return await self._complete(record, stored, correlation_id)
            return await self._conflict(record, None, correlation_id)

        if remote_ts <= int(record.base_payload.get("updated_at") or 0) + self._grace_ms:
            stored = await self._remote.upsert(record.table, record.payload)
            return await self._complete(record, stored, correlation_id)

        result = self._resolver.merge(
            record.table,
            base=record.base_payload,
            local=record.payload,
            remote=remote_row,
        )
        if result.has_conflict:
            return await self._conflict(record, result, correlation_id)

        stored = await self._remote.upsert(record.table, result.merged)
        await self._audit.log_merged(record, result, correlation_id)
        await self._complete(record, stored, correlation_id, log=False)
        return _Outcome.MERGED

    async def _complete(
        self,
        record: MutationRecord,
        stored: Optional[dict[str, Any]],
        correlation_id: UUID,
        log: bool = True,
    ) -> _Outcome:
        self._store.delete_mutation(record.seq)
        if stored is not None and not self._store.has_later_mutation(
            record.table, record.entity_id, record.seq
        ):
            self._store.upsert(record.table, stored)
        if log:
            await self._audit.log_synced(record, correlation_id)
        return _Outcome.SYNCED

    async def _conflict(
        self,
        record: MutationRecord,
        result: Optional[MergeResult],
        correlation_id: UUID,
    ) -> _Outcome:
        if result is None:
            message = "Remote changed and no base snapshot is available"
        elif result.overlapping_fields:
            message = "Conflicting fields: " + ", ".join(result.overlapping_fields)
        else:
            message = f"Merged record is invalid: {result.invariant_error}"

        conflicted = record.model_copy(update={
            "status": MutationStatus.CONFLICT,
            "error_message": message[:1000],
        })
        self._store.update_mutation(conflicted)
        await self._audit.log_conflict(conflicted, result, correlation_id)
        self._notify_conflict(conflicted)
        return _Outcome.CONFLICT

    # =========================================================================
    # Manual resolution
    # =========================================================================

    def conflicts(self) -> list[MutationRecord]:
        """Records waiting for a keep-mine / accept-remote decision."""
        return self._store.list_mutations(MANUAL_STATUSES)

    def pending_count(self) -> int:
        return self._store.count_mutations() + len(self._buffer)

    def _get_manual(self, seq: int) -> MutationRecord:
        record = self._store.get_mutation(seq)
        if record is None:
            raise NotFoundError(f"Mutation not found: {seq}")
        if not record.needs_manual_resolution:
            raise ValueError(f"Mutation {seq} is {record.status.value}, not awaiting resolution")
        return record

    async def keep_mine(self, seq: int) -> MutationRecord:
        """
        Resubmit the local version of a conflicting entity.

        Both the payload and the base snapshot are re-stamped to now, so the
        next dispatch writes the local version over the remote one.
        """
        record = self._get_manual(seq)
        now = self._clock.now_ms()
        payload = {**record.payload, "updated_at": now}
        base = (
            {**record.base_payload, "updated_at": now}
            if record.base_payload is not None
            else None
        )
        resubmitted = record.model_copy(update={
            "payload": payload,
            "base_payload": base,
            "status": MutationStatus.PENDING,
            "retries": 0,
            "error_message": None,
        })
        self._store.update_mutation(resubmitted)
        if record.operation != MutationOperation.DELETE:
            self._store.upsert(record.table, payload)

        await self._audit.log_resolution(resubmitted, kept_local=True)
        logger.info("conflict_kept_local", seq=seq, entity_id=record.entity_id)
        return resubmitted

    async def accept_remote(self, seq: int) -> None:
        """
        Discard the queued mutation and adopt the remote version.

        The local copy is refreshed from the remote when it is reachable;
        otherwise the realtime reconciler catches up later.
        """
        record = self._get_manual(seq)
        self._store.delete_mutation(seq)
        await self._audit.log_resolution(record, kept_local=False)
        logger.info("conflict_accepted_remote", seq=seq, entity_id=record.entity_id)

        if self._store.has_later_mutation(record.table, record.entity_id, seq):
            return
        try:
            remote_row = await asyncio.wait_for(
                self._remote.fetch(record.table, record.entity_id),
                timeout=self._timeout,
            )
        except (RemoteBackendError, asyncio.TimeoutError, OSError) as e:
            logger.warning("accept_remote_refresh_failed", seq=seq, error=str(e))
            return
        if remote_row is None:
            self._store.delete(record.table, record.entity_id)
        else:
            self._store.upsert(record.table, remote_row)

    # =========================================================================
    # Listeners
    # =========================================================================

    def add_conflict_listener(self, listener: ConflictListener) -> None:
        self._conflict_listeners.append(listener)

    def add_sync_listener(self, listener: SyncListener) -> None:
        self._sync_listeners.append(listener)

    def _notify_conflict(self, record: MutationRecord) -> None:
        for listener in self._conflict_listeners:
            try:
                listener(record)
            except Exception:
                logger.exception("conflict_listener_failed", seq=record.seq)

    def _notify_sync(self, report: QueueRunReport) -> None:
        for listener in self._sync_listeners:
            try:
                listener(report)
            except Exception:
                logger.exception("sync_listener_failed")
