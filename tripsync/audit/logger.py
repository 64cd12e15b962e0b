"""
Audit Logger

DESIGN DECISION: The sync engine narrates itself.
Each dispatch outcome, conflict decision and inbound remote change becomes
an AuditEvent that is written to the structlog stream and appended to the
local audit table.

Writing the audit trail must never stall sync: a failing audit store is
reported on the log and otherwise ignored. A correlation id groups the
events of one queue run.
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from tripsync.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from tripsync.models.sync import MergeResult, MutationRecord
from tripsync.services.storage.interface import AuditStorageInterface


# JSON log lines through the stdlib logging tree
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


_LEVELS = {
    AuditSeverity.DEBUG: "debug",
    AuditSeverity.INFO: "info",
    AuditSeverity.WARNING: "warning",
    AuditSeverity.ERROR: "error",
    AuditSeverity.CRITICAL: "critical",
}


class AuditLogger:
    """
    Records sync audit events.

    Without a storage backend events only go to the structured log.
    """

    def __init__(self, storage: Optional[AuditStorageInterface] = None):
        self._storage = storage
        self._logger = structlog.get_logger("tripsync.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Emit one event at its severity's level and append it to storage.

        Returns False only when the storage append failed.
        """
        emit = getattr(self._logger, _LEVELS[event.severity])
        emit("audit_event", **event.to_log_dict())

        if self._storage is None:
            return True
        try:
            return await self._storage.append_event(event)
        except Exception as e:
            self._logger.error(
                "audit_append_failed",
                event_type=event.event_type.value,
                event_id=str(event.event_id),
                error=str(e),
            )
            return False

    async def log_synced(
        self,
        record: MutationRecord,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a mutation confirmed by the remote backend."""
        await self.log(AuditEventBuilder.mutation_synced(
            table=record.table,
            entity_id=record.entity_id,
            seq=record.seq,
            operation=record.operation.value,
            correlation_id=correlation_id,
        ))

    async def log_merged(
        self,
        record: MutationRecord,
        result: MergeResult,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a clean three-way merge."""
        await self.log(AuditEventBuilder.mutation_merged(
            table=record.table,
            entity_id=record.entity_id,
            seq=record.seq,
            local_fields=result.local_changes,
            remote_fields=result.remote_changes,
            correlation_id=correlation_id,
        ))

    async def log_failed(
        self,
        record: MutationRecord,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.mutation_failed(
            table=record.table,
            entity_id=record.entity_id,
            seq=record.seq,
            retries=record.retries,
            error_message=record.error_message or "",
            correlation_id=correlation_id,
        ))

    async def log_rejected(
        self,
        record: MutationRecord,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.mutation_rejected(
            table=record.table,
            entity_id=record.entity_id,
            seq=record.seq,
            error_message=record.error_message or "",
            correlation_id=correlation_id,
        ))

    async def log_conflict(
        self,
        record: MutationRecord,
        result: Optional[MergeResult] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a mutation that needs a manual decision."""
        await self.log(AuditEventBuilder.mutation_conflict(
            table=record.table,
            entity_id=record.entity_id,
            seq=record.seq,
            overlapping_fields=result.overlapping_fields if result else [],
            invariant_error=result.invariant_error if result else None,
            correlation_id=correlation_id,
        ))

    async def log_recovered(self, count: int) -> None:
        await self.log(AuditEventBuilder.mutations_recovered(count))

    async def log_resolution(self, record: MutationRecord, kept_local: bool) -> None:
        """Log the user's keep-mine / accept-remote decision."""
        await self.log(AuditEventBuilder.conflict_resolved(
            table=record.table,
            entity_id=record.entity_id,
            seq=record.seq,
            kept_local=kept_local,
        ))

    async def log_remote_applied(self, table: str, entity_id: str, event_type: str) -> None:
        await self.log(AuditEventBuilder.remote_change_applied(table, entity_id, event_type))

    async def log_remote_deleted(self, table: str, entity_id: str) -> None:
        await self.log(AuditEventBuilder.remote_change_deleted(table, entity_id))

    async def log_refetch_failed(self, table: str, entity_id: str, error_message: str) -> None:
        await self.log(AuditEventBuilder.refetch_failed(table, entity_id, error_message))

    async def log_cache_error(self, key: str, error_message: str) -> None:
        await self.log(AuditEventBuilder.cache_error(key, error_message))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """One id per queue run, shared by every event that run logs."""
    return uuid4()
