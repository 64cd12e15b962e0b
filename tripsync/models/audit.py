"""
Audit Models for TripSync

Every significant sync step is recorded for audit purposes.
This provides:
1. Traceability of what reached the remote backend and when
2. Debugging information when a mutation fails or conflicts
3. History of how conflicts were resolved

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every outcome of the dispatcher and the reconciler has its own type.
    """
    # Dispatch outcomes
    MUTATION_SYNCED = "mutation_synced"
    MUTATION_MERGED = "mutation_merged"
    MUTATION_FAILED = "mutation_failed"
    MUTATION_REJECTED = "mutation_rejected"
    MUTATION_CONFLICT = "mutation_conflict"
    MUTATIONS_RECOVERED = "mutations_recovered"

    # Manual resolution
    CONFLICT_KEPT_LOCAL = "conflict_kept_local"
    CONFLICT_ACCEPTED_REMOTE = "conflict_accepted_remote"

    # Realtime reconciliation
    REMOTE_CHANGE_APPLIED = "remote_change_applied"
    REMOTE_CHANGE_DELETED = "remote_change_deleted"
    REFETCH_FAILED = "refetch_failed"

    # System events
    CACHE_ERROR = "cache_error"
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    One entry in the sync audit trail.

    Dispatch outcomes, conflict decisions and inbound remote changes each
    produce one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=_utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Which row the event concerns
    entity_type: Optional[str] = Field(
        default=None,
        description="Table of the entity (e.g., 'expenses', 'trips')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )
    mutation_seq: Optional[int] = Field(
        default=None,
        description="Queue sequence number, for dispatch events"
    )

    # Ties together every event of one queue run
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events in one queue run)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Short human-readable summary"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="True for keep-mine / accept-remote decisions"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "mutation_seq": self.mutation_seq,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_row(self) -> dict[str, Any]:
        """
        Flatten into a storage row.

        Columns: event_id, timestamp, event_type, severity, entity_type,
        entity_id, correlation_id, event_json.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type or "",
            "entity_id": self.entity_id or "",
            "correlation_id": str(self.correlation_id) if self.correlation_id else "",
            "event_json": json.dumps(self.model_dump(mode="json")),
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.mutation_synced(record, correlation_id)
        event = AuditEventBuilder.refetch_failed("expenses", expense_id, str(e))
    """

    @staticmethod
    def mutation_synced(
        table: str,
        entity_id: str,
        seq: Optional[int],
        operation: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_SYNCED,
            entity_type=table,
            entity_id=entity_id,
            mutation_seq=seq,
            correlation_id=correlation_id,
            description=f"{operation.capitalize()} reached remote backend",
            details={"operation": operation},
        )

    @staticmethod
    def mutation_merged(
        table: str,
        entity_id: str,
        seq: Optional[int],
        local_fields: list[str],
        remote_fields: list[str],
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_MERGED,
            entity_type=table,
            entity_id=entity_id,
            mutation_seq=seq,
            correlation_id=correlation_id,
            description="Concurrent edits merged without overlap",
            details={
                "local_fields": local_fields,
                "remote_fields": remote_fields,
            },
        )

    @staticmethod
    def mutation_failed(
        table: str,
        entity_id: str,
        seq: Optional[int],
        retries: int,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type=table,
            entity_id=entity_id,
            mutation_seq=seq,
            correlation_id=correlation_id,
            description=f"Dispatch failed (attempt {retries}), will retry",
            error_message=error_message,
            details={"retries": retries},
        )

    @staticmethod
    def mutation_rejected(
        table: str,
        entity_id: str,
        seq: Optional[int],
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_REJECTED,
            severity=AuditSeverity.ERROR,
            entity_type=table,
            entity_id=entity_id,
            mutation_seq=seq,
            correlation_id=correlation_id,
            description="Remote backend rejected the mutation",
            error_message=error_message,
        )

    @staticmethod
    def mutation_conflict(
        table: str,
        entity_id: str,
        seq: Optional[int],
        overlapping_fields: list[str],
        invariant_error: Optional[str] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        if overlapping_fields:
            description = f"Conflicting edits on {len(overlapping_fields)} field(s)"
        elif invariant_error:
            description = "Merged record would break an invariant"
        else:
            description = "Remote changed with no base snapshot to merge from"
        return AuditEvent(
            event_type=AuditEventType.MUTATION_CONFLICT,
            severity=AuditSeverity.WARNING,
            entity_type=table,
            entity_id=entity_id,
            mutation_seq=seq,
            correlation_id=correlation_id,
            description=description,
            error_message=invariant_error,
            details={"overlapping_fields": overlapping_fields},
        )

    @staticmethod
    def mutations_recovered(count: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATIONS_RECOVERED,
            severity=AuditSeverity.WARNING,
            description=f"Reset {count} interrupted mutation(s) to pending",
            details={"count": count},
        )

    @staticmethod
    def conflict_resolved(
        table: str,
        entity_id: str,
        seq: int,
        kept_local: bool
    ) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.CONFLICT_KEPT_LOCAL
                if kept_local
                else AuditEventType.CONFLICT_ACCEPTED_REMOTE
            ),
            entity_type=table,
            entity_id=entity_id,
            mutation_seq=seq,
            description=(
                "User kept the local version"
                if kept_local
                else "User accepted the remote version"
            ),
            is_user_action=True,
        )

    @staticmethod
    def remote_change_applied(
        table: str,
        entity_id: str,
        event_type: str
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REMOTE_CHANGE_APPLIED,
            severity=AuditSeverity.DEBUG,
            entity_type=table,
            entity_id=entity_id,
            description=f"Remote {event_type} applied locally",
            details={"change": event_type},
        )

    @staticmethod
    def remote_change_deleted(table: str, entity_id: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REMOTE_CHANGE_DELETED,
            severity=AuditSeverity.DEBUG,
            entity_type=table,
            entity_id=entity_id,
            description="Remote delete applied locally",
        )

    @staticmethod
    def refetch_failed(
        table: str,
        entity_id: str,
        error_message: str
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REFETCH_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type=table,
            entity_id=entity_id,
            description="Could not re-fetch entity announced by change feed",
            error_message=error_message,
        )

    @staticmethod
    def cache_error(key: str, error_message: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CACHE_ERROR,
            severity=AuditSeverity.WARNING,
            description="Local cache unavailable, computed directly",
            error_message=error_message,
            details={"key": key},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
