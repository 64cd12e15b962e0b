"""
Synchronization Models

Queue records, change-feed events and merge outcomes.

DESIGN DECISION: A MutationRecord is never silently discarded. It leaves the
queue only when the remote backend confirms the write, or when a person
explicitly accepts the remote version of a conflicting entity.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class MutationOperation(str, Enum):
    """Kind of local write captured in the queue."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class MutationStatus(str, Enum):
    """
    Lifecycle of a queued mutation.

    PENDING -> SYNCING -> (deleted on success)
                       -> FAILED    (transient error, re-dispatched)
                       -> REJECTED  (remote refused it, needs a person)
                       -> CONFLICT  (overlapping edits, needs a person)
    """
    PENDING = "pending"
    SYNCING = "syncing"
    FAILED = "failed"
    CONFLICT = "conflict"
    REJECTED = "rejected"


# Statuses that wait for a manual keep-mine / accept-remote decision
MANUAL_STATUSES = frozenset({MutationStatus.CONFLICT, MutationStatus.REJECTED})


class MutationRecord(BaseModel):
    """
    One durable entry in the mutation queue.

    `base_payload` is the entity as it looked before the local edit. It is
    the common ancestor for three-way merge.
    """

    seq: Optional[int] = Field(
        default=None,
        description="Insertion order, assigned by the local store"
    )
    table: str = Field(..., min_length=1)
    operation: MutationOperation
    entity_id: str = Field(..., min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    base_payload: Optional[dict[str, Any]] = None
    enqueued_at: int = Field(
        ...,
        ge=0,
        description="Logical timestamp (epoch ms) used for dispatch ordering"
    )
    status: MutationStatus = MutationStatus.PENDING
    retries: int = Field(default=0, ge=0)
    last_attempt_at: Optional[int] = None
    error_message: Optional[str] = Field(default=None, max_length=1000)

    @property
    def needs_manual_resolution(self) -> bool:
        return self.status in MANUAL_STATUSES


class ChangeEventType(str, Enum):
    """Change-feed notification types."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    """
    A remote change notification.

    The payload is informational only: consumers re-fetch the canonical
    row instead of trusting it.
    """

    table: str
    event_type: ChangeEventType
    entity_id: str
    parent_id: Optional[str] = None
    payload: Optional[dict[str, Any]] = None


class MergeResult(BaseModel):
    """Outcome of a three-way field merge."""

    merged: Optional[dict[str, Any]] = Field(
        default=None,
        description="Merged record, present only when the merge succeeded"
    )
    local_changes: list[str] = Field(default_factory=list)
    remote_changes: list[str] = Field(default_factory=list)
    overlapping_fields: list[str] = Field(default_factory=list)
    invariant_error: Optional[str] = Field(
        default=None,
        description="Set when the field merge is clean but the merged record is invalid"
    )

    @property
    def has_conflict(self) -> bool:
        return bool(self.overlapping_fields) or self.invariant_error is not None


class QueueRunReport(BaseModel):
    """Counters for one process_queue run."""

    processed: int = 0
    synced: int = 0
    merged: int = 0
    failed: int = 0
    rejected: int = 0
    conflicts: int = 0
    deferred: int = 0
    skipped: int = 0

    @property
    def remaining(self) -> int:
        """Records still in the queue after this run."""
        return self.failed + self.rejected + self.conflicts + self.deferred + self.skipped
