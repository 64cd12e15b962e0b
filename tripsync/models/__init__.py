"""
Data Models Package

This package contains all Pydantic models used in TripSync.
Everything stored locally, queued or sent to the remote backend must
conform to these schemas.
"""

from tripsync.models.money import (
    CurrencyMismatchError,
    MoneyError,
    MoneyValue,
    currency_exponent,
)
from tripsync.models.entities import (
    ENTITY_SCHEMAS,
    EntitySchema,
    ExpenseCategory,
    ExpenseRecord,
    MemberRole,
    SyncedEntity,
    Trip,
    TripMember,
    UnknownTableError,
    get_schema,
    new_entity_id,
)
from tripsync.models.sync import (
    ChangeEvent,
    ChangeEventType,
    MergeResult,
    MutationOperation,
    MutationRecord,
    MutationStatus,
    QueueRunReport,
)
from tripsync.models.ledger import (
    BalanceSummary,
    BudgetLedgerEntry,
    BudgetSnapshot,
    Transfer,
)
from tripsync.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Money
    "CurrencyMismatchError",
    "MoneyError",
    "MoneyValue",
    "currency_exponent",
    # Entities
    "ENTITY_SCHEMAS",
    "EntitySchema",
    "ExpenseCategory",
    "ExpenseRecord",
    "MemberRole",
    "SyncedEntity",
    "Trip",
    "TripMember",
    "UnknownTableError",
    "get_schema",
    "new_entity_id",
    # Sync
    "ChangeEvent",
    "ChangeEventType",
    "MergeResult",
    "MutationOperation",
    "MutationRecord",
    "MutationStatus",
    "QueueRunReport",
    # Ledger
    "BalanceSummary",
    "BudgetLedgerEntry",
    "BudgetSnapshot",
    "Transfer",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
