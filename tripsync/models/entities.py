"""
Synchronized Entity Models

These models define the strict schemas for every entity that lives in the
local store and is mirrored to the remote backend.

DESIGN DECISION: Each synchronized table is described declaratively by an
EntitySchema (model, parent key, mergeable fields). The merge and dispatch
code is generic over this schema, so adding a table never needs a new
merge code path.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from tripsync.models.money import MoneyValue


def new_entity_id() -> str:
    return str(uuid4())


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Read naive datetimes as UTC so every stored instant is comparable."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class ExpenseCategory(str, Enum):
    """
    Expense categories.

    SETTLEMENT records are repayments between members: they move debt
    but are not consumption.
    """
    STAY = "stay"
    TRANSPORT = "transport"
    ACTIVITY = "activity"
    FOOD = "food"
    ESSENTIALS = "essentials"
    SETTLEMENT = "settlement"


class MemberRole(str, Enum):
    """Role of a member within a trip."""
    ORGANIZER = "organizer"
    EDITOR = "editor"
    VIEWER = "viewer"


# =============================================================================
# ENTITIES
# =============================================================================

class SyncedEntity(BaseModel):
    """
    Base for every entity mirrored between local store and remote backend.

    `updated_at` is a logical last-modified timestamp in epoch milliseconds.
    The remote backend assigns its own value on every write.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(
        default_factory=new_entity_id,
        min_length=1,
        description="Unique entity ID"
    )
    updated_at: int = Field(
        default=0,
        ge=0,
        description="Logical last-modified timestamp (epoch ms)"
    )

    def to_payload(self) -> dict[str, Any]:
        """JSON-compatible dict used for queue payloads and storage rows."""
        return self.model_dump(mode="json")


class Trip(SyncedEntity):
    """A shared trip."""

    name: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Trip name"
    )
    destination: str = Field(
        default="",
        max_length=200,
        description="Free-text destination"
    )
    start_date: date
    end_date: date
    base_currency: str = Field(
        default="USD",
        pattern="^[A-Z]{3}$",
        description="Currency all shared costs are recorded in"
    )
    created_by: Optional[str] = None

    @model_validator(mode='after')
    def validate_dates(self) -> 'Trip':
        if self.end_date < self.start_date:
            raise ValueError("Trip end date cannot be before start date")
        return self


class TripMember(SyncedEntity):
    """
    A party's membership in a trip, including their personal daily budget.

    The daily budget can be switched off and later re-enabled; each
    re-activation moves `budget_activated_at` forward.
    """

    trip_id: str = Field(..., min_length=1)
    party_id: str = Field(..., min_length=1)
    name: str = Field(
        default="",
        max_length=100,
        description="Display name"
    )
    role: MemberRole = MemberRole.EDITOR
    daily_budget: Optional[MoneyValue] = None
    budget_enabled: bool = False
    budget_activated_at: Optional[datetime] = None

    @field_validator('budget_activated_at')
    @classmethod
    def validate_activated_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @model_validator(mode='after')
    def validate_budget(self) -> 'TripMember':
        if self.daily_budget is not None and self.daily_budget.is_negative:
            raise ValueError("Daily budget cannot be negative")
        if self.budget_enabled and self.daily_budget is None:
            raise ValueError("An enabled budget needs a daily amount")
        return self


class ExpenseRecord(SyncedEntity):
    """
    A shared (or private) expense.

    INVARIANT: if split_details is present, its values sum exactly to cost.
    The allocator enforces this at write time; nothing downstream
    recomputes splits ad hoc.
    """

    trip_id: str = Field(..., min_length=1)
    title: str = Field(
        default="",
        max_length=200,
        description="What the money was spent on"
    )
    category: ExpenseCategory = ExpenseCategory.ESSENTIALS
    cost: MoneyValue
    paid_by: str = Field(..., min_length=1)
    split_with: list[str] = Field(
        default_factory=list,
        description="Parties sharing the cost; order defines allocation index"
    )
    split_details: Optional[dict[str, MoneyValue]] = Field(
        default=None,
        description="Custom amount per party, overriding the equal split"
    )
    is_private: bool = Field(
        default=False,
        description="Private expenses are excluded from shared ledgers"
    )
    is_daily_expense: bool = Field(
        default=False,
        description="Counts against the rolling daily budget"
    )
    occurred_at: datetime

    # Optional but valuable fields
    location: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = Field(default=None, max_length=1000)
    tags: list[str] = Field(default_factory=list)

    # Multi-currency: cost is always in the trip currency, these keep the
    # amount the party actually paid and the rate used
    original_amount: Optional[MoneyValue] = None
    exchange_rate: Optional[Decimal] = Field(default=None, gt=0)

    @field_validator('split_with')
    @classmethod
    def validate_split_with(cls, v: list[str]) -> list[str]:
        if len(set(v)) != len(v):
            raise ValueError("split_with contains duplicate parties")
        return v

    @field_validator('occurred_at')
    @classmethod
    def validate_occurred_at(cls, v: datetime) -> datetime:
        return as_utc(v)

    @field_validator('split_details')
    @classmethod
    def normalize_split_details(
        cls, v: Optional[dict[str, MoneyValue]]
    ) -> Optional[dict[str, MoneyValue]]:
        # An empty map means "no custom split"
        return v or None

    @model_validator(mode='after')
    def validate_split(self) -> 'ExpenseRecord':
        if self.cost.is_negative:
            raise ValueError("Expense cost cannot be negative")

        if self.split_details:
            total = 0
            for party, share in self.split_details.items():
                if share.currency != self.cost.currency:
                    raise ValueError(
                        f"Split for {party} is in {share.currency}, cost is in {self.cost.currency}"
                    )
                total += share.minor_units
            if total != self.cost.minor_units:
                raise ValueError("Split details must sum exactly to cost")

        return self

    @property
    def has_custom_split(self) -> bool:
        return bool(self.split_details)

    @property
    def involved_parties(self) -> list[str]:
        """Parties that consume a share of this expense."""
        if self.split_details:
            return list(self.split_details)
        return list(self.split_with)


# =============================================================================
# DECLARATIVE TABLE SCHEMAS
# =============================================================================

class UnknownTableError(LookupError):
    """No entity schema is registered for the table."""
    pass


class EntitySchema(BaseModel):
    """
    Declarative description of one synchronized table.

    mergeable_fields lists the fields three-way merge compares one by one.
    Identity and bookkeeping fields (id, parent key, updated_at) are never
    merged.
    """
    model_config = ConfigDict(frozen=True)

    table: str
    model: type[SyncedEntity]
    parent_field: Optional[str] = None
    mergeable_fields: tuple[str, ...]

    def parent_id(self, record: dict[str, Any]) -> Optional[str]:
        if self.parent_field is None:
            return None
        value = record.get(self.parent_field)
        return str(value) if value is not None else None

    def parse(self, record: dict[str, Any]) -> SyncedEntity:
        return self.model.model_validate(record)


TRIPS = EntitySchema(
    table="trips",
    model=Trip,
    mergeable_fields=(
        "name", "destination", "start_date", "end_date",
        "base_currency", "created_by",
    ),
)

TRIP_MEMBERS = EntitySchema(
    table="trip_members",
    model=TripMember,
    parent_field="trip_id",
    mergeable_fields=(
        "party_id", "name", "role", "daily_budget",
        "budget_enabled", "budget_activated_at",
    ),
)

EXPENSES = EntitySchema(
    table="expenses",
    model=ExpenseRecord,
    parent_field="trip_id",
    mergeable_fields=(
        "title", "category", "cost", "paid_by", "split_with", "split_details",
        "is_private", "is_daily_expense", "occurred_at", "location", "notes",
        "tags", "original_amount", "exchange_rate",
    ),
)

ENTITY_SCHEMAS: dict[str, EntitySchema] = {
    schema.table: schema for schema in (TRIPS, TRIP_MEMBERS, EXPENSES)
}


def get_schema(table: str) -> EntitySchema:
    try:
        return ENTITY_SCHEMAS[table]
    except KeyError:
        raise UnknownTableError(f"No schema registered for table: {table}")
