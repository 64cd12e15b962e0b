"""
Ledger Models

Derived, read-only views over expense records. None of these are
persisted; they are recomputed from the local store on demand.
"""

from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from tripsync.models.money import MoneyValue


class BudgetLedgerEntry(BaseModel):
    """One closed day in the rolling budget."""
    model_config = ConfigDict(frozen=True)

    day: date
    spent: MoneyValue
    leftover: MoneyValue = Field(
        ...,
        description="daily_budget - spent; negative when overspent"
    )


class BudgetSnapshot(BaseModel):
    """
    Rolling "piggy bank" state for one party.

    `balance` only covers closed days. Today's spend is reported on its own
    and never folds into the balance until the day is over.
    """

    party_id: str
    window_start: date
    today: date
    daily_budget: MoneyValue
    entries: list[BudgetLedgerEntry] = Field(default_factory=list)
    balance: MoneyValue
    today_spend: MoneyValue
    today_leftover: MoneyValue

    @property
    def available_today(self) -> MoneyValue:
        """What can still be spent today, including the carried balance."""
        return self.balance + self.today_leftover


class Transfer(BaseModel):
    """A suggested payment from one party to another."""
    model_config = ConfigDict(frozen=True)

    from_party: str
    to_party: str
    amount: MoneyValue


class BalanceSummary(BaseModel):
    """Who owes whom within a trip, from one party's point of view."""

    party_id: str
    currency: str
    pairwise: dict[str, MoneyValue] = Field(
        default_factory=dict,
        description="Positive: the other party owes me. Negative: I owe them."
    )
    net: dict[str, MoneyValue] = Field(
        default_factory=dict,
        description="Net position of every member; sums to zero"
    )
    transfers: list[Transfer] = Field(default_factory=list)
    my_total_spend: MoneyValue
    my_total_paid: MoneyValue
    my_total_received: MoneyValue

    def owed_by(self, other_party: str) -> Optional[MoneyValue]:
        return self.pairwise.get(other_party)
