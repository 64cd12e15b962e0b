"""
Rolling Daily Budget ("piggy bank")

Each closed day of the trip earns the daily budget and pays for what the
party spent that day. The balance is the sum of those leftovers.

DESIGN DECISION: The ledger is a pure function of the expense records.
1. Nothing here is persisted: a snapshot is recomputed whenever it is read
2. Today is always excluded from the balance, even when already overspent
3. Switching the budget off and on again starts a fresh cycle: records
   before the latest activation never count
"""

from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from tripsync.ledger.allocation import resolve_share
from tripsync.models.entities import ExpenseCategory, ExpenseRecord, as_utc
from tripsync.models.ledger import BudgetLedgerEntry, BudgetSnapshot
from tripsync.models.money import MoneyValue


def latest_activation(timestamps: Iterable[Optional[datetime]]) -> Optional[datetime]:
    """Latest of an activation history, ignoring missing values."""
    present = [as_utc(ts) for ts in timestamps if ts is not None]
    return max(present) if present else None


def _counts_toward_budget(
    expense: ExpenseRecord,
    activated_at: Optional[datetime],
) -> bool:
    if expense.is_private or not expense.is_daily_expense:
        return False
    if expense.category == ExpenseCategory.SETTLEMENT:
        return False
    if activated_at is not None and expense.occurred_at < activated_at:
        return False
    return True


def compute_piggy_bank(
    trip_start: date,
    today: date,
    daily_budget: MoneyValue,
    party_id: str,
    expenses: Iterable[ExpenseRecord],
    activated_at: Optional[datetime] = None,
) -> BudgetSnapshot:
    """
    Compute the rolling budget for one party.

    Args:
        trip_start: First day of the trip
        today: The current day (never part of the balance)
        daily_budget: Amount earned per closed day
        party_id: Whose share of each expense is counted
        expenses: Expense records of the trip
        activated_at: Latest time the budget was switched on, if any

    Returns:
        Snapshot with one entry per closed day in [window_start, today)
    """
    currency = daily_budget.currency
    activated_at = as_utc(activated_at)
    window_start = trip_start
    if activated_at is not None:
        window_start = max(trip_start, activated_at.date())

    spend_by_day: dict[date, MoneyValue] = {}
    for expense in expenses:
        if not _counts_toward_budget(expense, activated_at):
            continue
        share = resolve_share(expense, party_id)
        if share.is_zero:
            continue
        day = expense.occurred_at.date()
        spend_by_day[day] = spend_by_day.get(day, MoneyValue.zero(currency)) + share

    entries = []
    day = window_start
    while day < today:
        spent = spend_by_day.get(day, MoneyValue.zero(currency))
        entries.append(BudgetLedgerEntry(day=day, spent=spent, leftover=daily_budget - spent))
        day += timedelta(days=1)

    today_spend = spend_by_day.get(today, MoneyValue.zero(currency))

    return BudgetSnapshot(
        party_id=party_id,
        window_start=window_start,
        today=today,
        daily_budget=daily_budget,
        entries=entries,
        balance=MoneyValue.total((entry.leftover for entry in entries), currency),
        today_spend=today_spend,
        today_leftover=daily_budget - today_spend,
    )
