"""
Split Allocation

DESIGN DECISION: Splitting is done once, here, on integer minor units.
1. allocate() never loses or invents a cent: shares always sum to the total
2. Remainder cents go to the first shares by index, so the result is
   reproducible on every device
3. resolve_share() is the only way the ledger and settlement code learn
   what a party owes for an expense
"""

from typing import Mapping, Sequence

from tripsync.models.entities import ExpenseRecord
from tripsync.models.money import MoneyValue


class AllocationError(ValueError):
    """A split could not be computed."""
    pass


class SplitMismatchError(AllocationError):
    """Custom split amounts do not add up to the total."""

    def __init__(self, total: MoneyValue, assigned: MoneyValue):
        self.total = total
        self.assigned = assigned
        super().__init__(
            f"Split amounts add up to {assigned}, expected {total}"
        )


def allocate(total: MoneyValue, n: int) -> list[MoneyValue]:
    """
    Split `total` into `n` shares that sum exactly to `total`.

    Each share gets the floor quotient; the leftover minor units go one
    each to the first shares. Shares never differ by more than one unit.

        allocate(100 cents, 3) -> [34, 33, 33]
    """
    if n < 1:
        raise AllocationError(f"Cannot allocate into {n} parts")
    base, remainder = divmod(total, n)
    one = MoneyValue(minor_units=1, currency=total.currency)
    return [base + one if i < remainder else base for i in range(n)]


def equal_split(total: MoneyValue, party_ids: Sequence[str]) -> dict[str, MoneyValue]:
    """Map each party, in order, to its allocate() share."""
    if not party_ids:
        raise AllocationError("Cannot split between zero parties")
    if len(set(party_ids)) != len(party_ids):
        raise AllocationError("Party list contains duplicates")
    return dict(zip(party_ids, allocate(total, len(party_ids))))


def custom_split(
    total: MoneyValue,
    amounts: Mapping[str, MoneyValue],
    tolerance_minor_units: int = 1,
) -> dict[str, MoneyValue]:
    """
    Validate user-entered split amounts against the total.

    A difference of at most `tolerance_minor_units` (never more than one)
    is absorbed by the first party so the result sums exactly to `total`.
    Anything wider is rejected.
    """
    if not amounts:
        raise AllocationError("Custom split needs at least one party")
    if not 0 <= tolerance_minor_units <= 1:
        raise AllocationError("Split tolerance cannot exceed one minor unit")

    assigned = MoneyValue.total(amounts.values(), total.currency)
    difference = (total - assigned).minor_units
    if abs(difference) > tolerance_minor_units:
        raise SplitMismatchError(total, assigned)

    result = dict(amounts)
    if difference:
        first = next(iter(result))
        result[first] = result[first] + MoneyValue(
            minor_units=difference, currency=total.currency
        )
    return result


def resolve_share(expense: ExpenseRecord, party_id: str) -> MoneyValue:
    """
    What `party_id` consumes of an expense.

    Custom split details win; otherwise the party's equal share if it is in
    split_with; otherwise zero.
    """
    if expense.split_details:
        return expense.split_details.get(party_id, MoneyValue.zero(expense.cost.currency))
    if party_id in expense.split_with:
        return equal_split(expense.cost, expense.split_with)[party_id]
    return MoneyValue.zero(expense.cost.currency)
