"""
Trip Settlement

Who owes whom, computed from shared expense records in exact minor units.

DESIGN DECISION: Every share comes from resolve_share(), and the payer is
credited with exactly the shares handed out. The net positions of all
members therefore always sum to zero, with no rounding residue to hide.
"""

from typing import Iterable, Sequence

from tripsync.ledger.allocation import resolve_share
from tripsync.models.entities import ExpenseCategory, ExpenseRecord
from tripsync.models.ledger import BalanceSummary, Transfer
from tripsync.models.money import MoneyValue


def compute_balances(
    expenses: Iterable[ExpenseRecord],
    member_ids: Sequence[str],
    party_id: str,
    currency: str,
) -> BalanceSummary:
    """
    Pairwise debts from `party_id`'s point of view, every member's net
    position, and a minimal transfer plan.

    Private records are ignored. SETTLEMENT records move debt between
    members but do not count as anyone's spend.
    """
    zero = MoneyValue.zero(currency)
    pairwise = {member: zero for member in member_ids if member != party_id}
    net = {member: zero for member in member_ids}
    my_spend = zero
    my_paid = zero
    my_received = zero

    for expense in expenses:
        if expense.is_private:
            continue

        payer = expense.paid_by
        is_settlement = expense.category == ExpenseCategory.SETTLEMENT
        involved = expense.involved_parties

        if payer == party_id:
            my_paid = my_paid + expense.cost
        if is_settlement:
            if party_id in involved:
                my_received = my_received + expense.cost
        else:
            my_spend = my_spend + resolve_share(expense, party_id)

        for consumer in involved:
            share = resolve_share(expense, consumer)
            net[payer] = net.get(payer, zero) + share
            net[consumer] = net.get(consumer, zero) - share

            if consumer == payer:
                continue
            if payer == party_id:
                pairwise[consumer] = pairwise.get(consumer, zero) + share
            elif consumer == party_id:
                pairwise[payer] = pairwise.get(payer, zero) - share

    return BalanceSummary(
        party_id=party_id,
        currency=currency,
        pairwise=pairwise,
        net=net,
        transfers=smart_transfers(net),
        my_total_spend=my_spend,
        my_total_paid=my_paid,
        my_total_received=my_received,
    )


def smart_transfers(net: dict[str, MoneyValue]) -> list[Transfer]:
    """
    Settle net positions with as few transfers as a greedy pass allows.

    The largest debtor repeatedly pays the largest creditor. Ties are broken
    by party id so the plan is identical on every device.
    """
    debtors = sorted(
        ([party, -amount.minor_units] for party, amount in net.items() if amount.is_negative),
        key=lambda item: (-item[1], item[0]),
    )
    creditors = sorted(
        ([party, amount.minor_units] for party, amount in net.items() if amount.minor_units > 0),
        key=lambda item: (-item[1], item[0]),
    )
    if not debtors:
        return []
    currency = next(iter(net.values())).currency

    transfers = []
    i = j = 0
    while i < len(debtors) and j < len(creditors):
        debtor, creditor = debtors[i], creditors[j]
        amount = min(debtor[1], creditor[1])
        transfers.append(Transfer(
            from_party=debtor[0],
            to_party=creditor[0],
            amount=MoneyValue(minor_units=amount, currency=currency),
        ))
        debtor[1] -= amount
        creditor[1] -= amount
        if debtor[1] == 0:
            i += 1
        if creditor[1] == 0:
            j += 1

    return transfers
