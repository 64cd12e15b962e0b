"""Deterministic money ledger: splits, daily budgets and settlement."""

from tripsync.ledger.allocation import (
    AllocationError,
    SplitMismatchError,
    allocate,
    custom_split,
    equal_split,
    resolve_share,
)
from tripsync.ledger.budget import compute_piggy_bank, latest_activation
from tripsync.ledger.settlement import compute_balances, smart_transfers

__all__ = [
    "AllocationError",
    "SplitMismatchError",
    "allocate",
    "compute_balances",
    "compute_piggy_bank",
    "custom_split",
    "equal_split",
    "latest_activation",
    "resolve_share",
    "smart_transfers",
]
