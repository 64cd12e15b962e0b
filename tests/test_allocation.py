"""Tests for split allocation."""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from tests.factories import make_expense, usd
from tripsync.ledger.allocation import (
    AllocationError,
    SplitMismatchError,
    allocate,
    custom_split,
    equal_split,
    resolve_share,
)
from tripsync.models.money import MoneyValue


class TestAllocate:
    """Tests for the remainder-distributing allocator."""

    def test_remainder_goes_to_first_shares(self):
        """Test that 1.00 split three ways gives 0.34, 0.33, 0.33."""
        shares = allocate(usd("1.00"), 3)
        assert [s.minor_units for s in shares] == [34, 33, 33]

    def test_even_split(self):
        shares = allocate(usd("90.00"), 3)
        assert all(s == usd("30.00") for s in shares)

    def test_single_part(self):
        assert allocate(usd("12.34"), 1) == [usd("12.34")]

    def test_zero_parts_rejected(self):
        with pytest.raises(AllocationError):
            allocate(usd("1.00"), 0)

    def test_currency_preserved(self):
        shares = allocate(MoneyValue(minor_units=1001, currency="JPY"), 2)
        assert [s.currency for s in shares] == ["JPY", "JPY"]
        assert [s.minor_units for s in shares] == [501, 500]

    @given(
        st.integers(min_value=0, max_value=10**10),
        st.integers(min_value=1, max_value=50),
    )
    def test_shares_sum_to_total(self, units, parts):
        """
        PROPERTY: shares always sum exactly to the total and never
        differ by more than one minor unit.
        """
        shares = [s.minor_units for s in allocate(MoneyValue(minor_units=units), parts)]
        assert sum(shares) == units
        assert max(shares) - min(shares) <= 1
        assert shares == sorted(shares, reverse=True)


class TestEqualSplit:
    """Tests for mapping parties to equal shares."""

    def test_order_defines_who_gets_remainder(self):
        split = equal_split(usd("0.10"), ["carol", "alice", "bob"])
        assert split["carol"].minor_units == 4
        assert split["alice"].minor_units == 3
        assert split["bob"].minor_units == 3

    def test_empty_parties_rejected(self):
        with pytest.raises(AllocationError, match="zero parties"):
            equal_split(usd("1.00"), [])

    def test_duplicate_parties_rejected(self):
        with pytest.raises(AllocationError, match="duplicates"):
            equal_split(usd("1.00"), ["alice", "alice"])


class TestCustomSplit:
    """Tests for validating user-entered split amounts."""

    def test_exact_split_accepted(self):
        amounts = {"alice": usd("7.00"), "bob": usd("3.00")}
        assert custom_split(usd("10.00"), amounts) == amounts

    def test_one_cent_short_absorbed_by_first_party(self):
        """Test that a one-cent gap goes to the first party."""
        result = custom_split(usd("10.00"), {"alice": usd("3.33"), "bob": usd("3.33"), "carol": usd("3.33")})
        assert result["alice"] == usd("3.34")
        assert result["bob"] == usd("3.33")
        assert MoneyValue.total(result.values()) == usd("10.00")

    def test_one_cent_over_absorbed_by_first_party(self):
        result = custom_split(usd("10.00"), {"alice": usd("5.01"), "bob": usd("5.00")})
        assert result["alice"] == usd("5.00")

    def test_two_cents_rejected(self):
        """Test that anything beyond the tolerance is a mismatch."""
        with pytest.raises(SplitMismatchError) as exc_info:
            custom_split(usd("10.00"), {"alice": usd("4.99"), "bob": usd("4.99")})
        assert exc_info.value.assigned == usd("9.98")
        assert exc_info.value.total == usd("10.00")

    def test_zero_tolerance(self):
        with pytest.raises(SplitMismatchError):
            custom_split(usd("10.00"), {"alice": usd("9.99")}, tolerance_minor_units=0)

    def test_tolerance_cannot_exceed_one_unit(self):
        with pytest.raises(AllocationError, match="cannot exceed"):
            custom_split(usd("10.00"), {"alice": usd("10.00")}, tolerance_minor_units=5)

    def test_empty_amounts_rejected(self):
        with pytest.raises(AllocationError):
            custom_split(usd("10.00"), {})


class TestResolveShare:
    """Tests for looking up one party's share of an expense."""

    def test_equal_share(self):
        expense = make_expense(cost="1.00")
        assert resolve_share(expense, "alice").minor_units == 34
        assert resolve_share(expense, "bob").minor_units == 33

    def test_custom_details_win(self):
        expense = make_expense(
            cost="10.00",
            split_details={"alice": usd("8.00"), "bob": usd("2.00")},
        )
        assert resolve_share(expense, "alice") == usd("8.00")
        assert resolve_share(expense, "carol").is_zero

    def test_outsider_pays_nothing(self):
        expense = make_expense(split_with=["alice", "bob"])
        assert resolve_share(expense, "dave") == usd("0")

    @given(
        st.integers(min_value=0, max_value=10**8),
        st.lists(st.sampled_from(["alice", "bob", "carol", "dave", "erin"]), min_size=1, unique=True),
    )
    def test_shares_of_all_parties_sum_to_cost(self, units, parties):
        """
        PROPERTY: resolving every involved party's share accounts for
        the whole cost.
        """
        expense = make_expense(split_with=parties).model_copy(
            update={"cost": MoneyValue(minor_units=units)}
        )
        total = sum(resolve_share(expense, party).minor_units for party in parties)
        assert total == units


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
