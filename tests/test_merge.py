"""Tests for field-level three-way merge."""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from tests.factories import make_expense, make_trip, usd
from tripsync.sync.merge import ConflictResolver


def edit(payload, **changes):
    """Copy a payload with some fields changed, JSON-encoding money."""
    updated = dict(payload)
    for field, value in changes.items():
        if hasattr(value, "model_dump"):
            value = value.model_dump(mode="json")
        updated[field] = value
    return updated


@pytest.fixture
def resolver():
    return ConflictResolver()


@pytest.fixture
def base():
    return make_expense(updated_at=1000).to_payload()


class TestThreeWayMerge:
    """Tests for merging a local edit with a concurrent remote edit."""

    def test_disjoint_fields_merge(self, resolver, base):
        """Test that a local title edit and a remote cost edit combine."""
        local = edit(base, title="Tapas")
        remote = edit(base, cost=usd("45.00"), updated_at=9000)

        result = resolver.merge("expenses", base, local, remote)

        assert not result.has_conflict
        assert result.merged["title"] == "Tapas"
        assert result.merged["cost"] == {"minor_units": 4500, "currency": "USD"}
        assert result.local_changes == ["title"]
        assert result.remote_changes == ["cost"]

    def test_merged_keeps_remote_identity_and_timestamp(self, resolver, base):
        local = edit(base, title="Tapas", updated_at=5000)
        remote = edit(base, notes="Great place", updated_at=9000)

        result = resolver.merge("expenses", base, local, remote)

        assert result.merged["id"] == base["id"]
        assert result.merged["updated_at"] == 9000

    def test_overlap_is_conflict(self, resolver, base):
        """Test that both sides changing a field differently fails the merge."""
        local = edit(base, title="Tapas", notes="mine")
        remote = edit(base, title="Pizza", updated_at=9000)

        result = resolver.merge("expenses", base, local, remote)

        assert result.has_conflict
        assert result.overlapping_fields == ["title"]
        assert result.merged is None

    def test_same_change_on_both_sides_is_not_conflict(self, resolver, base):
        local = edit(base, cost=usd("12.00"))
        remote = edit(base, cost=usd("12.00"), updated_at=9000)

        result = resolver.merge("expenses", base, local, remote)

        assert not result.has_conflict
        assert result.local_changes == []
        assert result.remote_changes == []

    def test_money_compared_in_minor_units(self, resolver, base):
        """Test that the same amount parsed from different strings never conflicts."""
        local = edit(base, cost=usd("12.5"))
        remote = edit(base, cost=usd("12.50"), updated_at=9000)
        assert not resolver.merge("expenses", base, local, remote).has_conflict

    def test_invalid_merged_record_is_conflict(self, resolver, base):
        """Test that a clean merge that breaks the split invariant is refused."""
        local = edit(base, split_details={
            "alice": usd("10.00").model_dump(mode="json"),
            "bob": usd("20.00").model_dump(mode="json"),
        })
        remote = edit(base, cost=usd("40.00"), updated_at=9000)

        result = resolver.merge("expenses", base, local, remote)

        assert result.has_conflict
        assert result.overlapping_fields == []
        assert "Split details must sum exactly to cost" in result.invariant_error
        assert result.merged is None

    def test_trip_dates_merge_validated(self, resolver):
        base = make_trip(updated_at=1000).to_payload()
        local = edit(base, end_date="2024-01-03")
        remote = edit(base, start_date="2024-01-05", updated_at=9000)

        result = resolver.merge("trips", base, local, remote)

        assert result.invariant_error is not None

    def test_nothing_changed(self, resolver, base):
        result = resolver.merge("expenses", base, dict(base), edit(base, updated_at=9000))
        assert result.merged == edit(base, updated_at=9000)


EDITS = {
    "title": "Late snack",
    "notes": "cash only",
    "location": "Alfama",
    "is_private": True,
    "tags": ["night"],
    "paid_by": "bob",
}


class TestMergeProperties:

    @given(st.sets(st.sampled_from(sorted(EDITS))), st.sets(st.sampled_from(sorted(EDITS))))
    def test_disjoint_edits_always_merge(self, local_fields, remote_fields):
        """
        PROPERTY: edits to disjoint fields always merge cleanly, and the
        result carries every edit from both sides.
        """
        remote_fields = remote_fields - local_fields
        base = make_expense(id="e-1", updated_at=1000).to_payload()
        local = edit(base, **{field: EDITS[field] for field in local_fields})
        remote = edit(base, updated_at=9000, **{field: EDITS[field] for field in remote_fields})

        result = ConflictResolver().merge("expenses", base, local, remote)

        assert not result.has_conflict
        for field in local_fields | remote_fields:
            assert result.merged[field] == EDITS[field]
        assert sorted(result.local_changes) == sorted(local_fields)
        assert sorted(result.remote_changes) == sorted(remote_fields)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
