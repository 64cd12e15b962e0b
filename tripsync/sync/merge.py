"""
Three-Way Merge

Reconciles a local edit with a concurrent remote edit of the same entity,
using the pre-edit snapshot as the common ancestor.

DESIGN DECISION: No silent conflict resolution.
1. Fields are merged independently, one by one
2. A field changed on both sides to different values is an overlap, and any
   overlap fails the whole merge (no partial write)
3. A clean merge must still produce a valid entity; otherwise it is treated
   as a conflict too

Money fields are compared as exact integer minor units, so two devices
that entered the same amount never conflict through rounding.
"""

from typing import Any, Optional

import structlog
from pydantic import ValidationError

from tripsync.models.entities import get_schema
from tripsync.models.sync import MergeResult


logger = structlog.get_logger(__name__)


class ConflictResolver:
    """Field-level three-way merge over the declarative table schemas."""

    def merge(
        self,
        table: str,
        base: dict[str, Any],
        local: dict[str, Any],
        remote: dict[str, Any],
    ) -> MergeResult:
        """
        Merge `local` and `remote`, both derived from `base`.

        The merged record starts from the remote state (keeping its identity
        and server timestamp) and takes every field only the local side
        changed.
        """
        schema = get_schema(table)
        merged = dict(remote)
        local_changes: list[str] = []
        remote_changes: list[str] = []
        overlapping: list[str] = []

        for field in schema.mergeable_fields:
            base_value = base.get(field)
            local_value = local.get(field)
            remote_value = remote.get(field)

            local_changed = local_value != base_value
            remote_changed = remote_value != base_value

            if local_changed and remote_changed:
                # Both sides made the same change: nothing to reconcile
                if local_value != remote_value:
                    overlapping.append(field)
            elif local_changed:
                merged[field] = local_value
                local_changes.append(field)
            elif remote_changed:
                remote_changes.append(field)

        if overlapping:
            logger.info(
                "merge_overlap",
                table=table,
                entity_id=remote.get("id"),
                fields=overlapping,
            )
            return MergeResult(
                local_changes=local_changes,
                remote_changes=remote_changes,
                overlapping_fields=overlapping,
            )

        invariant_error = self._check_invariants(table, merged)
        if invariant_error is not None:
            logger.info(
                "merge_invalid",
                table=table,
                entity_id=remote.get("id"),
                error=invariant_error,
            )
            return MergeResult(
                local_changes=local_changes,
                remote_changes=remote_changes,
                invariant_error=invariant_error,
            )

        return MergeResult(
            merged=schema.parse(merged).to_payload(),
            local_changes=local_changes,
            remote_changes=remote_changes,
        )

    @staticmethod
    def _check_invariants(table: str, record: dict[str, Any]) -> Optional[str]:
        try:
            get_schema(table).parse(record)
        except ValidationError as e:
            return "; ".join(error["msg"] for error in e.errors())
        return None
