"""
Realtime Reconciler

Pulls remote changes announced by the change feed into the local store
and into any collections the app currently has loaded.

DESIGN DECISION: Feed payloads are never trusted.
1. INSERT / UPDATE re-fetch the canonical row by id before applying it
2. A re-fetch that finds nothing means the row is gone: treat it as a delete
3. A failed re-fetch is logged and audited, and the loop keeps running

The reconciler never touches the mutation queue. Outbound and inbound sync
are independent; a local edit that loses to an incoming row is still queued
and surfaces as a conflict when it is dispatched.
"""

import asyncio
from typing import Any, Callable, Iterable, Optional

import structlog

from tripsync.audit import AuditLogger
from tripsync.models.entities import TRIP_MEMBERS, TRIPS, get_schema
from tripsync.models.sync import ChangeEvent, ChangeEventType
from tripsync.services.storage.interface import (
    ChangeFeed,
    RemoteBackend,
    RemoteBackendError,
)
from tripsync.services.storage.local import LocalStore


logger = structlog.get_logger(__name__)


ChangeListener = Callable[[ChangeEvent], None]

# (table, parent_id) -> {entity_id: record}, insertion-ordered
CollectionKey = tuple[str, Optional[str]]


class RealtimeReconciler:
    """Applies change-feed events to the local store and loaded collections."""

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteBackend,
        audit_logger: Optional[AuditLogger] = None,
        refetch_timeout_seconds: float = 15.0,
    ):
        self._store = store
        self._remote = remote
        self._audit = audit_logger or AuditLogger()
        self._timeout = refetch_timeout_seconds
        self._party_id: Optional[str] = None
        self._visible_trips: set[str] = set()
        self._collections: dict[CollectionKey, dict[str, dict[str, Any]]] = {}
        self._listeners: list[ChangeListener] = []

    # =========================================================================
    # Scope and collections
    # =========================================================================

    @property
    def visible_trips(self) -> frozenset[str]:
        return frozenset(self._visible_trips)

    def set_visible_trips(self, trip_ids: Iterable[str]) -> None:
        self._visible_trips = set(trip_ids)

    def track(self, table: str, parent_id: Optional[str] = None) -> list[dict[str, Any]]:
        """
        Load a collection from the local store and keep it current.

        Tracking a trip's child collection makes that trip visible.
        """
        get_schema(table)
        if parent_id is None:
            records = self._store.all(table)
        else:
            records = self._store.get_by_parent(table, parent_id)
            if table != TRIPS.table:
                self._visible_trips.add(parent_id)
        if table == TRIPS.table and parent_id is None:
            self._visible_trips.update(record["id"] for record in records)

        self._collections[(table, parent_id)] = {record["id"]: record for record in records}
        return list(self._collections[(table, parent_id)].values())

    def untrack(self, table: str, parent_id: Optional[str] = None) -> None:
        self._collections.pop((table, parent_id), None)

    def collection(self, table: str, parent_id: Optional[str] = None) -> list[dict[str, Any]]:
        """Current contents of a tracked collection (empty if not tracked)."""
        return list(self._collections.get((table, parent_id), {}).values())

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def is_relevant(self, event: ChangeEvent) -> bool:
        if event.table == TRIPS.table:
            # A new trip may be one we were just added to
            return event.event_type == ChangeEventType.INSERT or event.entity_id in self._visible_trips
        if event.parent_id is None:
            return event.event_type == ChangeEventType.DELETE
        return event.parent_id in self._visible_trips

    # =========================================================================
    # Event handling
    # =========================================================================

    async def run(self, feed: ChangeFeed, party_id: str) -> None:
        """Consume the party's change feed until cancelled."""
        self._party_id = party_id
        logger.info("reconciler_started", party_id=party_id)
        try:
            async for event in feed.subscribe(party_id):
                try:
                    await self.handle(event)
                except Exception:
                    logger.exception(
                        "change_event_failed",
                        table=event.table,
                        entity_id=event.entity_id,
                    )
        finally:
            logger.info("reconciler_stopped", party_id=party_id)

    async def handle(self, event: ChangeEvent) -> bool:
        """
        Apply one change event.

        Returns True if local state changed.
        """
        get_schema(event.table)
        if not self.is_relevant(event):
            logger.debug("change_event_ignored", table=event.table, entity_id=event.entity_id)
            return False

        if event.event_type == ChangeEventType.DELETE:
            return await self._apply_delete(event)

        try:
            row = await asyncio.wait_for(
                self._remote.fetch(event.table, event.entity_id),
                timeout=self._timeout,
            )
        except (RemoteBackendError, asyncio.TimeoutError, OSError) as e:
            message = str(e) or type(e).__name__
            logger.warning(
                "refetch_failed",
                table=event.table,
                entity_id=event.entity_id,
                error=message,
            )
            await self._audit.log_refetch_failed(event.table, event.entity_id, message)
            return False

        if row is None:
            return await self._apply_delete(event)
        return await self._apply_upsert(event, row)

    async def _apply_upsert(self, event: ChangeEvent, row: dict[str, Any]) -> bool:
        schema = get_schema(event.table)
        self._store.upsert(event.table, row)

        if event.table == TRIPS.table:
            if event.event_type == ChangeEventType.INSERT:
                self._visible_trips.add(row["id"])
            parent_id = None
        else:
            parent_id = schema.parent_id(row)
            if event.table == TRIP_MEMBERS.table and row.get("party_id") == self._party_id:
                self._visible_trips.add(parent_id)

        for (table, tracked_parent), collection in self._collections.items():
            if table != event.table:
                continue
            if tracked_parent == parent_id:
                # Replace in place, or append at the end
                collection[row["id"]] = row
            else:
                collection.pop(row["id"], None)

        await self._audit.log_remote_applied(event.table, row["id"], event.event_type.value)
        self._notify(event)
        return True

    async def _apply_delete(self, event: ChangeEvent) -> bool:
        removed = self._store.delete(event.table, event.entity_id)
        for (table, _), collection in self._collections.items():
            if table == event.table and collection.pop(event.entity_id, None) is not None:
                removed = True
        if event.table == TRIPS.table:
            self._visible_trips.discard(event.entity_id)

        await self._audit.log_remote_deleted(event.table, event.entity_id)
        self._notify(event)
        return removed

    def _notify(self, event: ChangeEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("change_listener_failed", entity_id=event.entity_id)
