"""
Storage Boundaries

DESIGN DECISION: The sync engine only sees these abstract classes.
1. The remote backend can be Google Sheets, a hosted database or an
   in-memory fake in tests
2. The change feed is a separate push channel from the request/response API
3. No vendor SDK type crosses this boundary

Rows travel as plain JSON-compatible dicts keyed by table name.
"""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

from tripsync.models.audit import AuditEvent
from tripsync.models.sync import ChangeEvent


class RemoteBackend(ABC):
    """
    Abstract interface for the authoritative remote store.

    Every write returns the stored row, including the `updated_at`
    the server assigned to it.
    """

    @abstractmethod
    async def fetch(self, table: str, entity_id: str) -> Optional[dict[str, Any]]:
        """
        Retrieve the canonical row for an entity.

        Returns:
            The row if found, None otherwise

        Raises:
            RemoteUnavailableError: On transport failure
        """
        pass

    @abstractmethod
    async def fetch_by_parent(self, table: str, parent_id: str) -> list[dict[str, Any]]:
        """Retrieve every row of a table belonging to one parent (e.g. a trip)."""
        pass

    @abstractmethod
    async def upsert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        """
        Insert or replace a row by id. Idempotent.

        Returns:
            The stored row with the server-assigned updated_at

        Raises:
            RemoteUnavailableError: Transient failure, safe to retry
            RemoteRejectedError: Validation or authorization failure
        """
        pass

    @abstractmethod
    async def delete(self, table: str, entity_id: str) -> bool:
        """
        Delete a row by id. Deleting a missing row is not an error.

        Returns:
            True if a row was removed
        """
        pass


class ChangeFeed(ABC):
    """Push channel announcing remote inserts, updates and deletes."""

    @abstractmethod
    def subscribe(self, party_id: str) -> AsyncIterator[ChangeEvent]:
        """
        Yield change events visible to the party until cancelled.

        Payloads are hints only; consumers re-fetch the canonical row.
        """
        pass


class AuditStorageInterface(ABC):
    """
    Where audit events are kept.

    Append-only: nothing here updates or removes an event.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Persist one event.

        Returns:
            True once the event is stored
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """
        Events about one row, oldest first.

        Args:
            entity_type: Table of the entity (e.g., 'expenses')
            entity_id: Row id
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Latest events, newest first.
        """
        pass


class StorageError(Exception):
    """Root of every storage-layer failure."""
    pass


class NotFoundError(StorageError):
    """The requested row or queue record does not exist."""
    pass


class LocalStoreError(StorageError):
    """The client-resident store could not complete an operation."""
    pass


class RemoteBackendError(StorageError):
    """Base exception for remote backend failures."""
    pass


class RemoteUnavailableError(RemoteBackendError):
    """Transient failure (network, rate limit, server error). Safe to retry."""
    pass


class RemoteRejectedError(RemoteBackendError):
    """The remote refused the write (validation or authorization)."""
    pass
