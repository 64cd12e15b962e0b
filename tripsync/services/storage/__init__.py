"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage:
the SQLite local store on the client and Google Sheets as a remote backend.
Designed so the remote side is swappable.
"""

from tripsync.services.storage.interface import (
    AuditStorageInterface,
    ChangeFeed,
    LocalStoreError,
    NotFoundError,
    RemoteBackend,
    RemoteBackendError,
    RemoteRejectedError,
    RemoteUnavailableError,
    StorageError,
)
from tripsync.services.storage.local import LocalAuditStorage, LocalStore
from tripsync.services.storage.google_sheets import (
    GoogleSheetsClient,
    GoogleSheetsRemoteBackend,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "ChangeFeed",
    "RemoteBackend",
    # Exceptions
    "LocalStoreError",
    "NotFoundError",
    "RemoteBackendError",
    "RemoteRejectedError",
    "RemoteUnavailableError",
    "StorageError",
    # Local store
    "LocalAuditStorage",
    "LocalStore",
    # Google Sheets implementation
    "GoogleSheetsClient",
    "GoogleSheetsRemoteBackend",
]
