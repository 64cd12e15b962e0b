"""Services package."""

from tripsync.services.storage import (
    AuditStorageInterface,
    ChangeFeed,
    GoogleSheetsClient,
    GoogleSheetsRemoteBackend,
    LocalAuditStorage,
    LocalStore,
    LocalStoreError,
    NotFoundError,
    RemoteBackend,
    RemoteBackendError,
    RemoteRejectedError,
    RemoteUnavailableError,
    StorageError,
)

__all__ = [
    "AuditStorageInterface",
    "ChangeFeed",
    "GoogleSheetsClient",
    "GoogleSheetsRemoteBackend",
    "LocalAuditStorage",
    "LocalStore",
    "LocalStoreError",
    "NotFoundError",
    "RemoteBackend",
    "RemoteBackendError",
    "RemoteRejectedError",
    "RemoteUnavailableError",
    "StorageError",
]
