"""Configuration package."""

from tripsync.config.settings import (
    AppSettings,
    GoogleSheetsSettings,
    LedgerSettings,
    LocalStoreSettings,
    Settings,
    SyncSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "GoogleSheetsSettings",
    "LedgerSettings",
    "LocalStoreSettings",
    "Settings",
    "SyncSettings",
    "get_settings",
    "validate_all_settings",
]
