"""
Configuration Management for TripSync

Every tunable is a pydantic-settings class read from the environment
(and .env), grouped by concern under an env prefix.

DESIGN DECISION: One module owns configuration.
Sync timing, retry policy and storage locations are tunable per deployment,
and every value is validated when it is first loaded.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncSettings(BaseSettings):
    """Mutation queue and change-feed timing configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SYNC_",
        extra="ignore"
    )

    clock_skew_grace_ms: int = Field(
        default=1000,
        ge=0,
        le=60000,
        description="Remote timestamps within this window of the base snapshot are not 'newer'"
    )
    dispatch_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Per-record timeout for a single dispatch attempt"
    )
    refetch_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Timeout for re-fetching an entity announced by the change feed"
    )

    # Retry policy for FAILED records
    max_retries: Optional[int] = Field(
        default=None,
        ge=1,
        description="Stop re-dispatching a FAILED record after this many attempts (None = unlimited)"
    )
    backoff_base_ms: int = Field(
        default=0,
        ge=0,
        description="Base delay before a FAILED record is eligible again (doubles per retry, 0 = next run)"
    )
    backoff_max_ms: int = Field(
        default=300000,
        ge=0,
        description="Upper bound for the retry delay"
    )

    periodic_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="How often the background trigger drains the queue"
    )


class LocalStoreSettings(BaseSettings):
    """Client-resident SQLite cache configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LOCAL_STORE_",
        extra="ignore"
    )

    path: str = Field(
        default="tripsync.db",
        description="Path to the SQLite file (':memory:' for an ephemeral store)"
    )

    @field_validator('path')
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Warn if the parent directory is missing (it may be mounted later)."""
        if v != ":memory:" and not Path(v).parent.exists():
            import warnings
            warnings.warn(
                f"Local store directory not found for {v}. "
                "Make sure it exists before running the application."
            )
        return v


class LedgerSettings(BaseSettings):
    """Monetary ledger configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        extra="ignore"
    )

    default_currency: str = Field(
        default="USD",
        pattern="^[A-Z]{3}$",
        description="Currency used when a trip does not specify one"
    )
    split_tolerance_minor_units: int = Field(
        default=1,
        ge=0,
        le=1,
        description="Largest custom-split mismatch absorbed into the first share"
    )


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets remote backend configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the Google Sheets spreadsheet to use"
    )
    worksheet_prefix: str = Field(
        default="",
        description="Prefix prepended to every table's worksheet title"
    )

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """A missing key file only warns; it may be provisioned after install."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


class AppSettings(BaseSettings):
    """Deployment-wide flags."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )


class Settings(BaseSettings):
    """
    Entry point to every settings group.

    Groups are built on access, so a process that never talks to Google
    Sheets does not need its credentials configured.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def sync(self) -> SyncSettings:
        return SyncSettings()

    @property
    def local_store(self) -> LocalStoreSettings:
        return LocalStoreSettings()

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """Process-wide Settings; call get_settings.cache_clear() to reload."""
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Try to load every settings group.

    Returns {group: loaded_ok}, plus a "{group}_error" message for each
    group that failed.
    """
    results = {}

    settings = get_settings()

    for name in ("sync", "local_store", "ledger", "google_sheets", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
