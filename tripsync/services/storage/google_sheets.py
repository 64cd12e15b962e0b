"""
Google Sheets Remote Backend

DESIGN DECISION: Google Sheets can act as the shared remote store because:
1. Trip members can inspect the raw data directly in Sheets
2. No database server to run
3. Built-in backup (Google's infrastructure)

TRADEOFFS:
- Not suitable for high-volume data (a trip has hundreds of rows, not millions)
- No transactions (each upsert touches exactly one row)
- No server-side timestamps (this backend stamps rows itself on write)

One worksheet per table. Every row is: id, parent_id, updated_at,
payload_json. Entities are validated against their model before they
are written, the way a real backend would reject malformed data.
"""

import asyncio
import json
from typing import Any, Optional

import gspread
import structlog
from google.oauth2.service_account import Credentials
from pydantic import ValidationError
from tenacity import retry, stop_after_attempt, wait_exponential

from tripsync.clock import LogicalClock
from tripsync.config import GoogleSheetsSettings, get_settings
from tripsync.models.entities import UnknownTableError, get_schema
from tripsync.services.storage.interface import (
    RemoteBackend,
    RemoteBackendError,
    RemoteRejectedError,
    RemoteUnavailableError,
)


logger = structlog.get_logger(__name__)


# Column layout shared by every table worksheet
ROW_COLUMNS = [
    "id",
    "parent_id",
    "updated_at",
    "payload_json",
]


def classify_error(error: Exception, action: str) -> RemoteBackendError:
    """
    Map a gspread / transport error onto the remote error taxonomy.

    429 and 5xx are transient; any other API status means the request
    itself was refused.
    """
    if isinstance(error, gspread.exceptions.APIError):
        status = error.response.status_code
        if status == 429 or status >= 500:
            return RemoteUnavailableError(f"{action} failed with HTTP {status}: {error}")
        return RemoteRejectedError(f"{action} rejected with HTTP {status}: {error}")
    return RemoteUnavailableError(f"{action} failed: {error}")


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for connecting.
    """

    def __init__(self, settings: Optional[GoogleSheetsSettings] = None):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._worksheets: dict[str, gspread.Worksheet] = {}
        self._settings = settings or get_settings().google_sheets

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise RemoteUnavailableError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise RemoteUnavailableError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise RemoteRejectedError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def get_table_sheet(self, table: str) -> gspread.Worksheet:
        """Get or create the worksheet backing a table."""
        if table not in self._worksheets:
            title = f"{self._settings.worksheet_prefix}{table}"
            spreadsheet = self.get_spreadsheet()
            try:
                sheet = spreadsheet.worksheet(title)
            except gspread.WorksheetNotFound:
                # Create the sheet with headers
                sheet = spreadsheet.add_worksheet(
                    title=title,
                    rows=1000,
                    cols=len(ROW_COLUMNS),
                )
                sheet.append_row(ROW_COLUMNS)
            self._worksheets[table] = sheet
        return self._worksheets[table]


class GoogleSheetsRemoteBackend(RemoteBackend):
    """
    Google Sheets implementation of the remote backend.

    gspread is synchronous, so every call runs in a worker thread.
    """

    def __init__(
        self,
        client: Optional[GoogleSheetsClient] = None,
        clock: Optional[LogicalClock] = None,
    ):
        self._client = client or GoogleSheetsClient()
        self._clock = clock or LogicalClock()

    @staticmethod
    def _row_to_record(row: list) -> Optional[dict[str, Any]]:
        """Convert a spreadsheet row to a record dict."""
        def safe_get(index: int, default: str = "") -> str:
            try:
                return row[index] if row[index] else default
            except IndexError:
                return default

        raw = safe_get(3)
        if not raw:
            return None
        record = json.loads(raw)
        record["updated_at"] = int(safe_get(2, "0"))
        return record

    @staticmethod
    def _find_row(rows: list[list], entity_id: str) -> Optional[int]:
        """1-based sheet row index of the entity, skipping the header."""
        for idx, row in enumerate(rows[1:], start=2):
            if row and row[0] == entity_id:
                return idx
        return None

    def _validate(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        try:
            schema = get_schema(table)
            return schema.parse(record).to_payload()
        except UnknownTableError as e:
            raise RemoteRejectedError(str(e))
        except ValidationError as e:
            raise RemoteRejectedError(f"Invalid {table} record: {e.error_count()} error(s)")

    # -------------------------------------------------------------------------
    # Blocking implementations (run in a worker thread)
    # -------------------------------------------------------------------------

    def _fetch_sync(self, table: str, entity_id: str) -> Optional[dict[str, Any]]:
        sheet = self._client.get_table_sheet(table)
        rows = sheet.get_all_values()
        idx = self._find_row(rows, entity_id)
        return self._row_to_record(rows[idx - 1]) if idx else None

    def _fetch_by_parent_sync(self, table: str, parent_id: str) -> list[dict[str, Any]]:
        sheet = self._client.get_table_sheet(table)
        records = []
        for row in sheet.get_all_values()[1:]:
            if len(row) > 1 and row[1] == parent_id:
                record = self._row_to_record(row)
                if record is not None:
                    records.append(record)
        return records

    def _upsert_sync(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        stored = self._validate(table, record)
        schema = get_schema(table)
        sheet = self._client.get_table_sheet(table)
        rows = sheet.get_all_values()
        idx = self._find_row(rows, stored["id"])

        if idx is not None:
            previous = self._row_to_record(rows[idx - 1])
            if previous is not None:
                self._clock.observe(previous["updated_at"])
        stored["updated_at"] = self._clock.now_ms()

        row = [
            stored["id"],
            schema.parent_id(stored) or "",
            str(stored["updated_at"]),
            json.dumps(stored, sort_keys=True),
        ]
        if idx is None:
            sheet.append_row(row, value_input_option="RAW")
        else:
            sheet.update(
                range_name=f"A{idx}:D{idx}",
                values=[row],
                value_input_option="RAW",
            )
        return stored

    def _delete_sync(self, table: str, entity_id: str) -> bool:
        sheet = self._client.get_table_sheet(table)
        idx = self._find_row(sheet.get_all_values(), entity_id)
        if idx is None:
            return False
        sheet.delete_rows(idx)
        return True

    async def _call(self, action: str, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except RemoteBackendError:
            raise
        except Exception as e:
            error = classify_error(e, action)
            logger.warning("sheets_call_failed", action=action, error=str(error))
            raise error from e

    # -------------------------------------------------------------------------
    # RemoteBackend
    # -------------------------------------------------------------------------

    async def fetch(self, table: str, entity_id: str) -> Optional[dict[str, Any]]:
        return await self._call("fetch", self._fetch_sync, table, entity_id)

    async def fetch_by_parent(self, table: str, parent_id: str) -> list[dict[str, Any]]:
        return await self._call("fetch_by_parent", self._fetch_by_parent_sync, table, parent_id)

    async def upsert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        return await self._call("upsert", self._upsert_sync, table, record)

    async def delete(self, table: str, entity_id: str) -> bool:
        return await self._call("delete", self._delete_sync, table, entity_id)
