"""
Google Sheets Remote Store Implementation

DESIGN DECISION: Google Sheets is used as the remote store because:
1. Users can view their expenses directly in Sheets
2. No database setup required
3. Built-in backup (Google's infrastructure)
4. Easy to export/migrate later

TRADEOFFS:
- Not suitable for high-volume data (we're fine for personal use)
- No transactions (the ledger's rollback covers that on our side)
- Limited query capabilities (we filter in Python)

Retry policy lives here, not in the ledger: transient API failures are
retried with exponential back-off; not-found and duplicate errors are not.
gspread is synchronous, so every call runs in a worker thread.
"""

import asyncio
from datetime import datetime
from typing import Any, Callable, Iterable, Optional
from uuid import uuid4

import gspread
import structlog
from google.oauth2.service_account import Credentials
from tenacity import (
    AsyncRetrying,
    retry,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from gastos.config import get_settings
from gastos.models.audit import AuditEvent
from gastos.models.expense import Category, ScopeFilter
from gastos.services.storage.interface import (
    AuditStorageInterface,
    Collection,
    ConnectionError,
    DuplicateError,
    MalformedRowError,
    NotFoundError,
    RemoteStoreInterface,
    Row,
    StorageError,
)


# Column mappings per collection
EXPENSE_COLUMNS = [
    "id",
    "user_id",
    "amount",
    "category",
    "date",
    "description",
    "created_at",
]

CATEGORY_COLUMNS = [
    "id",
    "user_id",
    "label",
    "emoji",
    "color",
    "created_at",
]

AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "identity",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
    "is_user_action",
]

COLUMNS = {
    Collection.EXPENSES: EXPENSE_COLUMNS,
    Collection.CATEGORIES: CATEGORY_COLUMNS,
}

# Errors a retry cannot fix
_PERMANENT_ERRORS = (NotFoundError, DuplicateError, MalformedRowError)

logger = structlog.get_logger(__name__)


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and worksheet bootstrapping.
    """

    def __init__(self):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = get_settings().google_sheets

    @property
    def retry_attempts(self) -> int:
        return self._settings.retry_attempts

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
                raise ConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Google Sheets: {e}")

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
                raise ConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def _get_or_create(self, title: str, columns: list[str], rows: int) -> gspread.Worksheet:
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            # Create the sheet with headers
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=rows,
                cols=len(columns),
            )
            sheet.append_row(columns)
        return sheet

    def get_collection_sheet(self, collection: Collection) -> gspread.Worksheet:
        """Get or create the worksheet backing a collection."""
        if collection is Collection.EXPENSES:
            title = self._settings.expenses_sheet_name
        else:
            title = self._settings.categories_sheet_name
        return self._get_or_create(title, COLUMNS[collection], rows=1000)

    def get_audit_sheet(self) -> gspread.Worksheet:
        """Get or create the Audit worksheet."""
        return self._get_or_create(
            self._settings.audit_sheet_name,
            AUDIT_COLUMNS,
            rows=5000,  # More rows for audit log
        )


class GoogleSheetsRemoteStore(RemoteStoreInterface):
    """
    Google Sheets implementation of the remote store.

    One worksheet per collection, one row per entity, header row first.
    Ownership is the user_id column; shared rows leave it blank.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    async def _run(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking sheet operation with retries, mapping failures to StorageError."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._client.retry_attempts),
                wait=wait_exponential(multiplier=1, min=2, max=10),
                retry=retry_if_not_exception_type(_PERMANENT_ERRORS),
                reraise=True,
            ):
                with attempt:
                    return await asyncio.to_thread(func, *args)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to {operation}: {e}") from e

    @staticmethod
    def _to_row(collection: Collection, values: list) -> Row:
        """Convert a spreadsheet row to a dict keyed by column name."""
        columns = COLUMNS[collection]
        padded = list(values) + [""] * (len(columns) - len(values))
        row = dict(zip(columns, padded))
        row["user_id"] = row["user_id"] or None
        return row

    @staticmethod
    def _to_values(collection: Collection, row: Row) -> list:
        """Convert a dict to a spreadsheet row in column order."""
        return [
            "" if row.get(column) is None else str(row.get(column))
            for column in COLUMNS[collection]
        ]

    def _find(self, sheet: gspread.Worksheet, collection: Collection, row_id: str) -> tuple[int, Row]:
        """Locate a row by ID. Returns (1-based sheet index, row)."""
        all_rows = sheet.get_all_values()
        for idx, values in enumerate(all_rows[1:], start=2):  # Row 1 is header
            if values and values[0] == row_id:
                return idx, self._to_row(collection, values)
        raise NotFoundError(f"{collection.value} row not found: {row_id}")

    def _create_sync(self, collection: Collection, row: Row, scope: ScopeFilter) -> Row:
        sheet = self._client.get_collection_sheet(collection)
        stored = dict(row)
        if collection is Collection.EXPENSES:
            stored["id"] = uuid4().hex
        elif not stored.get("id"):
            raise MalformedRowError("Category rows must carry an id")
        else:
            existing_ids = sheet.col_values(1)[1:]
            if stored["id"] in existing_ids:
                raise DuplicateError(f"{collection.value} row already exists: {stored['id']}")

        stored["user_id"] = scope.identity
        stored["created_at"] = datetime.utcnow().isoformat()
        sheet.append_row(self._to_values(collection, stored), value_input_option="RAW")
        return self._to_row(collection, self._to_values(collection, stored))

    def _update_sync(
        self,
        collection: Collection,
        row_id: str,
        patch: Row,
        scope: ScopeFilter,
    ) -> Row:
        sheet = self._client.get_collection_sheet(collection)
        idx, current = self._find(sheet, collection, row_id)
        if current["user_id"] != scope.identity:
            raise NotFoundError(f"{collection.value} row not found: {row_id}")

        changes = {k: v for k, v in patch.items() if k not in ("id", "user_id")}
        current.update(changes)
        values = self._to_values(collection, current)
        sheet.batch_update([{"range": f"A{idx}", "values": [values]}], value_input_option="RAW")
        return self._to_row(collection, values)

    def _delete_sync(self, collection: Collection, row_id: str, scope: ScopeFilter) -> bool:
        sheet = self._client.get_collection_sheet(collection)
        try:
            idx, current = self._find(sheet, collection, row_id)
        except NotFoundError:
            return False
        if current["user_id"] != scope.identity:
            raise NotFoundError(f"{collection.value} row not owned by caller: {row_id}")
        sheet.delete_rows(idx)
        return True

    def _seed_sync(self, categories: Iterable[Category]) -> int:
        sheet = self._client.get_collection_sheet(Collection.CATEGORIES)
        existing_ids = set(sheet.col_values(1)[1:])
        created_at = datetime.utcnow().isoformat()
        values = []
        for category in categories:
            if category.id in existing_ids:
                continue
            row = category.model_dump(exclude={"owner"})
            row["created_at"] = created_at
            values.append(self._to_values(Collection.CATEGORIES, row))
            existing_ids.add(category.id)
        if values:
            sheet.append_rows(values, value_input_option="RAW")
        return len(values)

    def _list_sync(self, collection: Collection, scope: ScopeFilter) -> list[Row]:
        sheet = self._client.get_collection_sheet(collection)
        rows = []
        for values in sheet.get_all_values()[1:]:  # Skip header
            if not values or not values[0]:  # Skip empty rows
                continue
            row = self._to_row(collection, values)
            if scope.matches(row["user_id"]):
                rows.append(row)

        # Newest first
        rows.sort(key=lambda r: r.get("created_at") or "", reverse=True)
        return rows

    async def create(self, collection: Collection, row: Row, scope: ScopeFilter) -> Row:
        """Append a row owned by the scope's identity."""
        return await self._run(f"create {collection.value} row", self._create_sync, collection, row, scope)

    async def update(
        self,
        collection: Collection,
        row_id: str,
        patch: Row,
        scope: ScopeFilter,
    ) -> Row:
        """Rewrite an owned row with the patch applied."""
        return await self._run(
            f"update {collection.value} row",
            self._update_sync,
            collection,
            row_id,
            patch,
            scope,
        )

    async def delete(self, collection: Collection, row_id: str, scope: ScopeFilter) -> bool:
        """Delete an owned row."""
        return await self._run(f"delete {collection.value} row", self._delete_sync, collection, row_id, scope)

    async def seed_shared_categories(self, categories: Iterable[Category]) -> int:
        """Append shared categories missing from the sheet, in one write."""
        return await self._run("seed shared categories", self._seed_sync, list(categories))

    async def list(self, collection: Collection, scope: ScopeFilter) -> list[Row]:
        """List every row visible to the scope."""
        return await self._run(f"list {collection.value}", self._list_sync, collection, scope)


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _append_sync(self, event: AuditEvent) -> None:
        sheet = self._client.get_audit_sheet()
        sheet.append_row(event.to_sheets_row(), value_input_option="RAW")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _append(self, event: AuditEvent) -> None:
        await asyncio.to_thread(self._append_sync, event)

    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            await self._append(event)
            return True
        except Exception as e:
            # Don't raise - audit logging should not break the main flow
            logger.warning(
                "audit_append_failed",
                error=str(e),
                event_id=str(event.event_id),
            )
            return False
