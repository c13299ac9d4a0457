"""
Main Orchestrator for Gastos

This module ties the ledger components together into one session object
with an explicit lifecycle:

    session = LedgerSession(store, audit_logger)
    await session.init(identity)  # sign-in: full load
    await session.coordinator.add_expense(...)  # writes
    session.stats(Period.MONTH)  # reads
    await session.teardown()  # sign-out: drop everything

DESIGN DECISION: The session does not decide WHO is signed in. The auth
collaborator reports identity transitions through on_identity_changed();
the session only reacts to them.

It also owns the displayed month. The month and year periods and the
calendar follow that cursor, not the real current month.
"""

import logging
from datetime import date
from typing import Callable, Optional

import structlog

from gastos.analytics import CalendarBucketer, aggregate
from gastos.audit import AuditLogger
from gastos.config import LedgerSettings, get_settings
from gastos.errors import ValidationError
from gastos.ledger import LedgerCache, MutationCoordinator
from gastos.models.expense import (
    DEFAULT_CATEGORIES,
    CalendarMonth,
    LedgerSnapshot,
    MonthCursor,
    Period,
    PeriodStats,
)
from gastos.services.storage import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsRemoteStore,
    InMemoryRemoteStore,
    RemoteStoreInterface,
)

logger = structlog.get_logger(__name__)


class LedgerSession:
    """
    One signed-in user's ledger, from sign-in to sign-out.

    Holds:
    - cache: the Ledger Cache for the active identity
    - coordinator: the only way to mutate it
    - the displayed month cursor used by reads
    """

    def __init__(
        self,
        store: RemoteStoreInterface,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
        today: Callable[[], date] = date.today,
    ):
        self._settings = settings or get_settings().ledger
        self._audit_logger = audit_logger
        self._today = today

        self.cache = LedgerCache(store, audit_logger)
        self.coordinator = MutationCoordinator(
            self.cache,
            store,
            audit_logger=audit_logger,
            settings=self._settings,
        )
        self.bucketer = CalendarBucketer(self._settings)
        self._cursor = MonthCursor.from_date(today())

    @property
    def identity(self) -> Optional[str]:
        return self.cache.identity

    @property
    def cursor(self) -> MonthCursor:
        return self._cursor

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def init(self, identity: str) -> LedgerSnapshot:
        """
        Load the ledger for an identity.

        Raises:
            PersistenceError: If the store could not be read
        """
        logger.info("session_init", identity=identity)
        return await self.cache.load(identity)

    async def on_identity_changed(self, identity: Optional[str]) -> Optional[LedgerSnapshot]:
        """
        React to the auth collaborator's identity transitions.

        None means signed out. The same identity again is a no-op.
        """
        if identity is None:
            await self.teardown()
            return None
        if identity == self.cache.identity:
            return self.cache.snapshot()
        return await self.init(identity)

    async def refresh(self) -> LedgerSnapshot:
        """Reload the active identity's ledger from the store."""
        if self.cache.identity is None:
            raise ValidationError("No active identity; sign in first")
        return await self.cache.load(self.cache.identity)

    async def teardown(self) -> None:
        """Drop all ledger state (sign-out)."""
        identity = self.cache.identity
        self.cache.clear()
        logger.info("session_teardown", identity=identity)
        if self._audit_logger:
            await self._audit_logger.log_ledger_cleared(identity)

    def snapshot(self) -> LedgerSnapshot:
        return self.cache.snapshot()

    # =========================================================================
    # DISPLAYED MONTH
    # =========================================================================

    def show_previous_month(self) -> MonthCursor:
        self._cursor = self._cursor.previous()
        return self._cursor

    def show_next_month(self) -> MonthCursor:
        self._cursor = self._cursor.next()
        return self._cursor

    def show_month(self, month: int, year: int) -> MonthCursor:
        self._cursor = MonthCursor(month=month, year=year)
        return self._cursor

    def show_current_month(self) -> MonthCursor:
        self._cursor = MonthCursor.from_date(self._today())
        return self._cursor

    # =========================================================================
    # READS
    # =========================================================================

    def stats(self, period: Period, reference_date: Optional[date] = None) -> PeriodStats:
        """Period totals over the current snapshot."""
        snapshot = self.cache.snapshot()
        return aggregate(
            snapshot.expenses,
            period,
            reference_date or self._today(),
            self._cursor.month,
            self._cursor.year,
            categories=snapshot.categories,
        )

    def calendar(self, cursor: Optional[MonthCursor] = None) -> CalendarMonth:
        """Calendar for the displayed month (or the given one)."""
        return self.bucketer.build(self.cache.snapshot().expenses, cursor or self._cursor)


async def seed_default_categories(store: RemoteStoreInterface) -> int:
    """
    Make sure the shared default categories exist in the store.

    Returns:
        Number of categories written (0 when all were present)
    """
    written = await store.seed_shared_categories(DEFAULT_CATEGORIES)
    logger.info("default_categories_seeded", written=written)
    return written


def create_app_components(
    use_storage: bool = True,
) -> tuple[LedgerSession, Optional[GoogleSheetsClient]]:
    """
    Factory function to create all application components.

    Args:
        use_storage: Whether to use Google Sheets as the remote store.
                    Set to False to run against an in-memory store.

    Returns:
        (session, sheets_client)
    """
    logging.basicConfig(level=get_settings().app.log_level)

    sheets_client = None
    store: RemoteStoreInterface

    if use_storage:
        try:
            sheets_client = GoogleSheetsClient()
            store = GoogleSheetsRemoteStore(sheets_client)
            audit_logger = AuditLogger(GoogleSheetsAuditStorage(sheets_client))
        except Exception as e:
            # Storage not configured - continue in memory
            logger.warning("storage_not_configured", error=str(e))
            sheets_client = None
            store = InMemoryRemoteStore(DEFAULT_CATEGORIES)
            audit_logger = AuditLogger()  # Local-only logging
    else:
        store = InMemoryRemoteStore(DEFAULT_CATEGORIES)
        audit_logger = AuditLogger()  # Local-only logging

    session = LedgerSession(store, audit_logger=audit_logger)
    return session, sheets_client
