"""
Ledger Cache

The authoritative in-session copy of one identity's expenses and
categories.

DESIGN DECISION: State is held as immutable tuples of frozen models and
every mutation swaps in a whole new tuple. A snapshot taken by a reader
is therefore never torn by a concurrent writer; it simply shows the
state before or after the write.

Mutation methods are synchronous and are called only by the
MutationCoordinator (writes) and by load/clear (lifecycle).
"""

from typing import Iterable, Optional

import structlog

from gastos.audit import AuditLogger
from gastos.errors import PersistenceError
from gastos.models.expense import Category, Expense, LedgerSnapshot, ScopeFilter
from gastos.services.storage import Collection, MalformedRowError, RemoteStoreInterface, StorageError
from gastos.validation import category_from_row, expense_from_row

logger = structlog.get_logger(__name__)


class LedgerCache:
    """
    Per-session ledger state for the active identity.

    Lifecycle: empty on construction, populated by load(identity),
    emptied by clear() on sign-out. Never persisted locally.
    """

    def __init__(
        self,
        store: RemoteStoreInterface,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._audit_logger = audit_logger
        self._identity: Optional[str] = None
        self._expenses: tuple[Expense, ...] = ()
        self._categories: tuple[Category, ...] = ()

    @property
    def identity(self) -> Optional[str]:
        return self._identity

    def scope(self, include_shared: bool = False) -> Optional[ScopeFilter]:
        """Scope for remote calls, None when no identity is active."""
        if self._identity is None:
            return None
        return ScopeFilter(identity=self._identity, include_shared=include_shared)

    def snapshot(self) -> LedgerSnapshot:
        """Read-only view of the current state."""
        return LedgerSnapshot.model_construct(
            expenses=self._expenses,
            categories=self._categories,
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def load(self, identity: str) -> LedgerSnapshot:
        """
        Fully replace the cache contents from the remote store.

        Each collection is fetched and replaced independently. A failed
        fetch leaves that collection's previously loaded data in place
        (unless the identity changed, in which case the cache was cleared
        first) and the load raises PersistenceError once both fetches
        have been attempted.

        Raises:
            PersistenceError: If either collection could not be fetched
        """
        if identity != self._identity:
            self.clear()
            self._identity = identity

        failures: dict[str, StorageError] = {}

        try:
            expenses = await self._fetch_expenses(identity)
        except StorageError as e:
            failures[Collection.EXPENSES.value] = e
        else:
            if self._identity == identity:
                self._expenses = expenses

        try:
            categories = await self._fetch_categories(identity)
        except StorageError as e:
            failures[Collection.CATEGORIES.value] = e
        else:
            if self._identity == identity:
                self._categories = categories

        if failures:
            message = "; ".join(f"{name}: {error}" for name, error in failures.items())
            logger.warning("ledger_load_failed", identity=identity, collections=list(failures))
            if self._audit_logger:
                await self._audit_logger.log_ledger_load_failed(
                    identity=identity,
                    collections=list(failures),
                    error_message=message,
                )
            raise PersistenceError(f"Failed to load ledger ({message})", operation="load")

        if self._audit_logger:
            await self._audit_logger.log_ledger_loaded(
                identity=identity,
                expense_count=len(self._expenses),
                category_count=len(self._categories),
            )
        return self.snapshot()

    async def _fetch_expenses(self, identity: str) -> tuple[Expense, ...]:
        rows = await self._store.list(Collection.EXPENSES, ScopeFilter(identity=identity))
        expenses = []
        for row in rows:
            try:
                expenses.append(expense_from_row(row))
            except MalformedRowError as e:
                logger.warning("skipping_malformed_row", collection="expenses", error=str(e))
        # Most recent first, as displayed
        expenses.sort(key=lambda e: e.date, reverse=True)
        return tuple(expenses)

    async def _fetch_categories(self, identity: str) -> tuple[Category, ...]:
        rows = await self._store.list(
            Collection.CATEGORIES,
            ScopeFilter(identity=identity, include_shared=True),
        )
        categories: dict[str, Category] = {}
        for row in rows:
            try:
                category = category_from_row(row)
            except MalformedRowError as e:
                logger.warning("skipping_malformed_row", collection="categories", error=str(e))
                continue
            # An identity's own category wins over a shared one with the same id
            if category.id not in categories or not category.is_shared:
                categories[category.id] = category
        return tuple(categories.values())

    def clear(self) -> None:
        """Drop all state and the active identity (sign-out)."""
        self._identity = None
        self._expenses = ()
        self._categories = ()

    # =========================================================================
    # MUTATIONS (MutationCoordinator only)
    # =========================================================================

    def index_of(self, expense_id: str) -> Optional[int]:
        for idx, expense in enumerate(self._expenses):
            if expense.id == expense_id:
                return idx
        return None

    def insert(self, expense: Expense, index: int = 0) -> None:
        """Insert an expense; index 0 is the most recent position."""
        index = max(0, min(index, len(self._expenses)))
        self._expenses = self._expenses[:index] + (expense,) + self._expenses[index:]

    def insert_before(self, expense: Expense, anchor_id: Optional[str], fallback_index: int) -> None:
        """
        Insert an expense directly ahead of another entry.

        A None anchor means the end of the list. If the anchor is no
        longer cached, fall back to a plain positional insert.
        """
        if anchor_id is None:
            index = len(self._expenses)
        else:
            index = self.index_of(anchor_id)
            if index is None:
                index = fallback_index
        self.insert(expense, index)

    def replace(self, expense_id: str, expense: Expense) -> Expense:
        """
        Swap the entry with the given ID for a new one, in place.

        Returns:
            The entry that was replaced

        Raises:
            KeyError: If no entry has that ID
        """
        idx = self.index_of(expense_id)
        if idx is None:
            raise KeyError(expense_id)
        previous = self._expenses[idx]
        self._expenses = self._expenses[:idx] + (expense,) + self._expenses[idx + 1:]
        return previous

    def remove(self, expense_id: str) -> tuple[int, Expense]:
        """
        Remove an entry.

        Returns:
            (index it occupied, removed entry), for rollback

        Raises:
            KeyError: If no entry has that ID
        """
        idx = self.index_of(expense_id)
        if idx is None:
            raise KeyError(expense_id)
        removed = self._expenses[idx]
        self._expenses = self._expenses[:idx] + self._expenses[idx + 1:]
        return idx, removed

    def remove_many(self, expense_ids: Iterable[str]) -> list[tuple[int, Expense]]:
        """Remove several entries at once, returning their original positions."""
        wanted = set(expense_ids)
        removed = [(idx, e) for idx, e in enumerate(self._expenses) if e.id in wanted]
        self._expenses = tuple(e for e in self._expenses if e.id not in wanted)
        return removed

    def insert_category(self, category: Category) -> None:
        """Add a category, replacing any existing one with the same ID."""
        others = tuple(c for c in self._categories if c.id != category.id)
        self._categories = others + (category,)

    def remove_category(self, category_id: str) -> Optional[Category]:
        removed = next((c for c in self._categories if c.id == category_id), None)
        if removed is not None:
            self._categories = tuple(c for c in self._categories if c.id != category_id)
        return removed
