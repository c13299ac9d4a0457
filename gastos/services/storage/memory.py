"""
In-Memory Remote Store

Behaves like a remote backend (assigns IDs, normalizes fields, enforces
scope and uniqueness) without any network. Used by the test suite and
when Google Sheets is not configured.
"""

import asyncio
from copy import deepcopy
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Iterable
from uuid import uuid4

from gastos.models.expense import Category, ScopeFilter
from gastos.services.storage.interface import (
    Collection,
    DuplicateError,
    NotFoundError,
    RemoteStoreInterface,
    Row,
    StorageError,
)


class InMemoryRemoteStore(RemoteStoreInterface):
    """
    Dict-backed store.

    Each call yields to the event loop once, so callers observe the same
    interleavings they would against a real backend.
    """

    def __init__(self, shared_categories: Iterable[Category] = ()):
        self._rows: dict[Collection, dict[str, Row]] = {
            Collection.EXPENSES: {},
            Collection.CATEGORIES: {},
        }
        for category in shared_categories:
            self._rows[Collection.CATEGORIES][category.id] = self._shared_row(category)
        self.calls: list[tuple[str, Collection]] = []

    @staticmethod
    def _shared_row(category: Category) -> Row:
        row = category.model_dump(exclude={"owner"})
        row["user_id"] = None
        row["created_at"] = datetime.utcnow().isoformat()
        return row

    def _owned(self, collection: Collection, row_id: str, scope: ScopeFilter) -> Row:
        row = self._rows[collection].get(row_id)
        if row is None or row.get("user_id") != scope.identity:
            raise NotFoundError(f"{collection.value} row not found: {row_id}")
        return row

    @staticmethod
    def _normalize(collection: Collection, row: Row) -> Row:
        """Normalize field formats the way a database column would."""
        if collection is Collection.EXPENSES and "amount" in row:
            try:
                row["amount"] = str(Decimal(str(row["amount"])).quantize(Decimal("0.01")))
            except InvalidOperation:
                raise StorageError(f"Invalid amount: {row['amount']!r}")
        if collection is Collection.EXPENSES and "description" in row:
            row["description"] = (row["description"] or "").strip()
        return row

    async def create(self, collection: Collection, row: Row, scope: ScopeFilter) -> Row:
        await asyncio.sleep(0)
        self.calls.append(("create", collection))

        stored = self._normalize(collection, deepcopy(row))
        if collection is Collection.EXPENSES:
            stored["id"] = uuid4().hex
        elif not stored.get("id"):
            raise StorageError("Category rows must carry an id")
        if stored["id"] in self._rows[collection]:
            raise DuplicateError(f"{collection.value} row already exists: {stored['id']}")

        stored["user_id"] = scope.identity
        stored["created_at"] = datetime.utcnow().isoformat()
        self._rows[collection][stored["id"]] = stored
        return deepcopy(stored)

    async def update(
        self,
        collection: Collection,
        row_id: str,
        patch: Row,
        scope: ScopeFilter,
    ) -> Row:
        await asyncio.sleep(0)
        self.calls.append(("update", collection))

        stored = self._owned(collection, row_id, scope)
        changes = self._normalize(collection, deepcopy(patch))
        changes.pop("id", None)
        changes.pop("user_id", None)
        stored.update(changes)
        return deepcopy(stored)

    async def delete(self, collection: Collection, row_id: str, scope: ScopeFilter) -> bool:
        await asyncio.sleep(0)
        self.calls.append(("delete", collection))

        if row_id not in self._rows[collection]:
            return False
        self._owned(collection, row_id, scope)
        del self._rows[collection][row_id]
        return True

    async def seed_shared_categories(self, categories: Iterable[Category]) -> int:
        await asyncio.sleep(0)
        self.calls.append(("seed", Collection.CATEGORIES))

        written = 0
        for category in categories:
            if category.id not in self._rows[Collection.CATEGORIES]:
                self._rows[Collection.CATEGORIES][category.id] = self._shared_row(category)
                written += 1
        return written

    async def list(self, collection: Collection, scope: ScopeFilter) -> list[Row]:
        await asyncio.sleep(0)
        self.calls.append(("list", collection))

        rows = [
            deepcopy(row)
            for row in self._rows[collection].values()
            if scope.matches(row.get("user_id"))
        ]
        rows.sort(key=lambda r: r.get("created_at") or "", reverse=True)
        return rows

    def row_count(self, collection: Collection) -> int:
        """Total rows in a collection, across all identities."""
        return len(self._rows[collection])
