"""
Shared fixtures.

No test talks to Google Sheets. The in-memory store stands in for the
remote backend; ControllableStore adds injected failures and a gate that
holds remote calls in flight so tests can look at the cache mid-operation.
"""

import asyncio
from datetime import date
from decimal import Decimal
from typing import Optional

import pytest

from gastos.audit import AuditLogger
from gastos.config import LedgerSettings
from gastos.ledger import LedgerCache, MutationCoordinator
from gastos.models.audit import AuditEvent
from gastos.models.expense import Category, ExpenseDraft
from gastos.services.storage import (
    AuditStorageInterface,
    Collection,
    InMemoryRemoteStore,
    StorageError,
)

IDENTITY = "user-alice-0001"

FOOD = Category(id="food", label="Food", emoji="\U0001F354", color="hsl(0, 70%, 55%)")
TRANSPORT = Category(id="transport", label="Transport", emoji="\U0001F697", color="hsl(210, 60%, 50%)")


class ControllableStore(InMemoryRemoteStore):
    """In-memory store whose calls can be made to fail or to wait."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._fail_on: dict[tuple[str, Collection], int] = {}
        self.gate: Optional[asyncio.Event] = None
        self.failed: list[tuple[str, Collection]] = []
        self._corrupt: set[tuple[str, Collection]] = set()

    def fail(self, op: str, collection: Collection, after: int = 0) -> None:
        """Fail the given operation once `after` calls of it have succeeded."""
        self._fail_on[(op, collection)] = after

    def corrupt(self, op: str, collection: Collection) -> None:
        """Apply the next `op` but answer with a row that does not map."""
        self._corrupt.add((op, collection))

    def heal(self) -> None:
        self._fail_on.clear()
        self._corrupt.clear()

    def _answer(self, op: str, collection: Collection, row):
        if (op, collection) not in self._corrupt:
            return row
        self._corrupt.discard((op, collection))
        mangled = dict(row)
        mangled.pop("amount" if collection is Collection.EXPENSES else "label", None)
        return mangled

    def hold(self) -> asyncio.Event:
        """Block every call until the returned event is set."""
        self.gate = asyncio.Event()
        return self.gate

    async def _check(self, op: str, collection: Collection) -> None:
        if self.gate is not None:
            await self.gate.wait()
        key = (op, collection)
        if key not in self._fail_on:
            return
        if self._fail_on[key] > 0:
            self._fail_on[key] -= 1
            return
        self.failed.append(key)
        raise StorageError(f"injected {op} failure on {collection.value}")

    async def create(self, collection, row, scope):
        await self._check("create", collection)
        return self._answer("create", collection, await super().create(collection, row, scope))

    async def update(self, collection, row_id, patch, scope):
        await self._check("update", collection)
        return self._answer("update", collection, await super().update(collection, row_id, patch, scope))

    async def delete(self, collection, row_id, scope):
        await self._check("delete", collection)
        return await super().delete(collection, row_id, scope)

    async def list(self, collection, scope):
        await self._check("list", collection)
        return await super().list(collection, scope)


class RecordingAuditStorage(AuditStorageInterface):
    """Keeps audit events in a list."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return True

    def types(self) -> list[str]:
        return [e.event_type.value for e in self.events]


def draft(amount="100", category="food", day=date(2024, 3, 1), description="") -> ExpenseDraft:
    return ExpenseDraft(
        amount=Decimal(str(amount)),
        category=category,
        date=day,
        description=description,
    )


@pytest.fixture
def ledger_settings() -> LedgerSettings:
    return LedgerSettings()


@pytest.fixture
def store() -> ControllableStore:
    return ControllableStore(shared_categories=[FOOD, TRANSPORT])


@pytest.fixture
def audit_storage() -> RecordingAuditStorage:
    return RecordingAuditStorage()


@pytest.fixture
def audit_logger(audit_storage) -> AuditLogger:
    return AuditLogger(audit_storage)


@pytest.fixture
def cache(store, audit_logger) -> LedgerCache:
    return LedgerCache(store, audit_logger)


@pytest.fixture
def coordinator(cache, store, audit_logger, ledger_settings) -> MutationCoordinator:
    return MutationCoordinator(cache, store, audit_logger=audit_logger, settings=ledger_settings)
