"""
Abstract Remote Store Interface

DESIGN DECISION: The ledger talks to its backend only through this interface.
This allows us to:
1. Swap Google Sheets for a hosted database later
2. Use in-memory storage for testing
3. Keep identity logic out of the ledger (the caller hands us a scope)

Rows crossing this boundary are plain dicts. They are mapped to typed
models by gastos.validation before they ever reach the ledger cache.

The interface is intentionally simple - we're not building a full ORM.
Four operations over two collections is all the ledger needs.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Iterable

from gastos.models.audit import AuditEvent
from gastos.models.expense import Category, ScopeFilter


Row = dict[str, Any]


class Collection(str, Enum):
    """Collections held by the remote store."""
    EXPENSES = "expenses"
    CATEGORIES = "categories"


class RemoteStoreInterface(ABC):
    """
    Abstract interface for the remote persistent store.

    Any backend (Google Sheets, a hosted database, memory) must
    implement these methods. Every call is scoped by a ScopeFilter;
    rows created through a scope are owned by its identity.
    """

    @abstractmethod
    async def list(self, collection: Collection, scope: ScopeFilter) -> list[Row]:
        """
        List every row of a collection visible to the scope.

        Args:
            collection: Which collection to read
            scope: Identity filter

        Returns:
            Raw rows

        Raises:
            StorageError: If the read fails
        """
        pass

    @abstractmethod
    async def create(self, collection: Collection, row: Row, scope: ScopeFilter) -> Row:
        """
        Create a row.

        Expense rows get their definitive ID from the store. Category
        rows carry their own ID and are rejected if it is taken.

        Args:
            collection: Target collection
            row: Field values for the new row
            scope: Identity the row will belong to

        Returns:
            The stored row, including store-assigned and normalized fields

        Raises:
            DuplicateError: If the row ID already exists
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def update(
        self,
        collection: Collection,
        row_id: str,
        patch: Row,
        scope: ScopeFilter,
    ) -> Row:
        """
        Update fields of an existing row owned by the scope.

        Returns:
            The stored row after the update

        Raises:
            NotFoundError: If no such row is visible to the scope
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def delete(self, collection: Collection, row_id: str, scope: ScopeFilter) -> bool:
        """
        Delete a row owned by the scope.

        Returns:
            True if a row was deleted, False if it did not exist

        Raises:
            StorageError: If the delete fails
        """
        pass

    @abstractmethod
    async def seed_shared_categories(self, categories: Iterable[Category]) -> int:
        """
        Write shared (ownerless) categories that are not stored yet.

        Returns:
            Number of categories written

        Raises:
            StorageError: If the write fails
        """
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass


class MalformedRowError(StorageError):
    """A row returned by the store does not map to a valid entity."""
    pass
