"""
Mutation Coordinator

Every write to the ledger goes through here.

Flow for expense mutations:
1. Validate → reject with ValidationError, nothing touched
2. Apply optimistically to the cache (synchronous, before any await)
3. Call the remote store
4. Reconcile → swap in the store-confirmed entity
   or roll back → restore the exact pre-operation state

Category mutations are NOT optimistic: a new category only appears after
the store accepts it, and a delete is checked by the integrity guard
before any remote call is made.

DESIGN DECISION: Operations return a MutationResult instead of raising.
A failed result has already been rolled back; the presentation layer
only decides how to tell the user. No automatic retries happen here -
retry policy belongs to the store adapter.

If the store accepts a write but its confirmation row cannot be mapped,
the remote write is undone before the cache is rolled back, so the two
never disagree about a change the user was told had failed.

CONCURRENCY: Mutations of the same expense ID are serialized with a
per-ID asyncio lock, so two reconciliations for one entity can never
interleave. While a category delete is in flight, no expense may be
pointed at that category. Values that an in-flight mutation would put
back on rollback count as references for the integrity check.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Optional, Sequence, Union
from uuid import UUID, uuid4

import structlog
from pydantic import BaseModel, ConfigDict

from gastos.audit import AuditLogger, create_correlation_id
from gastos.config import LedgerSettings, get_settings
from gastos.errors import ConstraintViolation, LedgerError, PersistenceError, ValidationError
from gastos.ledger.cache import LedgerCache
from gastos.ledger.integrity import can_delete_category, referencing_expenses
from gastos.models.expense import Category, CategoryDraft, Expense, ExpenseDraft
from gastos.services.storage import Collection, RemoteStoreInterface, StorageError
from gastos.validation import (
    DraftValidator,
    category_from_row,
    category_to_row,
    derive_category_id,
    expense_from_row,
    expense_to_row,
)

logger = structlog.get_logger(__name__)


class MutationResult(BaseModel):
    """
    Outcome of one ledger mutation.

    Either ok with the committed entity, or failed with the error and
    any rollback already applied to the cache.
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    operation: str
    entity: Optional[Union[Expense, Category]] = None
    error: Optional[LedgerError] = None
    rolled_back: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Optional[Union[Expense, Category]]:
        """Return the committed entity, or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.entity


class MutationCoordinator:
    """
    Applies add/update/delete operations to the ledger cache and mirrors
    them to the remote store with strict commit-or-rollback semantics.
    """

    def __init__(
        self,
        cache: LedgerCache,
        store: RemoteStoreInterface,
        validator: Optional[DraftValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self._cache = cache
        self._store = store
        self._settings = settings or get_settings().ledger
        self._validator = validator or DraftValidator(self._settings)
        self._audit_logger = audit_logger

        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._pending_category_deletes: set[str] = set()
        # Entries an in-flight mutation restores if its remote call fails
        self._rollback_values: dict[str, Expense] = {}

    # =========================================================================
    # HELPERS
    # =========================================================================

    def is_provisional(self, expense_id: str) -> bool:
        """True for a temporary ID whose create call has not reconciled yet."""
        return expense_id.startswith(self._settings.temp_id_prefix)

    def _new_temp_id(self) -> str:
        return f"{self._settings.temp_id_prefix}{uuid4().hex[:12]}"

    @asynccontextmanager
    async def _serialized(self, entity_id: str) -> AsyncIterator[None]:
        """Hold the per-entity lock; the lock is dropped once nobody uses it."""
        lock = self._locks.setdefault(entity_id, asyncio.Lock())
        self._lock_users[entity_id] = self._lock_users.get(entity_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[entity_id] -= 1
            if not self._lock_users[entity_id]:
                del self._lock_users[entity_id]
                del self._locks[entity_id]

    def _is_active(self, identity: str) -> bool:
        """The identity a mutation started under is still the cache's identity."""
        return self._cache.identity == identity

    def _follower_id(self, index: int) -> Optional[str]:
        """ID of the cache entry now at `index`, i.e. the one after a removed entry."""
        expenses = self._cache.snapshot().expenses
        return expenses[index].id if index < len(expenses) else None

    def _restore_in_order(self, original: Sequence[Expense], restore: dict[str, Expense]) -> None:
        """
        Put removed entries back in their original order.

        Walks the pre-removal list backwards and inserts each entry ahead
        of the nearest following entry still in the cache, so entries
        added meanwhile do not shift the restored ones.
        """
        anchor: Optional[str] = None
        for idx in range(len(original) - 1, -1, -1):
            expense_id = original[idx].id
            if expense_id in restore:
                self._cache.insert_before(restore[expense_id], anchor, idx)
                anchor = expense_id
            elif self._cache.index_of(expense_id) is not None:
                anchor = expense_id

    async def _undo_remote(self, operation: str, entity_id: Optional[str], undo: Awaitable) -> bool:
        """Revert a remote write whose confirmation could not be used."""
        try:
            await undo
        except StorageError as e:
            logger.error("remote_undo_failed", operation=operation, entity_id=entity_id, error=str(e))
            return False
        logger.info("remote_write_undone", operation=operation, entity_id=entity_id)
        return True

    async def _reject(
        self,
        operation: str,
        error: LedgerError,
        correlation_id: UUID,
        entity_id: Optional[str] = None,
    ) -> MutationResult:
        """Fail without having touched the cache or the store."""
        logger.info("mutation_rejected", operation=operation, error=str(error), entity_id=entity_id)
        if self._audit_logger:
            if isinstance(error, ConstraintViolation):
                await self._audit_logger.log_constraint_violation(
                    operation=operation,
                    entity_id=error.entity_id or entity_id or "",
                    error_message=str(error),
                    correlation_id=correlation_id,
                    details={"reference_count": error.reference_count},
                )
            else:
                await self._audit_logger.log_validation_rejected(
                    operation=operation,
                    error_message=str(error),
                    correlation_id=correlation_id,
                    entity_id=entity_id,
                )
        return MutationResult(operation=operation, error=error)

    async def _persistence_failure(
        self,
        operation: str,
        entity_type: str,
        entity_id: Optional[str],
        cause: StorageError,
        rolled_back: bool,
        correlation_id: UUID,
        identity: Optional[str],
    ) -> MutationResult:
        """Fail after the store rejected the call; rollback already applied."""
        logger.warning(
            "mutation_persistence_failed",
            operation=operation,
            entity_id=entity_id,
            identity=identity,
            rolled_back=rolled_back,
            error=str(cause),
        )
        if self._audit_logger:
            await self._audit_logger.log_persistence_failed(
                operation=operation,
                entity_type=entity_type,
                entity_id=entity_id,
                error_message=str(cause),
                rolled_back=rolled_back,
                correlation_id=correlation_id,
                identity=identity,
            )
        error = PersistenceError(f"Could not save changes: {cause}", operation=operation)
        error.__cause__ = cause
        return MutationResult(operation=operation, error=error, rolled_back=rolled_back)

    def _no_identity(self) -> ValidationError:
        return ValidationError("No active identity; sign in first")

    # =========================================================================
    # EXPENSES
    # =========================================================================

    async def add_expense(
        self,
        draft: ExpenseDraft,
        correlation_id: Optional[UUID] = None,
    ) -> MutationResult:
        """
        Add an expense optimistically.

        The draft appears in the cache under a provisional ID at once and
        is swapped for the store-confirmed entry when the create call
        succeeds. On failure the provisional entry is removed again.
        """
        operation = "add_expense"
        correlation_id = correlation_id or create_correlation_id()

        scope = self._cache.scope()
        if scope is None:
            return await self._reject(operation, self._no_identity(), correlation_id)
        try:
            self._validator.validate_expense(draft)
        except ValidationError as e:
            return await self._reject(operation, e, correlation_id)
        if draft.category in self._pending_category_deletes:
            return await self._reject(
                operation,
                ConstraintViolation(
                    f"Category {draft.category!r} is being deleted",
                    entity_id=draft.category,
                ),
                correlation_id,
            )

        provisional = draft.to_expense(self._new_temp_id())
        self._cache.insert(provisional)

        async with self._serialized(provisional.id):
            row = None
            try:
                row = await self._store.create(Collection.EXPENSES, expense_to_row(draft), scope)
                confirmed = expense_from_row(row)
            except StorageError as e:
                if row is not None and row.get("id"):
                    await self._undo_remote(
                        operation,
                        row["id"],
                        self._store.delete(Collection.EXPENSES, str(row["id"]), scope),
                    )
                if self._is_active(scope.identity):
                    self._cache.remove(provisional.id)
                return await self._persistence_failure(
                    operation, "expense", provisional.id, e, True, correlation_id, scope.identity
                )

            if self._is_active(scope.identity):
                self._cache.replace(provisional.id, confirmed)

        if self._audit_logger:
            await self._audit_logger.log_expense_added(
                expense_id=confirmed.id,
                amount=str(confirmed.amount),
                category=confirmed.category,
                identity=scope.identity,
                correlation_id=correlation_id,
            )
        return MutationResult(operation=operation, entity=confirmed)

    async def update_expense(
        self,
        expense_id: str,
        draft: ExpenseDraft,
        correlation_id: Optional[UUID] = None,
    ) -> MutationResult:
        """
        Replace an expense's fields optimistically.

        Readers see the draft (under the same ID) immediately. On failure
        the previous value of the entry is restored.
        """
        operation = "update_expense"
        correlation_id = correlation_id or create_correlation_id()

        scope = self._cache.scope()
        if scope is None:
            return await self._reject(operation, self._no_identity(), correlation_id, expense_id)
        try:
            self._validator.validate_expense(draft)
        except ValidationError as e:
            return await self._reject(operation, e, correlation_id, expense_id)

        async with self._serialized(expense_id):
            if draft.category in self._pending_category_deletes:
                return await self._reject(
                    operation,
                    ConstraintViolation(
                        f"Category {draft.category!r} is being deleted",
                        entity_id=draft.category,
                    ),
                    correlation_id,
                    expense_id,
                )

            previous = self._cache.snapshot().get_expense(expense_id)
            if previous is None:
                return await self._reject(
                    operation,
                    ValidationError(f"Expense not found: {expense_id}", field="id"),
                    correlation_id,
                    expense_id,
                )

            self._cache.replace(expense_id, draft.to_expense(expense_id))
            self._rollback_values[expense_id] = previous
            try:
                row = None
                try:
                    row = await self._store.update(
                        Collection.EXPENSES, expense_id, expense_to_row(draft), scope
                    )
                    confirmed = expense_from_row(row)
                except StorageError as e:
                    if row is not None:
                        await self._undo_remote(
                            operation,
                            expense_id,
                            self._store.update(
                                Collection.EXPENSES, expense_id, expense_to_row(previous), scope
                            ),
                        )
                    if self._is_active(scope.identity):
                        self._cache.replace(expense_id, previous)
                    return await self._persistence_failure(
                        operation, "expense", expense_id, e, True, correlation_id, scope.identity
                    )

                if self._is_active(scope.identity):
                    self._cache.replace(expense_id, confirmed)
            finally:
                self._rollback_values.pop(expense_id, None)

        if self._audit_logger:
            await self._audit_logger.log_expense_updated(
                expense_id=expense_id,
                amount=str(confirmed.amount),
                category=confirmed.category,
                identity=scope.identity,
                correlation_id=correlation_id,
            )
        return MutationResult(operation=operation, entity=confirmed)

    async def delete_expense(
        self,
        expense_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> MutationResult:
        """
        Remove an expense optimistically.

        On failure the entry is re-inserted ahead of the entry that
        followed it, or at its old position if that entry is gone.
        """
        operation = "delete_expense"
        correlation_id = correlation_id or create_correlation_id()

        scope = self._cache.scope()
        if scope is None:
            return await self._reject(operation, self._no_identity(), correlation_id, expense_id)

        async with self._serialized(expense_id):
            try:
                index, removed = self._cache.remove(expense_id)
            except KeyError:
                return await self._reject(
                    operation,
                    ValidationError(f"Expense not found: {expense_id}", field="id"),
                    correlation_id,
                    expense_id,
                )
            follower = self._follower_id(index)

            self._rollback_values[expense_id] = removed
            try:
                deleted = await self._store.delete(Collection.EXPENSES, expense_id, scope)
            except StorageError as e:
                if self._is_active(scope.identity):
                    self._cache.insert_before(removed, follower, index)
                return await self._persistence_failure(
                    operation, "expense", expense_id, e, True, correlation_id, scope.identity
                )
            finally:
                self._rollback_values.pop(expense_id, None)

        if not deleted:
            logger.warning("expense_missing_in_store", expense_id=expense_id)
        if self._audit_logger:
            await self._audit_logger.log_expense_deleted(
                expense_id=expense_id,
                identity=scope.identity,
                correlation_id=correlation_id,
            )
        return MutationResult(operation=operation, entity=removed)

    async def clear_expenses(self, correlation_id: Optional[UUID] = None) -> MutationResult:
        """
        Delete every confirmed expense of the active identity.

        Entries with a mutation in flight (including provisional ones) are
        left alone. The cache is emptied optimistically; if a remote delete
        fails, every entry that still exists remotely is restored in its
        original order.
        """
        operation = "clear_expenses"
        correlation_id = correlation_id or create_correlation_id()

        scope = self._cache.scope()
        if scope is None:
            return await self._reject(operation, self._no_identity(), correlation_id)

        original = self._cache.snapshot().expenses
        targets = [
            e.id
            for e in original
            if not self.is_provisional(e.id) and e.id not in self._locks
        ]
        removed = self._cache.remove_many(targets)
        pending = {expense.id: expense for _, expense in removed}
        self._rollback_values.update(pending)
        deleted_count = 0

        try:
            for _, expense in removed:
                try:
                    await self._store.delete(Collection.EXPENSES, expense.id, scope)
                except StorageError as e:
                    if self._is_active(scope.identity):
                        self._restore_in_order(original, pending)
                    return await self._persistence_failure(
                        operation, "ledger", None, e, True, correlation_id, scope.identity
                    )
                del pending[expense.id]
                self._rollback_values.pop(expense.id, None)
                deleted_count += 1
        finally:
            for expense_id in pending:
                self._rollback_values.pop(expense_id, None)

        if self._audit_logger:
            await self._audit_logger.log_expenses_cleared(
                deleted_count=deleted_count,
                identity=scope.identity,
                correlation_id=correlation_id,
            )
        return MutationResult(operation=operation)

    # =========================================================================
    # CATEGORIES
    # =========================================================================

    async def add_category(
        self,
        draft: CategoryDraft,
        correlation_id: Optional[UUID] = None,
    ) -> MutationResult:
        """
        Create a category.

        The ID is derived from the label plus an identity suffix. The
        category enters the cache only after the store confirms it, so an
        ID collision is caught remotely before anyone sees it.
        """
        operation = "add_category"
        correlation_id = correlation_id or create_correlation_id()

        scope = self._cache.scope()
        if scope is None:
            return await self._reject(operation, self._no_identity(), correlation_id)
        try:
            self._validator.validate_category(draft)
        except ValidationError as e:
            return await self._reject(operation, e, correlation_id)

        category = Category(
            id=derive_category_id(draft.label, scope.identity, self._settings.identity_suffix_length),
            label=draft.label,
            emoji=draft.emoji,
            color=draft.color,
            owner=scope.identity,
        )
        row = None
        try:
            row = await self._store.create(Collection.CATEGORIES, category_to_row(category), scope)
            confirmed = category_from_row(row)
        except StorageError as e:
            if row is not None:
                await self._undo_remote(
                    operation,
                    category.id,
                    self._store.delete(Collection.CATEGORIES, category.id, scope),
                )
            return await self._persistence_failure(
                operation, "category", category.id, e, False, correlation_id, scope.identity
            )

        if self._is_active(scope.identity):
            self._cache.insert_category(confirmed)

        if self._audit_logger:
            await self._audit_logger.log_category_added(
                category_id=confirmed.id,
                label=confirmed.label,
                identity=scope.identity,
                correlation_id=correlation_id,
            )
        return MutationResult(operation=operation, entity=confirmed)

    async def delete_category(
        self,
        category_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> MutationResult:
        """
        Delete a category that no expense references.

        The integrity check runs against one snapshot plus every value an
        in-flight mutation may still restore, and the category is marked
        pending in the same synchronous step, so no expense can point at
        it once the remote delete starts.
        """
        operation = "delete_category"
        correlation_id = correlation_id or create_correlation_id()

        scope = self._cache.scope()
        if scope is None:
            return await self._reject(operation, self._no_identity(), correlation_id, category_id)

        snapshot = self._cache.snapshot()
        category = snapshot.get_category(category_id)
        if category is None:
            return await self._reject(
                operation,
                ValidationError(f"Category not found: {category_id}", field="id"),
                correlation_id,
                category_id,
            )
        if category_id in self._pending_category_deletes:
            return await self._reject(
                operation,
                ConstraintViolation(
                    f"Category {category.label!r} is already being deleted",
                    entity_id=category_id,
                ),
                correlation_id,
                category_id,
            )
        candidates = snapshot.expenses + tuple(self._rollback_values.values())
        if not can_delete_category(category_id, candidates):
            count = len({e.id for e in referencing_expenses(category_id, candidates)})
            return await self._reject(
                operation,
                ConstraintViolation(
                    f"Category {category.label!r} is used by {count} expense(s)",
                    entity_id=category_id,
                    reference_count=count,
                ),
                correlation_id,
                category_id,
            )

        self._pending_category_deletes.add(category_id)
        try:
            await self._store.delete(Collection.CATEGORIES, category_id, scope)
        except StorageError as e:
            return await self._persistence_failure(
                operation, "category", category_id, e, False, correlation_id, scope.identity
            )
        finally:
            self._pending_category_deletes.discard(category_id)

        if self._is_active(scope.identity):
            self._cache.remove_category(category_id)

        if self._audit_logger:
            await self._audit_logger.log_category_deleted(
                category_id=category_id,
                identity=scope.identity,
                correlation_id=correlation_id,
            )
        return MutationResult(operation=operation, entity=category)
