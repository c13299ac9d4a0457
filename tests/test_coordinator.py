"""
Tests for the Mutation Coordinator.

Covers optimistic apply, reconciliation, rollback on store failure,
per-expense serialization and the category integrity rule.
"""

import asyncio

import pytest
from datetime import date
from decimal import Decimal

from gastos.errors import ConstraintViolation, PersistenceError, ValidationError
from gastos.ledger import MutationCoordinator, MutationResult
from gastos.models.expense import CategoryDraft, Expense, ScopeFilter
from gastos.services.storage import Collection

from conftest import IDENTITY, draft


def writes(store):
    """Remote calls other than reads, including ones that were made to fail."""
    return [c for c in store.calls if c[0] != "list"] + store.failed


async def settle():
    """Let started tasks run up to their first real suspension point."""
    for _ in range(5):
        await asyncio.sleep(0)


class TestMutationResult:
    """Result type returned by every mutation."""

    def test_success_unwraps_to_entity(self):
        expense = Expense(id="a", amount=Decimal("1"), category="food", date=date(2024, 3, 1))
        result = MutationResult(operation="add_expense", entity=expense)
        assert result.ok
        assert result.unwrap() is expense

    def test_failure_unwrap_raises_carried_error(self):
        result = MutationResult(operation="add_expense", error=ValidationError("bad"))
        assert not result.ok
        with pytest.raises(ValidationError, match="bad"):
            result.unwrap()


class TestAddExpense:
    """Optimistic add with reconciliation."""

    @pytest.mark.asyncio
    async def test_add_commits_store_confirmed_entry(self, coordinator, cache, store, audit_storage):
        await cache.load(IDENTITY)

        result = await coordinator.add_expense(draft("100", description=" bread "))

        assert result.ok
        expense = result.entity
        assert not coordinator.is_provisional(expense.id)
        assert expense.description == "bread"
        assert cache.snapshot().expenses == (expense,)
        assert store.row_count(Collection.EXPENSES) == 1
        assert audit_storage.types()[-1] == "expense_added"

    @pytest.mark.asyncio
    async def test_provisional_entry_visible_while_in_flight(self, coordinator, cache, store):
        await cache.load(IDENTITY)
        gate = store.hold()

        task = asyncio.create_task(coordinator.add_expense(draft("42")))
        await settle()

        pending = cache.snapshot().expenses
        assert len(pending) == 1
        assert coordinator.is_provisional(pending[0].id)
        assert pending[0].amount == Decimal("42")

        gate.set()
        result = await task
        assert cache.snapshot().expenses == (result.entity,)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-10"])
    async def test_non_positive_amount_never_reaches_store(self, coordinator, cache, store, amount):
        await cache.load(IDENTITY)
        before = cache.snapshot()

        result = await coordinator.add_expense(draft(amount))

        assert isinstance(result.error, ValidationError)
        assert cache.snapshot() == before
        assert writes(store) == []

    @pytest.mark.asyncio
    async def test_sub_cent_amount_never_reaches_store(self, coordinator, cache, store):
        await cache.load(IDENTITY)

        result = await coordinator.add_expense(draft("0.001"))

        assert isinstance(result.error, ValidationError)
        assert result.error.field == "amount"
        assert cache.snapshot().expenses == ()
        assert store.row_count(Collection.EXPENSES) == 0

    @pytest.mark.asyncio
    async def test_unmappable_confirmation_undoes_remote_create(self, coordinator, cache, store):
        await cache.load(IDENTITY)
        store.corrupt("create", Collection.EXPENSES)

        result = await coordinator.add_expense(draft("30"))

        assert isinstance(result.error, PersistenceError)
        assert result.rolled_back is True
        assert cache.snapshot().expenses == ()
        assert store.row_count(Collection.EXPENSES) == 0
        assert ("delete", Collection.EXPENSES) in store.calls

    @pytest.mark.asyncio
    async def test_persistence_failure_is_audited_with_identity(self, coordinator, cache, store, audit_storage):
        await cache.load(IDENTITY)
        store.fail("create", Collection.EXPENSES)

        await coordinator.add_expense(draft("30"))

        event = audit_storage.events[-1]
        assert event.event_type.value == "persistence_failed"
        assert event.identity == IDENTITY

    @pytest.mark.asyncio
    async def test_store_failure_restores_exact_previous_state(self, coordinator, cache, store, audit_storage):
        await cache.load(IDENTITY)
        await coordinator.add_expense(draft("10", day=date(2024, 3, 1)))
        await coordinator.add_expense(draft("20", day=date(2024, 3, 2)))
        before = cache.snapshot().expenses

        store.fail("create", Collection.EXPENSES)
        result = await coordinator.add_expense(draft("30"))

        assert isinstance(result.error, PersistenceError)
        assert result.rolled_back is True
        assert cache.snapshot().expenses == before
        assert audit_storage.types()[-1] == "persistence_failed"
        with pytest.raises(PersistenceError):
            result.unwrap()

    @pytest.mark.asyncio
    async def test_total_equals_sum_of_committed_amounts(self, coordinator, cache):
        await cache.load(IDENTITY)
        amounts = ["10.25", "99.99", "0.01", "1500", "7"]

        results = await asyncio.gather(*(coordinator.add_expense(draft(a)) for a in amounts))

        assert all(r.ok for r in results)
        assert cache.snapshot().total == sum(Decimal(a) for a in amounts)
        assert not any(coordinator.is_provisional(e.id) for e in cache.snapshot().expenses)

    @pytest.mark.asyncio
    async def test_no_active_identity(self, coordinator, store):
        result = await coordinator.add_expense(draft("10"))
        assert isinstance(result.error, ValidationError)
        assert writes(store) == []

    @pytest.mark.asyncio
    async def test_sign_out_mid_flight_does_not_resurrect_entry(self, coordinator, cache, store):
        await cache.load(IDENTITY)
        gate = store.hold()

        task = asyncio.create_task(coordinator.add_expense(draft("42")))
        await settle()
        cache.clear()
        gate.set()
        await task

        assert cache.snapshot().expenses == ()


class TestUpdateExpense:
    """Optimistic update with rollback to the previous value."""

    @pytest.mark.asyncio
    async def test_update_commits(self, coordinator, cache, audit_storage):
        await cache.load(IDENTITY)
        added = (await coordinator.add_expense(draft("10"))).entity

        result = await coordinator.update_expense(added.id, draft("15", category="transport"))

        assert result.ok
        assert cache.snapshot().get_expense(added.id).amount == Decimal("15")
        assert cache.snapshot().get_expense(added.id).category == "transport"
        assert audit_storage.types()[-1] == "expense_updated"

    @pytest.mark.asyncio
    async def test_read_during_update_sees_draft_then_rollback_restores(self, coordinator, cache, store):
        await cache.load(IDENTITY)
        original = (await coordinator.add_expense(draft("10", description="original"))).entity
        new_draft = draft("99", category="transport", day=date(2024, 3, 9), description="edited")
        gate = store.hold()

        task = asyncio.create_task(coordinator.update_expense(original.id, new_draft))
        await settle()

        assert cache.snapshot().get_expense(original.id) == new_draft.to_expense(original.id)

        store.fail("update", Collection.EXPENSES)
        gate.set()
        result = await task

        assert isinstance(result.error, PersistenceError)
        assert result.rolled_back is True
        assert cache.snapshot().get_expense(original.id) == original

    @pytest.mark.asyncio
    async def test_unmappable_confirmation_restores_remote_row(self, coordinator, cache, store):
        await cache.load(IDENTITY)
        original = (await coordinator.add_expense(draft("10", description="original"))).entity
        store.corrupt("update", Collection.EXPENSES)

        result = await coordinator.update_expense(original.id, draft("99", description="edited"))

        assert isinstance(result.error, PersistenceError)
        assert cache.snapshot().get_expense(original.id) == original
        rows = await store.list(Collection.EXPENSES, ScopeFilter(identity=IDENTITY))
        assert [(r["amount"], r["description"]) for r in rows] == [("10.00", "original")]

    @pytest.mark.asyncio
    async def test_unknown_id_rejected_without_remote_call(self, coordinator, cache, store):
        await cache.load(IDENTITY)

        result = await coordinator.update_expense("missing", draft("10"))

        assert isinstance(result.error, ValidationError)
        assert writes(store) == []

    @pytest.mark.asyncio
    async def test_invalid_draft_leaves_entry_untouched(self, coordinator, cache):
        await cache.load(IDENTITY)
        added = (await coordinator.add_expense(draft("10"))).entity

        result = await coordinator.update_expense(added.id, draft("-3"))

        assert isinstance(result.error, ValidationError)
        assert cache.snapshot().get_expense(added.id) == added

    @pytest.mark.asyncio
    async def test_updates_to_same_id_are_serialized(self, coordinator, cache, store):
        await cache.load(IDENTITY)
        added = (await coordinator.add_expense(draft("10"))).entity
        gate = store.hold()

        first = asyncio.create_task(coordinator.update_expense(added.id, draft("20")))
        second = asyncio.create_task(coordinator.update_expense(added.id, draft("30")))
        await settle()

        # The second update waits for the first to reconcile
        assert cache.snapshot().get_expense(added.id).amount == Decimal("20")

        gate.set()
        results = await asyncio.gather(first, second)

        assert all(r.ok for r in results)
        assert cache.snapshot().get_expense(added.id).amount == Decimal("30")
        assert len(cache.snapshot().expenses) == 1


class TestDeleteExpense:
    """Optimistic delete with positional rollback."""

    @pytest.mark.asyncio
    async def test_delete_commits(self, coordinator, cache, store, audit_storage):
        await cache.load(IDENTITY)
        added = (await coordinator.add_expense(draft("10"))).entity

        result = await coordinator.delete_expense(added.id)

        assert result.ok
        assert result.entity == added
        assert cache.snapshot().expenses == ()
        assert store.row_count(Collection.EXPENSES) == 0
        assert audit_storage.types()[-1] == "expense_deleted"

    @pytest.mark.asyncio
    async def test_failure_reinserts_at_original_position(self, coordinator, cache, store):
        await cache.load(IDENTITY)
        for amount in ("1", "2", "3"):
            await coordinator.add_expense(draft(amount))
        before = cache.snapshot().expenses
        middle = before[1]

        store.fail("delete", Collection.EXPENSES)
        result = await coordinator.delete_expense(middle.id)

        assert isinstance(result.error, PersistenceError)
        assert cache.snapshot().expenses == before

    @pytest.mark.asyncio
    async def test_failure_keeps_order_when_entries_added_meanwhile(self, coordinator, cache, store):
        await cache.load(IDENTITY)
        for amount in ("1", "2", "3"):
            await coordinator.add_expense(draft(amount))
        middle = cache.snapshot().expenses[1]
        store.fail("delete", Collection.EXPENSES)
        gate = store.hold()

        delete_task = asyncio.create_task(coordinator.delete_expense(middle.id))
        await settle()
        add_task = asyncio.create_task(coordinator.add_expense(draft("4")))
        await settle()
        gate.set()
        deleted, added = await asyncio.gather(delete_task, add_task)

        assert isinstance(deleted.error, PersistenceError)
        assert added.ok
        assert [e.amount for e in cache.snapshot().expenses] == [
            Decimal("4"), Decimal("3"), Decimal("2"), Decimal("1"),
        ]

    @pytest.mark.asyncio
    async def test_unknown_id_rejected(self, coordinator, cache, store):
        await cache.load(IDENTITY)
        result = await coordinator.delete_expense("missing")
        assert isinstance(result.error, ValidationError)
        assert writes(store) == []


class TestClearExpenses:
    """Bulk delete of the active identity's expenses."""

    @pytest.mark.asyncio
    async def test_clear_removes_everything(self, coordinator, cache, store, audit_storage):
        await cache.load(IDENTITY)
        for amount in ("1", "2", "3"):
            await coordinator.add_expense(draft(amount))

        result = await coordinator.clear_expenses()

        assert result.ok
        assert cache.snapshot().expenses == ()
        assert store.row_count(Collection.EXPENSES) == 0
        assert audit_storage.events[-1].details["deleted_count"] == 3

    @pytest.mark.asyncio
    async def test_partial_failure_restores_survivors_in_order(self, coordinator, cache, store):
        await cache.load(IDENTITY)
        for amount in ("1", "2", "3"):
            await coordinator.add_expense(draft(amount))
        before = cache.snapshot().expenses

        store.fail("delete", Collection.EXPENSES, after=1)
        result = await coordinator.clear_expenses()

        assert isinstance(result.error, PersistenceError)
        assert cache.snapshot().expenses == before[1:]
        assert store.row_count(Collection.EXPENSES) == 2


    @pytest.mark.asyncio
    async def test_partial_failure_keeps_order_when_entries_added_meanwhile(self, coordinator, cache, store):
        await cache.load(IDENTITY)
        for amount in ("1", "2", "3"):
            await coordinator.add_expense(draft(amount))
        store.fail("delete", Collection.EXPENSES, after=1)
        gate = store.hold()

        clear_task = asyncio.create_task(coordinator.clear_expenses())
        await settle()
        add_task = asyncio.create_task(coordinator.add_expense(draft("4")))
        await settle()
        gate.set()
        cleared, added = await asyncio.gather(clear_task, add_task)

        assert isinstance(cleared.error, PersistenceError)
        assert added.ok
        assert [e.amount for e in cache.snapshot().expenses] == [
            Decimal("4"), Decimal("2"), Decimal("1"),
        ]


class TestAddCategory:
    """Category creation is confirmed before it is cached."""

    @pytest.mark.asyncio
    async def test_add_category_derives_id(self, coordinator, cache, audit_storage):
        await cache.load(IDENTITY)

        result = await coordinator.add_category(CategoryDraft(label="Mascotas y Vet"))

        assert result.ok
        category = result.entity
        assert category.id == "mascotas-y-vet-user-ali"
        assert category.owner == IDENTITY
        assert cache.snapshot().get_category(category.id) == category
        assert audit_storage.types()[-1] == "category_added"

    @pytest.mark.asyncio
    async def test_unmappable_confirmation_undoes_remote_create(self, coordinator, cache, store):
        await cache.load(IDENTITY)
        store.corrupt("create", Collection.CATEGORIES)

        result = await coordinator.add_category(CategoryDraft(label="Pets"))

        assert isinstance(result.error, PersistenceError)
        assert result.rolled_back is False
        assert all(c.label != "Pets" for c in cache.snapshot().categories)
        rows = await store.list(Collection.CATEGORIES, ScopeFilter(identity=IDENTITY, include_shared=False))
        assert rows == []

    @pytest.mark.asyncio
    async def test_category_not_visible_until_confirmed(self, coordinator, cache, store):
        await cache.load(IDENTITY)
        gate = store.hold()

        task = asyncio.create_task(coordinator.add_category(CategoryDraft(label="Pets")))
        await settle()
        assert cache.snapshot().get_category("pets-user-ali") is None

        gate.set()
        assert (await task).ok
        assert cache.snapshot().get_category("pets-user-ali") is not None

    @pytest.mark.asyncio
    async def test_colliding_label_fails_without_touching_cache(self, coordinator, cache):
        await cache.load(IDENTITY)
        await coordinator.add_category(CategoryDraft(label="Pets"))
        before = cache.snapshot().categories

        result = await coordinator.add_category(CategoryDraft(label="pets!"))

        assert isinstance(result.error, PersistenceError)
        assert result.rolled_back is False
        assert cache.snapshot().categories == before

    @pytest.mark.asyncio
    async def test_blank_label_rejected(self, coordinator, cache, store):
        await cache.load(IDENTITY)
        result = await coordinator.add_category(CategoryDraft(label="  "))
        assert isinstance(result.error, ValidationError)
        assert writes(store) == []


class TestDeleteCategory:
    """Integrity rule: referenced categories cannot be deleted."""

    @pytest.mark.asyncio
    async def test_referenced_category_is_protected(self, coordinator, cache, store, audit_storage):
        await cache.load(IDENTITY)
        expense = (await coordinator.add_expense(draft("100", category="food"))).entity
        await coordinator.add_expense(draft("50", category="food"))

        result = await coordinator.delete_category("food")

        assert isinstance(result.error, ConstraintViolation)
        assert result.error.reference_count == 2
        assert cache.snapshot().get_category("food") is not None
        assert cache.snapshot().get_expense(expense.id) == expense
        assert ("delete", Collection.CATEGORIES) not in writes(store)
        assert audit_storage.types()[-1] == "constraint_violation"

    @pytest.mark.asyncio
    async def test_unreferenced_owned_category_deleted(self, coordinator, cache, store):
        await cache.load(IDENTITY)
        category = (await coordinator.add_category(CategoryDraft(label="Pets"))).entity

        result = await coordinator.delete_category(category.id)

        assert result.ok
        assert cache.snapshot().get_category(category.id) is None
        assert ("delete", Collection.CATEGORIES) in store.calls

    @pytest.mark.asyncio
    async def test_shared_category_cannot_be_deleted_remotely(self, coordinator, cache):
        await cache.load(IDENTITY)

        result = await coordinator.delete_category("transport")

        assert isinstance(result.error, PersistenceError)
        assert cache.snapshot().get_category("transport") is not None

    @pytest.mark.asyncio
    async def test_unknown_category(self, coordinator, cache):
        await cache.load(IDENTITY)
        result = await coordinator.delete_category("nope")
        assert isinstance(result.error, ValidationError)

    @pytest.mark.asyncio
    async def test_in_flight_provisional_expense_blocks_delete(self, coordinator, cache, store):
        """An expense inserted just before the check is seen by it."""
        await cache.load(IDENTITY)
        category = (await coordinator.add_category(CategoryDraft(label="Pets"))).entity
        gate = store.hold()

        add_task = asyncio.create_task(coordinator.add_expense(draft("10", category=category.id)))
        await settle()
        result = await coordinator.delete_category(category.id)

        assert isinstance(result.error, ConstraintViolation)
        gate.set()
        assert (await add_task).ok
        assert cache.snapshot().get_category(category.id) is not None

    @pytest.mark.asyncio
    async def test_expense_cannot_target_category_being_deleted(self, coordinator, cache, store):
        await cache.load(IDENTITY)
        category = (await coordinator.add_category(CategoryDraft(label="Pets"))).entity
        existing = (await coordinator.add_expense(draft("10", category="food"))).entity
        gate = store.hold()

        delete_task = asyncio.create_task(coordinator.delete_category(category.id))
        await settle()

        added = await coordinator.add_expense(draft("5", category=category.id))
        moved = asyncio.create_task(
            coordinator.update_expense(existing.id, draft("10", category=category.id))
        )
        await settle()

        assert isinstance(added.error, ConstraintViolation)
        assert moved.done()
        assert isinstance(moved.result().error, ConstraintViolation)

        gate.set()
        assert (await delete_task).ok
        assert cache.snapshot().get_category(category.id) is None
        assert cache.snapshot().expense_count(category.id) == 0

    @pytest.mark.asyncio
    async def test_pending_delete_released_after_failure(self, coordinator, cache, store):
        await cache.load(IDENTITY)
        category = (await coordinator.add_category(CategoryDraft(label="Pets"))).entity

        store.fail("delete", Collection.CATEGORIES)
        failed = await coordinator.delete_category(category.id)
        store.heal()

        assert isinstance(failed.error, PersistenceError)
        assert (await coordinator.add_expense(draft("5", category=category.id))).ok


    @pytest.mark.asyncio
    async def test_failing_update_away_from_category_blocks_delete(self, coordinator, cache, store):
        """The value a rollback would restore still counts as a reference."""
        await cache.load(IDENTITY)
        category = (await coordinator.add_category(CategoryDraft(label="Pets"))).entity
        expense = (await coordinator.add_expense(draft("10", category=category.id))).entity
        store.fail("update", Collection.EXPENSES)
        gate = store.hold()

        update_task = asyncio.create_task(
            coordinator.update_expense(expense.id, draft("10", category="food"))
        )
        await settle()
        assert cache.snapshot().expense_count(category.id) == 0

        result = await coordinator.delete_category(category.id)

        assert isinstance(result.error, ConstraintViolation)
        assert result.error.reference_count == 1
        gate.set()
        assert isinstance((await update_task).error, PersistenceError)
        assert cache.snapshot().get_category(category.id) is not None
        assert cache.snapshot().expense_count(category.id) == 1

    @pytest.mark.asyncio
    async def test_failing_expense_delete_blocks_category_delete(self, coordinator, cache, store):
        await cache.load(IDENTITY)
        category = (await coordinator.add_category(CategoryDraft(label="Pets"))).entity
        expense = (await coordinator.add_expense(draft("10", category=category.id))).entity
        store.fail("delete", Collection.EXPENSES)
        gate = store.hold()

        delete_task = asyncio.create_task(coordinator.delete_expense(expense.id))
        await settle()
        assert cache.snapshot().expense_count(category.id) == 0

        result = await coordinator.delete_category(category.id)

        assert isinstance(result.error, ConstraintViolation)
        gate.set()
        assert isinstance((await delete_task).error, PersistenceError)
        assert cache.snapshot().get_category(category.id) is not None
        assert cache.snapshot().get_expense(expense.id) == expense

    @pytest.mark.asyncio
    async def test_category_free_once_moving_update_commits(self, coordinator, cache, store):
        await cache.load(IDENTITY)
        category = (await coordinator.add_category(CategoryDraft(label="Pets"))).entity
        expense = (await coordinator.add_expense(draft("10", category=category.id))).entity

        assert (await coordinator.update_expense(expense.id, draft("10", category="food"))).ok
        assert (await coordinator.delete_category(category.id)).ok


class TestCoordinatorConstruction:
    """Defaults wiring."""

    def test_defaults_from_settings(self, cache, store, ledger_settings):
        coordinator = MutationCoordinator(cache, store, settings=ledger_settings)
        assert coordinator.is_provisional(f"{ledger_settings.temp_id_prefix}abc")
        assert not coordinator.is_provisional("abc")
