"""
Integrity Guard

The one cross-entity invariant of the ledger: a category cannot be
deleted while any expense references it.

Both functions are pure. Callers must pass a single snapshot's expense
tuple, plus any entry a pending rollback could restore, and must not
re-read the cache between the check and acting on it.
"""

from typing import Iterable

from gastos.models.expense import Expense


def referencing_expenses(category_id: str, expenses: Iterable[Expense]) -> list[Expense]:
    """Expenses in the snapshot that reference the category."""
    return [e for e in expenses if e.category == category_id]


def can_delete_category(category_id: str, expenses: Iterable[Expense]) -> bool:
    """True when no expense in the snapshot references the category."""
    return not any(e.category == category_id for e in expenses)
