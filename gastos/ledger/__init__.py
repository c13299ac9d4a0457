"""Ledger state and the write path."""

from gastos.ledger.cache import LedgerCache
from gastos.ledger.coordinator import MutationCoordinator, MutationResult
from gastos.ledger.integrity import can_delete_category, referencing_expenses

__all__ = [
    "LedgerCache",
    "MutationCoordinator",
    "MutationResult",
    "can_delete_category",
    "referencing_expenses",
]
