"""
Ledger Error Taxonomy

Three ways a ledger operation can fail:

- ValidationError: bad input, rejected before any remote call
- ConstraintViolation: the integrity check refused the operation
- PersistenceError: the remote store failed after validation passed

The first two never touch the cache. A PersistenceError is only ever
surfaced after the cache has been rolled back to its pre-operation state.
"""

from typing import Optional


class LedgerError(Exception):
    """Base exception for ledger operations."""
    pass


class ValidationError(LedgerError):
    """Input rejected before any remote call."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class ConstraintViolation(LedgerError):
    """Operation would break a ledger invariant."""

    def __init__(self, message: str, entity_id: Optional[str] = None, reference_count: int = 0):
        super().__init__(message)
        self.entity_id = entity_id
        self.reference_count = reference_count


class PersistenceError(LedgerError):
    """Remote store call failed; the cache has already been rolled back."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation
