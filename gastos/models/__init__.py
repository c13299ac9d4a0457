"""
Data Models Package

This package contains all Pydantic models used by the ledger.
All data entering the ledger must conform to these schemas.
"""

from gastos.models.expense import (
    DEFAULT_CATEGORIES,
    CalendarMonth,
    Category,
    CategoryDraft,
    CategoryShare,
    DateWindow,
    DayBucket,
    Expense,
    ExpenseDraft,
    IntensityTier,
    LedgerSnapshot,
    MonthCursor,
    Period,
    PeriodStats,
    ScopeFilter,
)
from gastos.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "DEFAULT_CATEGORIES",
    "CalendarMonth",
    "Category",
    "CategoryDraft",
    "CategoryShare",
    "DateWindow",
    "DayBucket",
    "Expense",
    "ExpenseDraft",
    "IntensityTier",
    "LedgerSnapshot",
    "MonthCursor",
    "Period",
    "PeriodStats",
    "ScopeFilter",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
