"""Validation package."""

from gastos.validation.validator import (
    DraftValidator,
    category_from_row,
    category_to_row,
    derive_category_id,
    expense_from_row,
    expense_to_row,
    slugify_label,
)

__all__ = [
    "DraftValidator",
    "category_from_row",
    "category_to_row",
    "derive_category_id",
    "expense_from_row",
    "expense_to_row",
    "slugify_label",
]
