"""
Input Validation and Row Mapping

DESIGN DECISION: Validation happens at two distinct boundaries:

USER INPUT (drafts):
- Amount must be positive and sane
- Category reference must be present
- Category labels must produce a usable ID
- Rejected with a ledger ValidationError BEFORE any remote call

STORE OUTPUT (rows):
- Remote rows are loosely typed dicts
- Each row is mapped to a typed Expense/Category here
- A row that does not map raises MalformedRowError
- Nothing untyped ever enters the ledger cache

IMPORTANT: Validation NEVER silently fixes user input.
It reports the problem so the user can correct it.
"""

import re
import unicodedata
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

import pydantic

from gastos.config import LedgerSettings, get_settings
from gastos.errors import ValidationError
from gastos.models.expense import (
    Category,
    CategoryDraft,
    Expense,
    ExpenseDraft,
)
from gastos.services.storage.interface import MalformedRowError, Row

# Amounts are stored at cent precision
CENT = Decimal("0.01")


class DraftValidator:
    """
    Validates user drafts before the ledger touches them.

    Raises ValidationError; never returns a partially valid result.
    """

    def __init__(self, settings: Optional[LedgerSettings] = None):
        self._settings = settings or get_settings().ledger

    def validate_expense(self, draft: ExpenseDraft) -> None:
        """Check an expense draft. Raises ValidationError on the first problem."""
        if not draft.amount.is_finite():
            raise ValidationError("Amount must be a number", field="amount")
        if draft.amount <= 0:
            raise ValidationError("Amount must be greater than zero", field="amount")
        if draft.amount.quantize(CENT) <= 0:
            raise ValidationError("Amount must be at least 0.01", field="amount")
        if draft.amount > self._settings.max_amount:
            raise ValidationError(
                f"Amount exceeds the maximum of {self._settings.max_amount}",
                field="amount",
            )
        if not draft.category:
            raise ValidationError("Category is required", field="category")

    def validate_category(self, draft: CategoryDraft) -> None:
        """Check a category draft. Raises ValidationError on the first problem."""
        if not draft.label:
            raise ValidationError("Category name is required", field="label")
        if not slugify_label(draft.label):
            raise ValidationError(
                "Category name must contain at least one letter or digit",
                field="label",
            )


def slugify_label(label: str) -> str:
    """
    Normalize a display label into an ID fragment.

    Lowercase, accents folded, whitespace runs to a hyphen,
    everything else that is not [a-z0-9-] stripped.
    """
    folded = unicodedata.normalize("NFKD", label.strip().lower())
    folded = "".join(ch for ch in folded if not unicodedata.combining(ch))
    hyphenated = re.sub(r"\s+", "-", folded)
    return re.sub(r"[^a-z0-9-]", "", hyphenated)


def derive_category_id(label: str, identity: str, suffix_length: int = 8) -> str:
    """
    Category ID for a label created by an identity.

    The identity suffix keeps two users' "Mascotas" apart; two labels
    that slugify identically for the same user still collide.
    """
    suffix = slugify_label(identity)[:suffix_length] or identity[:suffix_length]
    return f"{slugify_label(label)}-{suffix}"


# =============================================================================
# ROW MAPPING (store boundary)
# =============================================================================

def expense_to_row(expense: Union[Expense, ExpenseDraft]) -> Row:
    """Serialize an expense (or draft) into store row fields, without ID."""
    return {
        "amount": str(expense.amount),
        "category": expense.category,
        "date": expense.date.isoformat(),
        "description": expense.description,
    }


def category_to_row(category: Category) -> Row:
    """Serialize a category into store row fields."""
    return {
        "id": category.id,
        "label": category.label,
        "emoji": category.emoji,
        "color": category.color,
    }


def expense_from_row(row: Row) -> Expense:
    """
    Map a remote row to a typed Expense.

    Raises:
        MalformedRowError: If the row is missing fields or holds bad values
    """
    try:
        amount = Decimal(str(row["amount"]))
        raw_date = row["date"]
        if isinstance(raw_date, date):
            day = raw_date
        else:
            day = date.fromisoformat(str(raw_date)[:10])
        return Expense(
            id=str(row["id"]),
            amount=amount,
            category=str(row["category"]),
            date=day,
            description=row.get("description") or "",
        )
    except (KeyError, TypeError, ValueError, InvalidOperation, pydantic.ValidationError) as e:
        raise MalformedRowError(f"Malformed expense row {row.get('id')!r}: {e}") from e


def category_from_row(row: Row) -> Category:
    """
    Map a remote row to a typed Category.

    Raises:
        MalformedRowError: If the row is missing fields or holds bad values
    """
    try:
        values = {
            "id": str(row["id"]),
            "label": str(row["label"]),
            "owner": row.get("user_id") or None,
        }
        if row.get("emoji"):
            values["emoji"] = row["emoji"]
        if row.get("color"):
            values["color"] = row["color"]
        return Category(**values)
    except (KeyError, TypeError, pydantic.ValidationError) as e:
        raise MalformedRowError(f"Malformed category row {row.get('id')!r}: {e}") from e
