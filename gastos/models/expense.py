"""
Core Data Models for Gastos

These models define the strict schemas for all data flowing through the ledger.
They are designed to:
1. Enforce type safety at runtime
2. Be immutable, so a snapshot handed to a reader can never be torn
3. Be serializable for storage and logging

DESIGN DECISION: Committed entities (Expense, Category) are frozen pydantic
models. Mutating the ledger means swapping whole entities, never editing
one in place.
"""

import calendar
import datetime
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class Period(str, Enum):
    """Aggregation window granularity."""
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class IntensityTier(str, Enum):
    """
    Display weighting of a calendar day's spend.

    Thresholds live in LedgerSettings; the tier carries no meaning
    beyond how dark the day is painted.
    """
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# =============================================================================
# LEDGER ENTITIES
# =============================================================================

class ExpenseDraft(BaseModel):
    """
    User input for a new or edited expense.

    The amount is deliberately unconstrained here: rejecting a
    non-positive amount is the validator's job, so the caller gets a
    ledger ValidationError instead of a schema error.
    """
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    amount: Decimal = Field(
        ...,
        description="Amount spent"
    )
    category: str = Field(
        ...,
        description="ID of the category this expense belongs to"
    )
    date: datetime.date = Field(
        ...,
        description="Calendar day of the expense"
    )
    description: str = Field(
        default="",
        max_length=500,
        description="Free-text note"
    )

    def to_expense(self, expense_id: str) -> "Expense":
        """Attach an identifier, producing a committed-shape Expense."""
        return Expense(id=expense_id, **self.model_dump())


class Expense(BaseModel):
    """
    A single cash outlay held by the ledger.

    CRITICAL: amount > 0 for every Expense that exists.
    """
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    id: str = Field(
        ...,
        min_length=1,
        description="Store-assigned ID, or a provisional one pending confirmation"
    )
    amount: Decimal = Field(
        ...,
        gt=0,
        description="Amount spent (currency agnostic)"
    )
    category: str = Field(
        ...,
        min_length=1,
        description="ID of the category this expense belongs to"
    )
    date: datetime.date = Field(
        ...,
        description="Calendar day of the expense"
    )
    description: str = Field(
        default="",
        max_length=500,
        description="Free-text note"
    )

    @property
    def date_key(self) -> str:
        """Lexically sortable YYYY-MM-DD key."""
        return self.date.isoformat()


class CategoryDraft(BaseModel):
    """User input for a new category."""
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    label: str = Field(
        ...,
        max_length=60,
        description="Display name"
    )
    emoji: str = Field(
        default="\U0001F4B0",
        max_length=16,
        description="Display glyph"
    )
    color: str = Field(
        default="hsl(152, 60%, 45%)",
        max_length=64,
        description="Display color"
    )


class Category(BaseModel):
    """
    A spending category.

    owner is None for shared categories available to every identity.
    """
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    id: str = Field(
        ...,
        min_length=1,
        description="Unique category ID (derived from the label)"
    )
    label: str = Field(
        ...,
        min_length=1,
        max_length=60,
        description="Display name"
    )
    emoji: str = Field(
        default="\U0001F4E6",
        max_length=16
    )
    color: str = Field(
        default="hsl(220, 15%, 50%)",
        max_length=64
    )
    owner: Optional[str] = Field(
        default=None,
        description="Owning identity, None for shared categories"
    )

    @property
    def is_shared(self) -> bool:
        return self.owner is None


class ScopeFilter(BaseModel):
    """Identity scope passed to every remote store call."""
    model_config = ConfigDict(frozen=True)

    identity: str = Field(
        ...,
        min_length=1,
        description="Opaque identity supplied by the auth collaborator"
    )
    include_shared: bool = Field(
        default=False,
        description="Also match rows without an owner"
    )

    def matches(self, owner: Optional[str]) -> bool:
        if owner is None or owner == "":
            return self.include_shared
        return owner == self.identity


class LedgerSnapshot(BaseModel):
    """
    Read-only view of the ledger at one instant.

    Readers hold on to a snapshot; later mutations build a new one.
    """
    model_config = ConfigDict(frozen=True)

    expenses: tuple[Expense, ...] = ()
    categories: tuple[Category, ...] = ()

    @property
    def total(self) -> Decimal:
        return sum((e.amount for e in self.expenses), Decimal("0"))

    def get_expense(self, expense_id: str) -> Optional[Expense]:
        return next((e for e in self.expenses if e.id == expense_id), None)

    def get_category(self, category_id: str) -> Optional[Category]:
        return next((c for c in self.categories if c.id == category_id), None)

    def expense_count(self, category_id: str) -> int:
        """Number of expenses referencing a category."""
        return sum(1 for e in self.expenses if e.category == category_id)


# =============================================================================
# TIME WINDOWS
# =============================================================================

class MonthCursor(BaseModel):
    """
    The month/year a screen is showing.

    Independent of the real current month: the user navigates it freely.
    month is 1-12.
    """
    model_config = ConfigDict(frozen=True)

    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=1, le=9999)

    @classmethod
    def from_date(cls, day: date) -> "MonthCursor":
        return cls(month=day.month, year=day.year)

    def previous(self) -> "MonthCursor":
        if self.month == 1:
            return MonthCursor(month=12, year=self.year - 1)
        return MonthCursor(month=self.month - 1, year=self.year)

    def next(self) -> "MonthCursor":
        if self.month == 12:
            return MonthCursor(month=1, year=self.year + 1)
        return MonthCursor(month=self.month + 1, year=self.year)

    @property
    def days_in_month(self) -> int:
        return calendar.monthrange(self.year, self.month)[1]

    @property
    def first_day(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def last_day(self) -> date:
        return date(self.year, self.month, self.days_in_month)

    def contains(self, day: date) -> bool:
        return day.year == self.year and day.month == self.month


class DateWindow(BaseModel):
    """Inclusive range of calendar days."""
    model_config = ConfigDict(frozen=True)

    start: date
    end: date

    @model_validator(mode='after')
    def validate_order(self) -> 'DateWindow':
        if self.end < self.start:
            raise ValueError("Window end cannot be before start")
        return self

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def shift(self, days: int) -> "DateWindow":
        delta = timedelta(days=days)
        return DateWindow(start=self.start + delta, end=self.end + delta)


# =============================================================================
# DERIVED (READ-SIDE) MODELS
# =============================================================================

class CategoryShare(BaseModel):
    """One row of a period's category breakdown."""
    model_config = ConfigDict(frozen=True)

    category_id: str
    amount: Decimal
    percentage: int = Field(..., ge=0, le=100)

    # Display data copied from the Category when it is known
    label: Optional[str] = None
    emoji: Optional[str] = None
    color: Optional[str] = None


class PeriodStats(BaseModel):
    """Totals for one period window compared against the window before it."""
    model_config = ConfigDict(frozen=True)

    period: Period
    window: DateWindow
    previous_window: DateWindow

    total: Decimal = Decimal("0")
    by_category: list[CategoryShare] = Field(default_factory=list)

    previous_total: Decimal = Decimal("0")
    change: int = Field(
        default=0,
        description="Percent change vs previous window; 0 when the previous total is 0"
    )


class DayBucket(BaseModel):
    """All expenses of one calendar day."""
    model_config = ConfigDict(frozen=True)

    date: datetime.date
    expenses: tuple[Expense, ...] = ()
    total: Decimal = Decimal("0")
    intensity: IntensityTier = IntensityTier.LOW


class CalendarMonth(BaseModel):
    """
    Everything a 7-column month calendar needs.

    grid holds one None per leading blank cell (weeks start on Sunday)
    followed by the day numbers 1..N.
    """
    model_config = ConfigDict(frozen=True)

    cursor: MonthCursor
    grid: list[Optional[int]]
    buckets: dict[str, DayBucket] = Field(default_factory=dict)
    month_total: Decimal = Decimal("0")

    @field_validator('grid')
    @classmethod
    def validate_grid(cls, v: list[Optional[int]]) -> list[Optional[int]]:
        leading = 0
        while leading < len(v) and v[leading] is None:
            leading += 1
        if leading > 6:
            raise ValueError("A month cannot start more than 6 cells in")
        return v

    def day(self, day: date) -> Optional[DayBucket]:
        """Bucket for a day, None when nothing was spent."""
        return self.buckets.get(day.isoformat())


# =============================================================================
# SEED DATA
# =============================================================================

DEFAULT_CATEGORIES: tuple[Category, ...] = (
    Category(id="verduleria", label="Verduleria", emoji="\U0001F96C", color="hsl(152, 60%, 45%)"),
    Category(id="carniceria", label="Carniceria", emoji="\U0001F969", color="hsl(0, 70%, 55%)"),
    Category(id="panaderia", label="Panaderia", emoji="\U0001F950", color="hsl(38, 92%, 50%)"),
    Category(id="fiambreria", label="Fiambreria", emoji="\U0001F9C0", color="hsl(45, 80%, 55%)"),
    Category(id="almacen", label="Almacen / Kiosco", emoji="\U0001F3EA", color="hsl(200, 70%, 50%)"),
    Category(id="supermercado", label="Supermercado", emoji="\U0001F6D2", color="hsl(270, 55%, 55%)"),
    Category(id="transporte", label="Transporte", emoji="\U0001F697", color="hsl(210, 60%, 50%)"),
    Category(id="servicios", label="Servicios", emoji="⚡", color="hsl(30, 90%, 55%)"),
    Category(id="alquiler", label="Alquiler", emoji="\U0001F3E0", color="hsl(340, 65%, 50%)"),
    Category(id="impuestos", label="Impuestos", emoji="\U0001F4C4", color="hsl(180, 50%, 40%)"),
    Category(id="farmacia", label="Farmacia / Salud", emoji="\U0001F48A", color="hsl(310, 55%, 50%)"),
    Category(id="otros", label="Otros", emoji="\U0001F4E6", color="hsl(220, 15%, 50%)"),
)
