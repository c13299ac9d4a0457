"""
Calendar Bucketer

Groups a snapshot's expenses by day within one displayed month and
lays the month out as a 7-column grid (weeks start on Sunday).

Intensity tiers are display weighting only. Thresholds come from
LedgerSettings and a day exactly on a threshold falls in the lower tier.
"""

from collections import defaultdict
from decimal import Decimal
from typing import Iterable, Optional

from gastos.config import LedgerSettings, get_settings
from gastos.models.expense import (
    CalendarMonth,
    DayBucket,
    Expense,
    IntensityTier,
    MonthCursor,
)


class CalendarBucketer:
    """Builds per-day buckets and the month grid for a displayed month."""

    def __init__(self, settings: Optional[LedgerSettings] = None):
        self._settings = settings or get_settings().ledger

    def classify(self, total: Decimal) -> IntensityTier:
        if total > self._settings.intensity_high_threshold:
            return IntensityTier.HIGH
        if total > self._settings.intensity_medium_threshold:
            return IntensityTier.MEDIUM
        return IntensityTier.LOW

    def bucket(self, expenses: Iterable[Expense], month: int, year: int) -> dict[str, DayBucket]:
        """
        Map of YYYY-MM-DD key to that day's bucket.

        Only days of the given month that have at least one expense appear.
        Expenses inside a bucket keep their snapshot order.
        """
        cursor = MonthCursor(month=month, year=year)
        by_day: dict[str, list[Expense]] = defaultdict(list)
        for expense in expenses:
            if cursor.contains(expense.date):
                by_day[expense.date_key].append(expense)

        buckets = {}
        for key in sorted(by_day):
            day_expenses = by_day[key]
            total = sum((e.amount for e in day_expenses), Decimal("0"))
            buckets[key] = DayBucket(
                date=day_expenses[0].date,
                expenses=tuple(day_expenses),
                total=total,
                intensity=self.classify(total),
            )
        return buckets

    @staticmethod
    def grid(month: int, year: int) -> list[Optional[int]]:
        """Leading blanks for the weekday of day 1, then 1..N."""
        cursor = MonthCursor(month=month, year=year)
        leading = (cursor.first_day.weekday() + 1) % 7
        return [None] * leading + list(range(1, cursor.days_in_month + 1))

    def build(self, expenses: Iterable[Expense], cursor: MonthCursor) -> CalendarMonth:
        """Buckets, grid and month total in one object."""
        buckets = self.bucket(expenses, cursor.month, cursor.year)
        return CalendarMonth(
            cursor=cursor,
            grid=self.grid(cursor.month, cursor.year),
            buckets=buckets,
            month_total=sum((b.total for b in buckets.values()), Decimal("0")),
        )
