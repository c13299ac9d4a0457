"""
Period Aggregator

DESIGN DECISION: Aggregation is DETERMINISTIC and pure.
It reads a snapshot's expenses and never touches the cache or the store,
so two calls over the same snapshot always agree.

Windows (all inclusive):
- day:   the reference day
- week:  most recent Sunday at or before the reference day, up to it
- month: the DISPLAYED month, which the user navigates independently
- year:  the displayed year

The comparison window is the one immediately before, with the same
granularity: yesterday, the 7 days before the week start, the previous
calendar month, the previous calendar year.

Rounding follows half-up-towards-positive-infinity (2.5 -> 3, -2.5 -> -2),
which is what the presentation layer has always displayed.
"""

from collections import defaultdict
from datetime import date, timedelta
from decimal import ROUND_FLOOR, Decimal
from typing import Iterable, Optional

from gastos.models.expense import (
    Category,
    CategoryShare,
    DateWindow,
    Expense,
    MonthCursor,
    Period,
    PeriodStats,
)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def round_half_up(value: Decimal) -> int:
    """Round to the nearest integer, halves towards +infinity."""
    return int((value + Decimal("0.5")).to_integral_value(rounding=ROUND_FLOOR))


def start_of_week(day: date) -> date:
    """Most recent Sunday at or before the day."""
    return day - timedelta(days=(day.weekday() + 1) % 7)


def window_for(period: Period, reference_date: date, cursor: MonthCursor) -> DateWindow:
    """The current window for a period."""
    if period is Period.DAY:
        return DateWindow(start=reference_date, end=reference_date)
    if period is Period.WEEK:
        return DateWindow(start=start_of_week(reference_date), end=reference_date)
    if period is Period.MONTH:
        return DateWindow(start=cursor.first_day, end=cursor.last_day)
    return DateWindow(start=date(cursor.year, 1, 1), end=date(cursor.year, 12, 31))


def previous_window_for(period: Period, reference_date: date, cursor: MonthCursor) -> DateWindow:
    """The window immediately before the current one, same granularity."""
    if period is Period.DAY:
        yesterday = reference_date - timedelta(days=1)
        return DateWindow(start=yesterday, end=yesterday)
    if period is Period.WEEK:
        week_start = start_of_week(reference_date)
        return DateWindow(start=week_start - timedelta(days=7), end=week_start - timedelta(days=1))
    if period is Period.MONTH:
        previous = cursor.previous()
        return DateWindow(start=previous.first_day, end=previous.last_day)
    return DateWindow(start=date(cursor.year - 1, 1, 1), end=date(cursor.year - 1, 12, 31))


def _total(expenses: Iterable[Expense]) -> Decimal:
    return sum((e.amount for e in expenses), ZERO)


def category_breakdown(
    expenses: list[Expense],
    total: Decimal,
    categories: Iterable[Category] = (),
) -> list[CategoryShare]:
    """
    Per-category totals, largest first.

    Grouped by the category ID the expenses carry, so spend on a
    category that no longer resolves is still counted. Display fields
    are filled in from the matching Category when there is one.
    """
    amounts: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for expense in expenses:
        amounts[expense.category] += expense.amount

    known = {c.id: c for c in categories}
    shares = []
    for category_id, amount in amounts.items():
        if amount <= 0:
            continue
        percentage = round_half_up(amount / total * HUNDRED) if total > 0 else 0
        category = known.get(category_id)
        shares.append(CategoryShare(
            category_id=category_id,
            amount=amount,
            percentage=percentage,
            label=category.label if category else None,
            emoji=category.emoji if category else None,
            color=category.color if category else None,
        ))

    # Ties broken by ID so the order is stable across calls
    shares.sort(key=lambda s: (-s.amount, s.category_id))
    return shares


def percent_change(total: Decimal, previous_total: Decimal) -> int:
    """Change vs the previous total; 0 when there is nothing to compare against."""
    if previous_total <= 0:
        return 0
    return round_half_up((total - previous_total) / previous_total * HUNDRED)


def aggregate(
    expenses: Iterable[Expense],
    period: Period,
    reference_date: date,
    calendar_month: int,
    calendar_year: int,
    categories: Iterable[Category] = (),
) -> PeriodStats:
    """
    Totals for one period window and the window before it.

    Args:
        expenses: Expenses of one ledger snapshot
        period: Window granularity
        reference_date: "Today" for the day and week windows
        calendar_month: Displayed month (1-12) for the month window
        calendar_year: Displayed year for the month and year windows
        categories: Used only to label the breakdown

    Never raises on an empty or zero-total input.
    """
    period = Period(period)
    cursor = MonthCursor(month=calendar_month, year=calendar_year)
    window = window_for(period, reference_date, cursor)
    previous_window = previous_window_for(period, reference_date, cursor)

    current: list[Expense] = []
    previous: list[Expense] = []
    for expense in expenses:
        if window.contains(expense.date):
            current.append(expense)
        elif previous_window.contains(expense.date):
            previous.append(expense)

    total = _total(current)
    previous_total = _total(previous)

    return PeriodStats(
        period=period,
        window=window,
        previous_window=previous_window,
        total=total,
        by_category=category_breakdown(current, total, categories),
        previous_total=previous_total,
        change=percent_change(total, previous_total),
    )


def aggregate_cursor(
    expenses: Iterable[Expense],
    period: Period,
    reference_date: date,
    cursor: Optional[MonthCursor] = None,
    categories: Iterable[Category] = (),
) -> PeriodStats:
    """aggregate() with the displayed month given as a MonthCursor."""
    cursor = cursor or MonthCursor.from_date(reference_date)
    return aggregate(expenses, period, reference_date, cursor.month, cursor.year, categories)
