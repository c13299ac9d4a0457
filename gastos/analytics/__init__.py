"""Read-side derivations over a ledger snapshot."""

from gastos.analytics.aggregator import (
    aggregate,
    aggregate_cursor,
    category_breakdown,
    percent_change,
    previous_window_for,
    round_half_up,
    start_of_week,
    window_for,
)
from gastos.analytics.calendar import CalendarBucketer

__all__ = [
    "aggregate",
    "aggregate_cursor",
    "category_breakdown",
    "percent_change",
    "previous_window_for",
    "round_half_up",
    "start_of_week",
    "window_for",
    "CalendarBucketer",
]
