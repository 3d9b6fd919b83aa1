"""scanreview reporting modules."""

from .summary import format_table, format_trend_date, print_summary, trend_series

__all__ = [
    "format_table",
    "format_trend_date",
    "print_summary",
    "trend_series",
]
