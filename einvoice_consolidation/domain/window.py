"""
Consolidation calendar -- pure period and retry-window arithmetic.

ZERO I/O.  All functions are deterministic over their inputs; "today"
is always passed in by the caller (from the injected Clock, in the
tenant's timezone).

Months are 1..12 throughout.
"""

from __future__ import annotations

import calendar
from datetime import date, timedelta


def month_end(year: int, month: int) -> date:
    """Last calendar day of ``year``/``month``."""
    _validate_month(month)
    return date(year, month, calendar.monthrange(year, month)[1])


def month_start(year: int, month: int) -> date:
    _validate_month(month)
    return date(year, month, 1)


def next_period(year: int, month: int) -> tuple[int, int]:
    """The (year, month) following ``year``/``month``."""
    _validate_month(month)
    if month == 12:
        return year + 1, 1
    return year, month + 1


def previous_period(year: int, month: int) -> tuple[int, int]:
    _validate_month(month)
    if month == 1:
        return year - 1, 12
    return year, month - 1


def first_attempt_date(year: int, month: int, offset_days: int = 1) -> date:
    """Day the task for ``year``/``month`` is first attempted."""
    return month_end(year, month) + timedelta(days=offset_days)


def retry_cutoff(year: int, month: int, retry_days: int = 7) -> date:
    """Last day on which the task for ``year``/``month`` may still run."""
    return month_end(year, month) + timedelta(days=retry_days)


def is_window_expired(
    year: int, month: int, today: date, retry_days: int = 7,
) -> bool:
    return today > retry_cutoff(year, month, retry_days)


def next_retry_date(
    year: int, month: int, today: date, retry_days: int = 7,
) -> date | None:
    """Tomorrow if it is still inside the retry window, else None."""
    tomorrow = today + timedelta(days=1)
    if tomorrow <= retry_cutoff(year, month, retry_days):
        return tomorrow
    return None


def _validate_month(month: int) -> None:
    if not 1 <= month <= 12:
        raise ValueError(f"month must be 1..12, got {month}")
