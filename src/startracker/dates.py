"""Calendar helpers shared by the evaluation, challenge and redemption flows.

All day arithmetic uses the local calendar of the injected clock: an
evaluation belongs to the local date on which it was submitted and a
challenge week starts on Monday 00:00 local time.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta
from typing import Callable, Tuple

Clock = Callable[[], datetime]


def system_clock() -> datetime:
    """Return naive local time."""

    return datetime.now()


def week_start_for(day: date) -> date:
    """Return the Monday that opens the week containing ``day``."""

    return day - timedelta(days=day.weekday())


def day_index_for(day: date) -> int:
    """Return the weekday index used by challenge progress rows (Mon=1 … Sun=7)."""

    return day.isoweekday()


def month_bounds(year: int, month: int) -> Tuple[date, date]:
    """Return the first and last day of ``month``."""

    if not 1 <= month <= 12:
        raise ValueError(f"Month must be between 1 and 12, got {month}.")
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


__all__ = ["Clock", "system_clock", "week_start_for", "day_index_for", "month_bounds"]
