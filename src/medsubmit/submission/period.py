"""Legal submission window calculations.

Batches may only be promoted to the queue between ``start_day`` and
``end_day`` (inclusive) of each month. All functions here are pure and work at
day granularity on whatever date or datetime they are given; callers convert
to the configured local time zone first.
"""

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional, Union

DEFAULT_START_DAY = 5
DEFAULT_END_DAY = 10

DateLike = Union[date, datetime]


@dataclass(frozen=True)
class SubmissionPeriod:
    """One legal submission window.

    Attributes:
        start: First instant of the window (00:00:00 on the start day)
        end: Last instant of the window (23:59:59 on the end day)
    """

    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end

    def to_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


def is_within_submission_period(
    moment: DateLike,
    start_day: int = DEFAULT_START_DAY,
    end_day: int = DEFAULT_END_DAY,
) -> bool:
    """Return True if ``moment`` falls on a day inside the submission window.

    A window reaching past the end of a short month is clamped to its last day,
    matching ``next_submission_period``.

    Example:
        >>> is_within_submission_period(date(2024, 5, 5))
        True
        >>> is_within_submission_period(date(2024, 5, 11))
        False
    """
    last_day = calendar.monthrange(moment.year, moment.month)[1]
    return min(start_day, last_day) <= moment.day <= min(end_day, last_day)


def _window_for_month(year: int, month: int, start_day: int, end_day: int, tzinfo) -> SubmissionPeriod:
    # Short months clamp the window to their last day
    last_day = calendar.monthrange(year, month)[1]
    start = datetime.combine(date(year, month, min(start_day, last_day)), time.min, tzinfo=tzinfo)
    end = datetime.combine(
        date(year, month, min(end_day, last_day)), time(23, 59, 59), tzinfo=tzinfo
    )
    return SubmissionPeriod(start=start, end=end)


def next_submission_period(
    moment: DateLike,
    start_day: int = DEFAULT_START_DAY,
    end_day: int = DEFAULT_END_DAY,
) -> SubmissionPeriod:
    """Return the current window, or next month's window once this one has passed.

    The window is in the same time zone as ``moment`` (naive for dates and
    naive datetimes).

    Example:
        >>> next_submission_period(date(2024, 12, 11)).start.date()
        datetime.date(2025, 1, 5)
    """
    tzinfo: Optional[object] = moment.tzinfo if isinstance(moment, datetime) else None
    year, month = moment.year, moment.month

    if moment.day > end_day:
        if month == 12:
            year, month = year + 1, 1
        else:
            month += 1

    return _window_for_month(year, month, start_day, end_day, tzinfo)


def days_until_period(
    moment: DateLike,
    start_day: int = DEFAULT_START_DAY,
    end_day: int = DEFAULT_END_DAY,
) -> int:
    """Return whole days until the next window opens (0 while inside it)."""
    if is_within_submission_period(moment, start_day, end_day):
        return 0
    period = next_submission_period(moment, start_day, end_day)
    current = moment.date() if isinstance(moment, datetime) else moment
    return (period.start.date() - current).days
