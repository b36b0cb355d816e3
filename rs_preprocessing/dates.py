"""
Date list and interval helpers for time-series compositing.

Interval starts are generated at a fixed cadence between a start and end
date. Each interval's end is derived separately from a window length, so
cadence and window are independent (a 1-year step with a 121-day window
leaves gaps between intervals on purpose).
"""

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import List, Sequence, Union

from .errors import InvalidRangeError

DateLike = Union[str, date, datetime]

UNIT_ALIASES = {
    'day': 'days',
    'days': 'days',
    'week': 'weeks',
    'weeks': 'weeks',
    'month': 'months',
    'months': 'months',
    'year': 'years',
    'years': 'years',
}


def parse_date(value: DateLike) -> datetime:
    """Convert a 'YYYY-MM-DD' string, date or datetime to a datetime."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        try:
            return datetime.strptime(value.strip(), '%Y-%m-%d')
        except ValueError:
            raise InvalidRangeError(f"Dates must be in YYYY-MM-DD format, got '{value}'")
    raise InvalidRangeError(f"Unsupported date value: {value!r}")


def _normalize_unit(unit: str) -> str:
    try:
        return UNIT_ALIASES[unit.strip().lower()]
    except (KeyError, AttributeError):
        raise InvalidRangeError(
            f"Unknown unit '{unit}'. Use one of: days, weeks, months, years"
        )


def _add_months(value: datetime, months: int) -> datetime:
    # Day is clamped to the length of the target month (Jan 31 + 1 month -> Feb 28/29)
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def advance(value: DateLike, amount: Union[int, float], unit: str) -> datetime:
    """
    Advance a date by an amount of calendar units.

    Month and year arithmetic is calendar-aware: the day of month is kept
    where possible and clamped to the last day of shorter months, and
    Feb 29 plus one year lands on Feb 28.

    Parameters:
    -----------
    value : DateLike
        Starting date
    amount : Union[int, float]
        Number of units to add (may be negative). Must be whole for months
        and years.
    unit : str
        One of 'days', 'weeks', 'months', 'years'

    Returns:
    --------
    datetime : The advanced date
    """
    start = parse_date(value)
    unit = _normalize_unit(unit)

    if unit == 'days':
        return start + timedelta(days=amount)
    if unit == 'weeks':
        return start + timedelta(weeks=amount)

    if int(amount) != amount:
        raise InvalidRangeError(f"Step in {unit} must be a whole number, got {amount}")
    months = int(amount) * (12 if unit == 'years' else 1)
    return _add_months(start, months)


def generate_intervals(
    start: DateLike,
    end: DateLike,
    step: Union[int, float],
    unit: str
) -> List[datetime]:
    """
    Generate interval start dates between start and end at a fixed cadence.

    Returns start + k * step for k = 0..N, including every date <= end.
    Each date is computed from start directly, so month steps do not
    drift after passing through a short month. A trailing interval that
    extends past end is not dropped; callers decide how to treat it.

    Parameters:
    -----------
    start : DateLike
        First interval start ('YYYY-MM-DD', date or datetime)
    end : DateLike
        Last allowed interval start
    step : Union[int, float]
        Cadence, must be > 0
    unit : str
        One of 'days', 'weeks', 'months', 'years'

    Returns:
    --------
    List[datetime] : Strictly increasing list of interval start dates

    Raises:
    -------
    InvalidRangeError
        If end < start, step <= 0, or the unit is unknown

    Example:
    --------
    >>> [d.strftime('%Y-%m-%d') for d in generate_intervals('2020-06-01', '2024-06-01', 1, 'years')]
    ['2020-06-01', '2021-06-01', '2022-06-01', '2023-06-01', '2024-06-01']
    """
    start_date = parse_date(start)
    end_date = parse_date(end)
    unit = _normalize_unit(unit)

    if step is None or step <= 0:
        raise InvalidRangeError(f"step must be greater than 0, got {step}")
    if end_date < start_date:
        raise InvalidRangeError(
            f"end date {end_date:%Y-%m-%d} is before start date {start_date:%Y-%m-%d}"
        )

    dates = []
    k = 0
    current = start_date
    while current <= end_date:
        dates.append(current)
        k += 1
        current = advance(start_date, k * step, unit)
    return dates


@dataclass(frozen=True)
class Interval:
    """A compositing window [start, end)."""
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end <= self.start:
            raise InvalidRangeError(
                f"Interval end {self.end:%Y-%m-%d} must be after start {self.start:%Y-%m-%d}"
            )

    @property
    def year(self) -> int:
        return self.start.year

    @property
    def month(self) -> int:
        return self.start.month

    @property
    def label(self) -> str:
        return self.start.strftime('%Y-%m-%d')

    def contains(self, value: DateLike) -> bool:
        """True when start <= value < end."""
        moment = parse_date(value)
        return self.start <= moment < self.end


def make_intervals(
    start: DateLike,
    end: DateLike,
    step: Union[int, float],
    unit: str,
    window: Union[int, float, None] = None,
    window_unit: str = None
) -> List[Interval]:
    """
    Build intervals from generated start dates and a window length.

    When window is omitted the window equals the cadence, giving
    contiguous intervals.
    """
    if window is None:
        window = step
    if window_unit is None:
        window_unit = unit
    if window <= 0:
        raise InvalidRangeError(f"window must be greater than 0, got {window}")

    return [
        Interval(start=d, end=advance(d, window, window_unit))
        for d in generate_intervals(start, end, step, unit)
    ]


def chunk_intervals(intervals: Sequence[Interval], size: int) -> List[List[Interval]]:
    """Split intervals into batches, e.g. 5-year batches for large AOIs."""
    if size <= 0:
        raise InvalidRangeError(f"chunk size must be greater than 0, got {size}")
    return [list(intervals[i:i + size]) for i in range(0, len(intervals), size)]
