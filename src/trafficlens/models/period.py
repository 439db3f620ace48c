"""Pydantic models for periods, intervals and date ranges.

a period is the shape of the calendar window the user picked ("last 7 days",
"this month"), an interval is how results get bucketed inside it. the two are
related - you can't bucket a single day by month - so the allowed combinations
live here next to the enums.
"""

from datetime import date, timedelta
from enum import Enum
from typing import Iterator, Self

from pydantic import BaseModel, ConfigDict, model_validator


class Period(str, Enum):
    """Named calendar window shapes."""

    REALTIME = "realtime"
    DAY = "day"
    LAST_7_DAYS = "7d"
    LAST_30_DAYS = "30d"
    MONTH = "month"
    LAST_6_MONTHS = "6mo"
    LAST_12_MONTHS = "12mo"
    YEAR = "year"
    ALL = "all"
    CUSTOM = "custom"
    # never parsed from a request - realtime queries are narrowed to this
    # right before they hit the store
    LAST_30_MINUTES = "30m"


class Interval(str, Enum):
    """Bucket granularity for time series, finest first."""

    MINUTE = "minute"
    HOUR = "hour"
    DATE = "date"
    WEEK = "week"
    MONTH = "month"


DEFAULT_INTERVALS: dict[Period, Interval] = {
    Period.REALTIME: Interval.MINUTE,
    Period.LAST_30_MINUTES: Interval.MINUTE,
    Period.DAY: Interval.HOUR,
    Period.LAST_7_DAYS: Interval.DATE,
    Period.LAST_30_DAYS: Interval.DATE,
    Period.MONTH: Interval.DATE,
    Period.CUSTOM: Interval.DATE,
    Period.LAST_6_MONTHS: Interval.MONTH,
    Period.LAST_12_MONTHS: Interval.MONTH,
    Period.YEAR: Interval.MONTH,
    Period.ALL: Interval.MONTH,
}

# an interval has to be finer than the period it groups
VALID_INTERVALS: dict[Period, tuple[Interval, ...]] = {
    Period.REALTIME: (Interval.MINUTE,),
    Period.LAST_30_MINUTES: (Interval.MINUTE,),
    Period.DAY: (Interval.MINUTE, Interval.HOUR),
    Period.LAST_7_DAYS: (Interval.HOUR, Interval.DATE),
    Period.LAST_30_DAYS: (Interval.DATE, Interval.WEEK),
    Period.MONTH: (Interval.DATE, Interval.WEEK),
    Period.LAST_6_MONTHS: (Interval.DATE, Interval.WEEK, Interval.MONTH),
    Period.LAST_12_MONTHS: (Interval.DATE, Interval.WEEK, Interval.MONTH),
    Period.YEAR: (Interval.DATE, Interval.WEEK, Interval.MONTH),
    Period.CUSTOM: (Interval.DATE, Interval.WEEK, Interval.MONTH),
    Period.ALL: (Interval.DATE, Interval.WEEK, Interval.MONTH),
}


def default_interval(period: Period) -> Interval:
    """Natural interval for a period."""
    return DEFAULT_INTERVALS[period]


def valid_for_period(period: Period, interval: Interval) -> bool:
    """Check whether an interval may be used to group a period."""
    return interval in VALID_INTERVALS.get(period, ())


class DateRange(BaseModel):
    """Inclusive range of local calendar dates."""

    model_config = ConfigDict(frozen=True)

    first: date
    last: date

    @model_validator(mode="after")
    def check_order(self) -> Self:
        if self.first > self.last:
            raise ValueError(f"range start {self.first} is after its end {self.last}")
        return self

    @property
    def days(self) -> int:
        """Length of the range in days, both ends counted."""
        return (self.last - self.first).days + 1

    def __contains__(self, day: object) -> bool:
        return isinstance(day, date) and self.first <= day <= self.last

    def dates(self) -> Iterator[date]:
        """Every date in the range, ascending."""
        cursor = self.first
        while cursor <= self.last:
            yield cursor
            cursor += timedelta(days=1)

    def shift(self, days: int) -> "DateRange":
        delta = timedelta(days=days)
        return DateRange(first=self.first + delta, last=self.last + delta)
