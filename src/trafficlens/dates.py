"""Period resolution: period keyword + anchor date -> date range and interval.

all the calendar arithmetic happens on plain dates in the site's local
calendar. the caller works out "today" in the site's timezone and passes it
in, which keeps everything here pure and easy to test.
"""

import calendar
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any

from trafficlens.config import EngineSettings, UnknownPeriodPolicy
from trafficlens.errors import QueryValidationError
from trafficlens.models.period import (
    DateRange,
    Interval,
    Period,
    default_interval,
    valid_for_period,
)

logger = logging.getLogger(__name__)

DATE_ERROR = (
    "Failed to parse date argument. Only ISO 8601 dates are allowed, "
    "e.g. `2019-09-07`, `2020-01-01`"
)
INTERVAL_GRANULARITY_ERROR = (
    "Invalid combination of interval and period. Interval must be smaller than "
    "the selected period, e.g. `period=day,interval=minute`"
)


@dataclass(frozen=True)
class ResolvedPeriod:
    """Output of period resolution."""

    period: Period
    date_range: DateRange
    interval: Interval


# --- calendar helpers ---


def beginning_of_month(day: date) -> date:
    return day.replace(day=1)


def end_of_month(day: date) -> date:
    return day.replace(day=calendar.monthrange(day.year, day.month)[1])


def shift_months(day: date, months: int) -> date:
    """Move by whole months, clamping to the last day of the target month."""
    index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(index, 12)
    last = calendar.monthrange(year, month + 1)[1]
    return date(year, month + 1, min(day.day, last))


def shift_years(day: date, years: int) -> date:
    # 29 Feb lands on 28 Feb in non-leap years
    return shift_months(day, years * 12)


def beginning_of_week(day: date) -> date:
    """Monday of the ISO week containing day."""
    return day - timedelta(days=day.weekday())


def end_of_week(day: date) -> date:
    return beginning_of_week(day) + timedelta(days=6)


def months_between(start: date, end: date) -> int:
    """Whole months from start to end (can be negative)."""
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if months > 0 and end.day < start.day:
        months -= 1
    return months


# --- parameter validation ---


def parse_iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value.strip())
    except (ValueError, AttributeError) as e:
        raise QueryValidationError(DATE_ERROR) from e


def parse_interval(value: str) -> Interval:
    try:
        return Interval(value)
    except ValueError as e:
        accepted = ", ".join(i.value for i in Interval)
        raise QueryValidationError(
            f"Invalid value for interval. Accepted values are: {accepted}"
        ) from e


def validate_params(params: Mapping[str, Any]) -> None:
    """Check date, interval and interval/period compatibility up front.

    runs before any Query is built so a bad request never gets as far as
    touching the store.
    """
    raw_date = params.get("date")
    if params.get("period") == "custom" and raw_date and "," in raw_date:
        for part in raw_date.split(",", 1):
            parse_iso_date(part)
    elif raw_date is not None and raw_date != "today":
        parse_iso_date(raw_date)

    raw_interval = params.get("interval")
    if raw_interval is None:
        return
    interval = parse_interval(raw_interval)

    raw_period = params.get("period")
    if raw_period is None:
        return
    try:
        period = Period(raw_period)
    except ValueError:
        # unknown periods are dealt with (or defaulted) during resolution
        return
    if not valid_for_period(period, interval):
        raise QueryValidationError(INTERVAL_GRANULARITY_ERROR)


# --- resolution ---


def _anchor(params: Mapping[str, Any], today: date) -> date:
    raw = params.get("date")
    if raw is None or raw == "today":
        return today
    return parse_iso_date(raw)


def _interval(params: Mapping[str, Any], period: Period) -> Interval:
    raw = params.get("interval")
    return parse_interval(raw) if raw else default_interval(period)


def _custom_bounds(params: Mapping[str, Any]) -> DateRange:
    if params.get("from") and params.get("to"):
        raw_from, raw_to = params["from"], params["to"]
    elif params.get("date") and "," in params["date"]:
        raw_from, raw_to = params["date"].split(",", 1)
    else:
        raise QueryValidationError(
            "Custom period requires `from` and `to` dates, e.g. `from=2021-09-06&to=2021-12-13`"
        )

    first, last = parse_iso_date(raw_from), parse_iso_date(raw_to)
    if first > last:
        raise QueryValidationError(
            f"Invalid custom date range: `from` ({first}) is after `to` ({last})"
        )
    return DateRange(first=first, last=last)


def _parse_period(raw: Any, settings: EngineSettings) -> Period:
    if raw is None:
        return Period.LAST_30_DAYS
    try:
        period = Period(raw)
    except ValueError:
        period = None

    # 30m is an execution detail of realtime, not something callers ask for
    if period is None or period == Period.LAST_30_MINUTES:
        if settings.unknown_period_policy == UnknownPeriodPolicy.REJECT:
            accepted = ", ".join(p.value for p in Period if p != Period.LAST_30_MINUTES)
            raise QueryValidationError(
                f"Invalid value for period. Accepted values are: {accepted}"
            )
        logger.debug("unrecognised period %r, defaulting to 30d", raw)
        return Period.LAST_30_DAYS
    return period


def resolve_period(
    params: Mapping[str, Any],
    today: date,
    stats_start_date: date | None = None,
    settings: EngineSettings | None = None,
) -> ResolvedPeriod:
    """Turn request parameters into a concrete date range and interval.

    Args:
        params: raw request params (period, date, from, to, interval).
        today: current date in the site's timezone.
        stats_start_date: site's first recorded date, only used by `all`.
        settings: engine policies, defaults if omitted.
    """
    settings = settings or EngineSettings()
    period = _parse_period(params.get("period"), settings)

    match period:
        case Period.REALTIME:
            date_range = DateRange(first=today, last=today)
        case Period.DAY:
            anchor = _anchor(params, today)
            date_range = DateRange(first=anchor, last=anchor)
        case Period.LAST_7_DAYS:
            anchor = _anchor(params, today)
            date_range = DateRange(first=anchor - timedelta(days=6), last=anchor)
        case Period.LAST_30_DAYS:
            anchor = _anchor(params, today)
            date_range = DateRange(first=anchor - timedelta(days=30), last=anchor)
        case Period.MONTH:
            anchor = _anchor(params, today)
            date_range = DateRange(first=beginning_of_month(anchor), last=end_of_month(anchor))
        case Period.LAST_6_MONTHS | Period.LAST_12_MONTHS:
            back = 5 if period == Period.LAST_6_MONTHS else 11
            last = end_of_month(_anchor(params, today))
            first = beginning_of_month(shift_months(last, -back))
            date_range = DateRange(first=first, last=last)
        case Period.YEAR:
            anchor = _anchor(params, today)
            date_range = DateRange(first=anchor.replace(month=1, day=1), last=anchor.replace(month=12, day=31))
        case Period.CUSTOM:
            date_range = _custom_bounds(params)
        case Period.ALL:
            return _resolve_all(params, today, stats_start_date, settings)

    interval = _interval(params, period)
    if not valid_for_period(period, interval):
        raise QueryValidationError(INTERVAL_GRANULARITY_ERROR)
    return ResolvedPeriod(period=period, date_range=date_range, interval=interval)


def _resolve_all(
    params: Mapping[str, Any],
    today: date,
    stats_start_date: date | None,
    settings: EngineSettings,
) -> ResolvedPeriod:
    start = stats_start_date or today
    requested = params.get("interval")

    if settings.all_period_month_interval and months_between(start, today) > 0:
        interval = parse_interval(requested) if requested else Interval.MONTH
    elif (today - start).days > 0:
        interval = parse_interval(requested) if requested else Interval.DATE
    else:
        # nothing older than today - behaves like a single day, hourly
        interval = parse_interval(requested) if requested else Interval.HOUR
        if not valid_for_period(Period.DAY, interval):
            interval = Interval.HOUR
        return ResolvedPeriod(
            period=Period.ALL, date_range=DateRange(first=today, last=today), interval=interval
        )

    if not valid_for_period(Period.ALL, interval):
        raise QueryValidationError(INTERVAL_GRANULARITY_ERROR)
    return ResolvedPeriod(
        period=Period.ALL, date_range=DateRange(first=start, last=today), interval=interval
    )
