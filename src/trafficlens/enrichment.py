"""Post-processing of store results.

everything in here is pure: rows in, new rows out. the store hands back raw
counts, this module turns them into the numbers people actually look at -
percent of total, conversion rates, change vs the comparison period - plus
the bits the graph needs (which bucket is "now", which buckets are partial).
"""

import math
from collections.abc import Iterable, Sequence
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from trafficlens.dates import beginning_of_month, beginning_of_week, end_of_month, end_of_week
from trafficlens.models.period import Interval
from trafficlens.models.query import Query
from trafficlens.store.base import Row

BLANK_LABEL = "__blank__"


def round_half_up(value: float, digits: int = 0) -> float:
    """Round with .5 going away from zero, so 12.5 is 13 and -12.5 is -13."""
    return float(Decimal(str(value)).quantize(Decimal(1).scaleb(-digits), rounding=ROUND_HALF_UP))


def percent_change(old: float | None, new: float | None) -> int | None:
    """Relative change in whole percent. None when there's nothing to compare to."""
    if old is None or new is None:
        return None
    if old == 0:
        return 100 if new > 0 else 0
    return int(round_half_up((new - old) / old * 100))


def calculate_change(metric: str, old: float | None, new: float | None) -> float | int | None:
    """Change for a top stat.

    bounce rate is already a percentage, so its change is the difference in
    points rather than a ratio - and meaningless if the old rate was zero.
    """
    if old is None:
        return None
    if metric == "bounce_rate":
        return new - old if old > 0 and new is not None else None
    return percent_change(old, new)


def calculate_cr(total: float | None, converted: float | None) -> float | None:
    """Conversion rate in percent, one decimal."""
    if total is None:
        return None
    if total > 0:
        return round_half_up((converted or 0) / total * 100, 1)
    return 0.0


def add_percentages(rows: Sequence[Row], query: Query, metric: str = "visitors") -> list[Row]:
    """Share of the total for each row, skipped when a goal filter is active."""
    if query.has_goal_filter:
        return list(rows)

    total = sum(row.get(metric) or 0 for row in rows)
    return [
        {**row, "percentage": int(round_half_up((row.get(metric) or 0) / total * 100)) if total else 0}
        for row in rows
    ]


def add_cr(rows: Sequence[Row], rows_without_goal: Sequence[Row], key: str) -> list[Row]:
    """Overlay conversion rates from a goal-less breakdown over the same values."""
    # member filters compare as strings, so key both sides that way
    totals = {str(row.get(key)): row.get("visitors") for row in rows_without_goal}
    enriched = []
    for row in rows:
        total = totals.get(str(row.get(key)))
        enriched.append(
            {
                **row,
                "total_visitors": total,
                "conversion_rate": calculate_cr(total, row.get("visitors")),
            }
        )
    return enriched


def exit_rate(total_exits: float, pageviews: float | None) -> float | None:
    if not pageviews:
        return None
    return float(math.floor(total_exits / pageviews * 100))


def transform_keys(rows: Iterable[Row], renames: dict[str, str]) -> list[Row]:
    """Rename row keys, leaving the rest alone. Insertion order is kept."""
    return [{renames.get(key, key): value for key, value in row.items()} for row in rows]


# --- time series helpers ---


def label_key(label: Any) -> str:
    """Canonical string form of a bucket label so labels compare reliably."""
    if isinstance(label, datetime):
        return label.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(label, date):
        return label.isoformat()
    return str(label)


def _label_date(label: Any) -> date | None:
    if isinstance(label, datetime):
        return label.date()
    if isinstance(label, date):
        return label
    try:
        return date.fromisoformat(str(label)[:10])
    except ValueError:
        return None


def plot_timeseries(rows: Sequence[Row], metric: str) -> list[Any]:
    return [row.get(metric) or 0 for row in rows]


def label_timeseries(rows: Sequence[Row], comparison_rows: Sequence[Row] | None = None) -> list[Any]:
    """Bucket labels, padded with blanks when the comparison has more buckets."""
    labels = [row["date"] for row in rows]
    if comparison_rows is not None:
        blanks = len(comparison_rows) - len(rows)
        if blanks > 0:
            labels.extend([BLANK_LABEL] * blanks)
    return labels


def current_bucket_label(query: Query, now: datetime) -> str:
    """Label of the bucket containing now (already in the site's timezone)."""
    match query.interval:
        case Interval.MINUTE:
            return now.strftime("%Y-%m-%d %H:%M:00")
        case Interval.HOUR:
            return now.strftime("%Y-%m-%d %H:00:00")
        case Interval.DATE:
            return now.date().isoformat()
        case Interval.WEEK:
            today = now.date()
            week_start = beginning_of_week(today)
            # the first bucket of a range starts at the range start, not monday
            return (week_start if week_start in query.date_range else today).isoformat()
        case Interval.MONTH:
            return beginning_of_month(now.date()).isoformat()


def present_index(query: Query, labels: Sequence[Any], now: datetime) -> int | None:
    """Index of the current bucket in labels, None if now is outside them."""
    current = current_bucket_label(query, now)
    for index, label in enumerate(labels):
        if label_key(label) == current:
            return index
    return None


def full_intervals(query: Query, labels: Sequence[Any]) -> dict[str, bool] | None:
    """For week/month buckets, whether each bucket lies entirely inside the range."""
    if query.interval == Interval.WEEK:
        bounds = (beginning_of_week, end_of_week)
    elif query.interval == Interval.MONTH:
        bounds = (beginning_of_month, end_of_month)
    else:
        return None

    start_of, end_of = bounds
    result = {}
    for label in labels:
        day = _label_date(label)
        if day is None:
            continue
        result[label_key(label)] = start_of(day) in query.date_range and end_of(day) in query.date_range
    return result
