"""Pydantic models for stats queries.

a Query is what every store call receives: which dates, how to bucket them,
which filters. it's frozen - every "change" (adding a filter, stripping goal
filters for a conversion-rate denominator, shifting dates for a comparison)
hands back a new Query and leaves the original alone. that matters because
the primary and comparison store calls run concurrently.
"""

from collections.abc import Iterable
from datetime import date
from enum import Enum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from trafficlens.models.filters import FilterClause
from trafficlens.models.period import DateRange, Interval, Period

DEFAULT_SAMPLE_THRESHOLD = 20_000_000

# prefixes of the dimension keys a filter can target
VISIT_PREFIX = "visit:"
EVENT_PREFIX = "event:"
PROPS_PREFIX = "event:props:"


class Query(BaseModel):
    """A fully resolved, time-bounded, filtered stats query."""

    model_config = ConfigDict(frozen=True)

    period: Period
    date_range: DateRange
    interval: Interval
    filters: dict[str, FilterClause] = Field(default_factory=dict)
    sample_threshold: int = DEFAULT_SAMPLE_THRESHOLD
    include_imported: bool = False
    # what the caller asked for - include_imported is the answer after the
    # site/range/filter checks. comparisons redo the checks from this flag.
    imported_requested: bool = False
    is_comparison: bool = False

    @model_validator(mode="before")
    @classmethod
    def drop_imported_when_filtered(cls, data: Any) -> Any:
        # imported data has no per-event detail, so it can't be filtered
        if isinstance(data, dict) and data.get("filters"):
            data = {**data, "include_imported": False}
        return data

    def replace(self, **changes: Any) -> "Query":
        """Return a re-validated copy with some fields changed."""
        return type(self)(**{**dict(self), **changes})

    def put_filter(self, key: str, clause: FilterClause) -> "Query":
        """Add or replace the clause for one dimension key."""
        return self.replace(filters={**self.filters, key: clause})

    def remove_event_filters(self, kinds: Iterable[str]) -> "Query":
        """Drop page, goal and/or custom-property filters.

        used to build the "everyone, not just converters" denominator for
        conversion rates. kinds is any of "page", "goal", "props".
        """
        kinds = set(kinds)
        kept = {}
        for key, clause in self.filters.items():
            if "page" in kinds and key == "event:page":
                continue
            if "goal" in kinds and key == "event:goal":
                continue
            if "props" in kinds and key.startswith(PROPS_PREFIX):
                continue
            kept[key] = clause
        return self.replace(filters=kept)

    def has_event_filters(self) -> bool:
        return any(key.startswith(EVENT_PREFIX) for key in self.filters)

    def get_filter_by_prefix(self, prefix: str) -> tuple[str, FilterClause] | None:
        """First (key, clause) whose key starts with prefix, or None."""
        for key, clause in self.filters.items():
            if key.startswith(prefix):
                return key, clause
        return None

    @property
    def has_goal_filter(self) -> bool:
        return "event:goal" in self.filters

    def for_execution(self) -> "Query":
        """Query as sent to the store - realtime narrows to the last 30 minutes."""
        if self.period == Period.REALTIME:
            return self.replace(period=Period.LAST_30_MINUTES)
        return self


class ComparisonMode(str, Enum):
    OFF = "off"
    PREVIOUS_PERIOD = "previous_period"
    YEAR_OVER_YEAR = "year_over_year"
    CUSTOM = "custom"


class ComparisonDirective(BaseModel):
    """How (and whether) to derive a comparison query. Never persisted."""

    model_config = ConfigDict(frozen=True)

    mode: ComparisonMode = ComparisonMode.OFF
    from_date: date | None = None
    to_date: date | None = None
    match_day_of_week: bool = False


class Pagination(BaseModel):
    model_config = ConfigDict(frozen=True)

    limit: int = 9
    page: int = 1

    @model_validator(mode="after")
    def check_positive(self) -> Self:
        if self.limit < 1 or self.page < 1:
            raise ValueError("limit and page must be positive")
        return self

    def as_tuple(self) -> tuple[int, int]:
        return self.limit, self.page
