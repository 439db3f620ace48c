"""The event store contract the engine relies on.

the store owns everything about *how* numbers are computed - storage,
sampling, merging imported data, realtime windows. the engine only ever talks
to it through these six calls and treats any exception from them as a
StoreError.

rows use the bare dimension name as the key for the dimension value, e.g. a
breakdown on "visit:source" returns [{"source": "Google", "visitors": 3}].
"""

from collections.abc import Sequence
from typing import Any, Protocol

from trafficlens.models.query import Query
from trafficlens.models.site import Site

Row = dict[str, Any]

# first-class metrics the store knows how to compute
METRICS = (
    "visitors",
    "visits",
    "pageviews",
    "events",
    "bounce_rate",
    "visit_duration",
    "time_on_page",
    "views_per_visit",
    "sample_percent",
)


class StatsStore(Protocol):
    """Interface to the event/session store."""

    def aggregate(self, site: Site, query: Query, metrics: Sequence[str]) -> dict[str, dict[str, Any]]:
        """Totals over the whole query: {"visitors": {"value": 12}, ...}."""
        ...

    def breakdown(
        self,
        site: Site,
        query: Query,
        dimension: str,
        metrics: Sequence[str],
        pagination: tuple[int, int],
    ) -> list[Row]:
        """Metrics grouped by one dimension, ordered by the first metric descending."""
        ...

    def timeseries(self, site: Site, query: Query, metrics: Sequence[str]) -> list[Row]:
        """One row per interval bucket, {"date": label, metric: value}, ascending."""
        ...

    def current_visitors(self, site: Site) -> int:
        ...

    def props(self, site: Site, query: Query) -> dict[str, list[str]]:
        """Custom property names seen per goal."""
        ...

    def filter_suggestions(
        self, site: Site, query: Query, filter_name: str, partial: str | None
    ) -> list[Any]:
        ...


def dimension_column(dimension: str) -> str:
    """Row key for a namespaced dimension: "visit:utm_source" -> "utm_source"."""
    return dimension.rsplit(":", 1)[-1]
