"""DuckDB-backed stats store.

implements the StatsStore protocol over a single `events` table, one row per
pageview or custom event with the session attributes copied onto every row.
good enough to run the engine and cli end to end on a laptop. imported data
and sampling aren't implemented - sample_percent is always 100.

the connection is opened lazily and every call runs on its own cursor, so the
engine can fire the primary and comparison queries from different threads.
"""

import json
import logging
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import duckdb

from trafficlens.dates import beginning_of_month, beginning_of_week
from trafficlens.errors import StoreError
from trafficlens.filter_parser import add_prefix
from trafficlens.models.period import Interval, Period
from trafficlens.models.query import Query
from trafficlens.models.site import Site
from trafficlens.store.base import Row
from trafficlens.store.sql_builder import REALTIME_WINDOW, EventSQLBuilder

logger = logging.getLogger(__name__)

EVENTS_SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    "timestamp" TIMESTAMP NOT NULL,
    domain VARCHAR NOT NULL,
    name VARCHAR NOT NULL,
    pathname VARCHAR,
    user_id BIGINT NOT NULL,
    session_id BIGINT NOT NULL,
    referrer_source VARCHAR,
    referrer VARCHAR,
    utm_medium VARCHAR,
    utm_source VARCHAR,
    utm_campaign VARCHAR,
    utm_content VARCHAR,
    utm_term VARCHAR,
    entry_page VARCHAR,
    exit_page VARCHAR,
    screen_size VARCHAR,
    browser VARCHAR,
    browser_version VARCHAR,
    operating_system VARCHAR,
    operating_system_version VARCHAR,
    country_code VARCHAR,
    subdivision1_code VARCHAR,
    city_geoname_id BIGINT,
    props JSON
)
"""

EVENT_COLUMNS = (
    "timestamp",
    "domain",
    "name",
    "pathname",
    "user_id",
    "session_id",
    "referrer_source",
    "referrer",
    "utm_medium",
    "utm_source",
    "utm_campaign",
    "utm_content",
    "utm_term",
    "entry_page",
    "exit_page",
    "screen_size",
    "browser",
    "browser_version",
    "operating_system",
    "operating_system_version",
    "country_code",
    "subdivision1_code",
    "city_geoname_id",
    "props",
)

INT_METRICS = frozenset(
    {"visitors", "visits", "pageviews", "events", "bounce_rate", "visit_duration", "time_on_page"}
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DuckDBStore:
    """StatsStore over a DuckDB database.

    Example:
        >>> with DuckDBStore("stats.duckdb") as store:
        ...     store.current_visitors(site)
        3
    """

    def __init__(
        self,
        database_path: str | Path | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            database_path: Path to DuckDB file, or None for in-memory.
            clock: returns the current utc time, for the realtime windows.
        """
        self.database_path = str(database_path) if database_path else None
        self.builder = EventSQLBuilder()
        self._clock = clock or _utc_now
        self._conn: duckdb.DuckDBPyConnection | None = None
        self._lock = threading.Lock()

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        """Get or create the DuckDB connection, with the events table in place."""
        with self._lock:
            if self._conn is None:
                conn = duckdb.connect(self.database_path or ":memory:")
                # timestamps are stored in utc, local time is derived per site
                conn.execute("SET GLOBAL TimeZone = 'UTC'")
                conn.execute(EVENTS_SCHEMA)
                self._conn = conn
        return self._conn

    def _fetch(self, sql: str, operation: str) -> list[Row]:
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("%s sql:\n%s", operation, self.builder.format_sql(sql))

        start = time.perf_counter()
        cursor = self.conn.cursor()
        try:
            result = cursor.execute(sql)
            columns = [desc[0] for desc in result.description]
            rows = [dict(zip(columns, row)) for row in result.fetchall()]
        except duckdb.Error as e:
            raise StoreError(f"{operation} query failed: {e}", operation=operation) from e
        finally:
            cursor.close()

        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.debug("%s returned %d rows in %.2fms", operation, len(rows), elapsed_ms)
        return rows

    # --- StatsStore ---

    def aggregate(self, site: Site, query: Query, metrics: Sequence[str]) -> dict[str, dict[str, Any]]:
        sql = self.builder.aggregate(site, query, metrics, self._clock())
        row = self._fetch(sql, "aggregate")[0]

        result = {}
        for metric in metrics:
            if metric == "sample_percent":
                result[metric] = {"value": 100}
            else:
                result[metric] = {"value": _coerce(metric, row.get(metric))}
        return result

    def breakdown(
        self,
        site: Site,
        query: Query,
        dimension: str,
        metrics: Sequence[str],
        pagination: tuple[int, int],
    ) -> list[Row]:
        sql = self.builder.breakdown(site, query, dimension, metrics, pagination, self._clock())
        rows = self._fetch(sql, "breakdown")
        return [{key: _coerce(key, value) for key, value in row.items()} for row in rows]

    def timeseries(self, site: Site, query: Query, metrics: Sequence[str]) -> list[Row]:
        sql = self.builder.timeseries(site, query, metrics, self._clock())
        by_label = {row["date"]: row for row in self._fetch(sql, "timeseries")}

        series = []
        for label in bucket_labels(query, site.now(self._clock())):
            row = by_label.get(label, {})
            series.append({"date": label, **{m: _coerce(m, row.get(m)) or 0 for m in metrics}})
        return series

    def current_visitors(self, site: Site) -> int:
        rows = self._fetch(self.builder.current_visitors(site, self._clock()), "current_visitors")
        return rows[0]["visitors"] or 0

    def props(self, site: Site, query: Query) -> dict[str, list[str]]:
        goal_names = [goal.event_name for goal in site.goals if goal.event_name]
        if not goal_names:
            return {}

        result: dict[str, list[str]] = {}
        for row in self._fetch(self.builder.props(site, query, goal_names, self._clock()), "props"):
            result.setdefault(row["goal"], []).append(row["prop"])
        return result

    def filter_suggestions(
        self, site: Site, query: Query, filter_name: str, partial: str | None
    ) -> list[Any]:
        if filter_name == "goal":
            names = [goal.display_name for goal in site.goals]
            return [n for n in names if not partial or partial.lower() in n.lower()]

        sql = self.builder.suggestions(site, query, add_prefix(filter_name), partial, self._clock())
        return [row["value"] for row in self._fetch(sql, "filter_suggestions")]

    # --- loading ---

    def insert_events(self, events: Sequence[dict[str, Any]]) -> None:
        """Append events given as dicts keyed by column name.

        missing columns are stored as null. executemany keeps this reasonable
        for test fixtures and demo data, bulk loads should use load_parquet.
        """
        if not events:
            return
        placeholders = ", ".join(["?"] * len(EVENT_COLUMNS))
        columns = ", ".join(f'"{c}"' for c in EVENT_COLUMNS)
        self.conn.executemany(
            f"INSERT INTO events ({columns}) VALUES ({placeholders})",
            [[_insert_value(c, event.get(c)) for c in EVENT_COLUMNS] for event in events],
        )

    def load_parquet(self, path: str | Path) -> None:
        """Append events from a parquet file with the events columns."""
        path = Path(path)
        self.conn.execute(f"INSERT INTO events BY NAME SELECT * FROM read_parquet('{path}')")

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "DuckDBStore":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()


def _insert_value(column: str, value: Any) -> Any:
    if column == "props" and isinstance(value, dict):
        return json.dumps(value)
    if column == "timestamp" and isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _coerce(key: str, value: Any) -> Any:
    """DuckDB hands back doubles from ROUND and decimals from SUM."""
    if value is None:
        return None
    if key in INT_METRICS:
        return int(value)
    if key == "views_per_visit":
        return float(value)
    return value


def bucket_labels(query: Query, now: datetime) -> list[str]:
    """Every bucket label of the query, so empty buckets come back as zeros.

    now is in the site's timezone and only matters for the realtime window.
    """
    if query.period in (Period.LAST_30_MINUTES, Period.REALTIME):
        start = now.replace(second=0, microsecond=0) - REALTIME_WINDOW + timedelta(minutes=1)
        return [(start + timedelta(minutes=i)).strftime("%Y-%m-%d %H:%M:00") for i in range(30)]

    days = list(query.date_range.dates())
    match query.interval:
        case Interval.MINUTE:
            return [
                f"{day.isoformat()} {hour:02d}:{minute:02d}:00"
                for day in days
                for hour in range(24)
                for minute in range(60)
            ]
        case Interval.HOUR:
            return [f"{day.isoformat()} {hour:02d}:00:00" for day in days for hour in range(24)]
        case Interval.DATE:
            return [day.isoformat() for day in days]
        case Interval.WEEK:
            first = query.date_range.first
            return _unique(max(beginning_of_week(day), first).isoformat() for day in days)
        case Interval.MONTH:
            return _unique(beginning_of_month(day).isoformat() for day in days)


def _unique(labels: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for label in labels:
        seen.setdefault(label, None)
    return list(seen)
