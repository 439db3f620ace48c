"""SQL compiler for stats store calls.

turns (site, Query, dimension, metrics) into one duckdb query over the raw
`events` table. every call compiles to the same shape:

  1. base      - the site's events, with local time and per-pageview dwell time
  2. filtered  - base restricted to the date range and the query's filters
  3. sessions  - filtered rolled up per (session, group key)
  4. select    - metrics over sessions, grouped by the key

rolling everything up per session first means the session metrics (bounce
rate, visit duration) and the event counts come out of one pass.

values are inlined as sqlglot literals rather than bound parameters, the
same expression often shows up in several CTEs and positional parameters
get unreadable fast. sqlglot also pretty-prints statements for debug logs.
"""

import re
from collections.abc import Sequence
from datetime import date, datetime, timedelta, timezone

import sqlglot
from sqlglot import exp

from trafficlens.filter_parser import PROP_NAME
from trafficlens.models.filters import (
    ContainsFilter,
    DoesNotContainFilter,
    DoesNotMatchFilter,
    FilterClause,
    IsFilter,
    IsNotFilter,
    MatchesFilter,
    MemberFilter,
    NotMemberFilter,
)
from trafficlens.models.period import Interval, Period
from trafficlens.models.query import PROPS_PREFIX, Query
from trafficlens.models.site import Site
from trafficlens.store.base import dimension_column

REALTIME_WINDOW = timedelta(minutes=30)
CURRENT_VISITORS_WINDOW = timedelta(minutes=5)

GOAL_EXPR = "CASE WHEN name = 'pageview' THEN 'Visit ' || pathname ELSE name END"

# dimension -> column expression on the events table
DIMENSION_COLUMNS = {
    "visit:source": "COALESCE(NULLIF(referrer_source, ''), 'Direct / None')",
    "visit:referrer": "referrer",
    "visit:utm_medium": "utm_medium",
    "visit:utm_source": "utm_source",
    "visit:utm_campaign": "utm_campaign",
    "visit:utm_content": "utm_content",
    "visit:utm_term": "utm_term",
    "visit:screen": "screen_size",
    "visit:device": "screen_size",
    "visit:browser": "browser",
    "visit:browser_version": "browser_version",
    "visit:os": "operating_system",
    "visit:os_version": "operating_system_version",
    "visit:country": "country_code",
    "visit:region": "subdivision1_code",
    "visit:city": "CAST(city_geoname_id AS VARCHAR)",
    "visit:entry_page": "entry_page",
    "visit:exit_page": "exit_page",
    "event:name": "name",
    "event:page": "pathname",
    "event:goal": GOAL_EXPR,
}

# metric -> aggregate over the sessions CTE
METRIC_SQL = {
    "visitors": "COUNT(DISTINCT user_id)",
    "visits": "COUNT(*)",
    "pageviews": "COALESCE(SUM(pageviews), 0)",
    "events": "COALESCE(SUM(events), 0)",
    "bounce_rate": "ROUND(100.0 * COUNT(*) FILTER (WHERE pageviews <= 1) / NULLIF(COUNT(*), 0))",
    "visit_duration": "ROUND(AVG(duration))",
    "time_on_page": "ROUND(SUM(page_seconds) / NULLIF(SUM(page_count), 0))",
    "views_per_visit": "ROUND(SUM(pageviews) / NULLIF(COUNT(*), 0), 2)",
}


def literal(value: str | int | float) -> str:
    """Quote a python value as a sql literal."""
    if isinstance(value, (int, float)):
        return exp.Literal.number(value).sql(dialect="duckdb")
    return exp.Literal.string(str(value)).sql(dialect="duckdb")


def glob_to_regex(pattern: str) -> str:
    """`**` matches anything, `*` anything but a slash, the rest is literal."""
    parts = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return "".join(parts)


def _utc_naive(moment: datetime) -> datetime:
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


def _timestamp(moment: datetime) -> str:
    return f"TIMESTAMP '{_utc_naive(moment).strftime('%Y-%m-%d %H:%M:%S')}'"


def _date(day: date) -> str:
    return f"DATE '{day.isoformat()}'"


class EventSQLBuilder:
    """Compiles store calls into SQL over the events table.

    stateless - one instance can be shared by concurrent callers.
    """

    def __init__(self, table: str = "events", dialect: str = "duckdb") -> None:
        self.table = table
        self.dialect = dialect

    # --- expressions ---

    def dimension_expr(self, dimension: str) -> str:
        if dimension.startswith(PROPS_PREFIX):
            prop = dimension[len(PROPS_PREFIX):]
            if not PROP_NAME.match(prop):
                raise ValueError(f"Unsupported property name: {prop!r}")
            path = literal(f'$."{prop}"')
            return f"json_extract_string(props, {path})"
        if dimension not in DIMENSION_COLUMNS:
            raise ValueError(f"Unknown dimension: {dimension}")
        return DIMENSION_COLUMNS[dimension]

    def filter_condition(self, dimension: str, clause: FilterClause) -> str:
        expr = self.dimension_expr(dimension)
        nullable = f"COALESCE({expr}, '')"

        if isinstance(clause, IsFilter):
            return f"{expr} = {literal(clause.value)}"
        if isinstance(clause, IsNotFilter):
            return f"{nullable} <> {literal(clause.value)}"
        if isinstance(clause, MemberFilter):
            return f"{expr} IN ({', '.join(literal(v) for v in clause.values)})"
        if isinstance(clause, NotMemberFilter):
            return f"{nullable} NOT IN ({', '.join(literal(v) for v in clause.values)})"
        if isinstance(clause, ContainsFilter):
            return f"contains({expr}, {literal(clause.value)})"
        if isinstance(clause, DoesNotContainFilter):
            return f"NOT contains({nullable}, {literal(clause.value)})"
        if isinstance(clause, MatchesFilter):
            return self._any_match(expr, clause.patterns)
        if isinstance(clause, DoesNotMatchFilter):
            return f"NOT {self._any_match(nullable, clause.patterns)}"
        raise ValueError(f"Unsupported filter: {clause!r}")

    def _any_match(self, expr: str, patterns: Sequence[str]) -> str:
        regexes = [literal("^" + glob_to_regex(p) + "$") for p in patterns]
        matches = [f"regexp_matches({expr}, {regex})" for regex in regexes]
        return f"({' OR '.join(matches)})"

    def time_condition(self, query: Query, now: datetime) -> str:
        """Restrict to the query's local dates, or the realtime window."""
        if query.period in (Period.LAST_30_MINUTES, Period.REALTIME):
            return f'"timestamp" >= {_timestamp(now - REALTIME_WINDOW)}'
        first, last = query.date_range.first, query.date_range.last
        return f"CAST(local_ts AS DATE) BETWEEN {_date(first)} AND {_date(last)}"

    def bucket_expr(self, query: Query) -> str:
        """Timeseries label for an event, matching the engine's bucket labels."""
        match query.interval:
            case Interval.MINUTE:
                return "strftime(local_ts, '%Y-%m-%d %H:%M:00')"
            case Interval.HOUR:
                return "strftime(local_ts, '%Y-%m-%d %H:00:00')"
            case Interval.DATE:
                return "strftime(local_ts, '%Y-%m-%d')"
            case Interval.WEEK:
                # the first bucket starts at the range start, later ones on monday
                first = _date(query.date_range.first)
                return f"strftime(GREATEST(CAST(date_trunc('week', local_ts) AS DATE), {first}), '%Y-%m-%d')"
            case Interval.MONTH:
                return "strftime(date_trunc('month', local_ts), '%Y-%m-%d')"

    # --- statements ---

    def aggregate(self, site: Site, query: Query, metrics: Sequence[str], now: datetime) -> str:
        return self._compile(site, query, metrics, now, key_expr=None)

    def breakdown(
        self,
        site: Site,
        query: Query,
        dimension: str,
        metrics: Sequence[str],
        pagination: tuple[int, int],
        now: datetime,
    ) -> str:
        key_expr = self.dimension_expr(dimension)
        conditions = [f"{key_expr} IS NOT NULL", f"{key_expr} <> ''"]
        if dimension == "event:goal":
            # only configured goals count as conversions
            names = [goal.display_name for goal in site.goals]
            if not names:
                conditions.append("FALSE")
            else:
                conditions.append(f"{GOAL_EXPR} IN ({', '.join(literal(n) for n in names)})")

        limit, page = pagination
        return self._compile(
            site,
            query,
            metrics,
            now,
            key_expr=key_expr,
            key_alias=dimension_column(dimension),
            extra_conditions=conditions,
            limit=limit,
            offset=(page - 1) * limit,
        )

    def timeseries(self, site: Site, query: Query, metrics: Sequence[str], now: datetime) -> str:
        return self._compile(
            site,
            query,
            metrics,
            now,
            key_expr=self.bucket_expr(query),
            key_alias="date",
            order_by_key=True,
        )

    def current_visitors(self, site: Site, now: datetime) -> str:
        sql = (
            f"SELECT COUNT(DISTINCT user_id) AS visitors\n"
            f"FROM {self.table}\n"
            f"WHERE domain = {literal(site.domain)} "
            f'AND "timestamp" >= {_timestamp(now - CURRENT_VISITORS_WINDOW)}'
        )
        return sql

    def props(self, site: Site, query: Query, goal_names: Sequence[str], now: datetime) -> str:
        """Distinct custom property keys per custom event goal."""
        names = ", ".join(literal(n) for n in goal_names)
        sql = (
            f"{self._ctes(site, query, now)}\n"
            f"SELECT DISTINCT name AS goal, unnest(json_keys(props)) AS prop\n"
            f"FROM filtered\n"
            f"WHERE props IS NOT NULL AND name IN ({names})\n"
            f"ORDER BY goal, prop"
        )
        return sql

    def suggestions(
        self,
        site: Site,
        query: Query,
        dimension: str,
        partial: str | None,
        now: datetime,
        limit: int = 25,
    ) -> str:
        expr = self.dimension_expr(dimension)
        conditions = [f"{expr} IS NOT NULL", f"{expr} <> ''"]
        if partial:
            conditions.append(f"contains(lower({expr}), {literal(partial.lower())})")
        sql = (
            f"{self._ctes(site, query, now)}\n"
            f"SELECT {expr} AS value, COUNT(*) AS hits\n"
            f"FROM filtered\n"
            f"WHERE {' AND '.join(conditions)}\n"
            f"GROUP BY value\n"
            f"ORDER BY hits DESC, value\n"
            f"LIMIT {int(limit)}"
        )
        return sql

    # --- assembly ---

    def _ctes(self, site: Site, query: Query, now: datetime, extra_conditions: Sequence[str] = ()) -> str:
        tz = literal(site.timezone)
        conditions = [self.time_condition(query, now)]
        conditions.extend(self.filter_condition(dim, clause) for dim, clause in query.filters.items())
        conditions.extend(extra_conditions)

        return (
            "WITH base AS (\n"
            f"  SELECT *, CAST(\"timestamp\" AS TIMESTAMPTZ) AT TIME ZONE {tz} AS local_ts,\n"
            "    CASE WHEN name = 'pageview' THEN\n"
            "      epoch(LEAD(\"timestamp\") OVER (PARTITION BY session_id, name ORDER BY \"timestamp\"))\n"
            "      - epoch(\"timestamp\") END AS page_seconds\n"
            f"  FROM {self.table}\n"
            f"  WHERE domain = {literal(site.domain)}\n"
            "),\n"
            "filtered AS (\n"
            f"  SELECT * FROM base WHERE {' AND '.join(conditions)}\n"
            ")"
        )

    def _compile(
        self,
        site: Site,
        query: Query,
        metrics: Sequence[str],
        now: datetime,
        key_expr: str | None,
        key_alias: str | None = None,
        extra_conditions: Sequence[str] = (),
        order_by_key: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> str:
        metric_exprs = []
        for metric in metrics:
            if metric == "sample_percent":
                continue  # not sampled, the store fills it in
            if metric not in METRIC_SQL:
                raise ValueError(f"Unknown metric: {metric}")
            metric_exprs.append(f"{METRIC_SQL[metric]} AS {metric}")

        session_key = f", {key_expr} AS group_key" if key_expr else ""
        session_group = ", group_key" if key_expr else ""
        sessions = (
            "sessions AS (\n"
            f"  SELECT session_id{session_key}, ANY_VALUE(user_id) AS user_id,\n"
            "    COUNT(*) FILTER (WHERE name = 'pageview') AS pageviews,\n"
            "    COUNT(*) AS events,\n"
            "    epoch(MAX(\"timestamp\")) - epoch(MIN(\"timestamp\")) AS duration,\n"
            "    SUM(page_seconds) AS page_seconds,\n"
            "    COUNT(page_seconds) AS page_count\n"
            "  FROM filtered\n"
            f"  GROUP BY session_id{session_group}\n"
            ")"
        )

        select_exprs = list(metric_exprs)
        if key_expr:
            select_exprs.insert(0, f"group_key AS {key_alias}")
        if not select_exprs:
            select_exprs = ["COUNT(*) AS visits"]

        parts = [
            f"{self._ctes(site, query, now, extra_conditions)},\n{sessions}",
            f"SELECT\n  {', '.join(select_exprs)}",
            "FROM sessions",
        ]
        if key_expr:
            parts.append("GROUP BY group_key")
            if order_by_key:
                parts.append("ORDER BY group_key")
            else:
                first_metric = metric_exprs[0].rsplit(" AS ", 1)[1] if metric_exprs else "COUNT(*)"
                parts.append(f"ORDER BY {first_metric} DESC, group_key")
        if limit:
            parts.append(f"LIMIT {int(limit)} OFFSET {int(offset)}")

        return "\n".join(parts)

    def format_sql(self, sql: str) -> str:
        """Pretty-print with sqlglot for logs and the cli, falling back to the raw text.

        only ever used for display - the store runs the raw statement so a
        dialect round trip can never change what gets executed.
        """
        try:
            parsed = sqlglot.parse_one(sql, dialect=self.dialect)
            return parsed.sql(dialect=self.dialect, pretty=True)
        except Exception:
            return sql
