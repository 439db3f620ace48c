"""Aggregation orchestrator.

one StatsEngine method per report. each one builds the Query from request
params, works out which store calls the report needs (primary, comparison,
conversion-rate denominator, exit-rate pageviews), runs the independent ones
concurrently, and hands the joined results to enrichment.

store failures are terminal for the report: every store call goes through
_call(), which turns whatever the store raised into a StoreError. nothing is
retried and no half-enriched result is returned.
"""

import logging
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Any

from trafficlens.comparisons import maybe_compare
from trafficlens.config import EngineSettings
from trafficlens.enrichment import (
    add_cr,
    add_percentages,
    calculate_change,
    calculate_cr,
    exit_rate,
    full_intervals,
    label_timeseries,
    plot_timeseries,
    present_index,
    transform_keys,
)
from trafficlens.errors import LookupMiss, QueryValidationError, StoreError
from trafficlens.formatting import GOAL_CSV_HEADERS
from trafficlens.geo import GeoLocations, load_locations
from trafficlens.models.filters import IsFilter, MemberFilter, clause_values
from trafficlens.models.period import Period
from trafficlens.models.query import ComparisonMode, Query
from trafficlens.models.report import BreakdownResult, MainGraph, TopStat, TopStatsReport
from trafficlens.models.site import Site
from trafficlens.query_builder import build_query, parse_comparison, parse_pagination
from trafficlens.store.base import METRICS, Row, StatsStore, dimension_column

logger = logging.getLogger(__name__)

SOURCE_CSV_HEADERS = ("name", "visitors", "bounce_rate", "visit_duration")


@dataclass(frozen=True)
class ReportDefinition:
    """How a plain dimension breakdown is queried, renamed and exported."""

    dimension: str
    renames: dict[str, str]
    metrics: tuple[str, ...] = ("visitors",)
    # used instead of metrics when the caller asks for ?detailed=true
    detailed_metrics: tuple[str, ...] | None = None
    csv_headers: tuple[str, ...] = ("name", "visitors")
    # which renamed column holds the converted visitors when a goal is set
    conversions_key: str = "visitors"
    percentages: bool = False


def _source_report(dimension: str) -> ReportDefinition:
    return ReportDefinition(
        dimension=dimension,
        renames={dimension_column(dimension): "name"},
        detailed_metrics=("visitors", "bounce_rate", "visit_duration"),
        csv_headers=SOURCE_CSV_HEADERS,
    )


REPORTS: dict[str, ReportDefinition] = {
    "sources": _source_report("visit:source"),
    "utm_mediums": _source_report("visit:utm_medium"),
    "utm_sources": _source_report("visit:utm_source"),
    "utm_campaigns": _source_report("visit:utm_campaign"),
    "utm_contents": _source_report("visit:utm_content"),
    "utm_terms": _source_report("visit:utm_term"),
    "pages": ReportDefinition(
        dimension="event:page",
        renames={"page": "name"},
        metrics=("visitors", "pageviews"),
        detailed_metrics=("visitors", "pageviews", "bounce_rate", "time_on_page"),
        csv_headers=("name", "visitors", "pageviews", "bounce_rate", "time_on_page"),
    ),
    "entry_pages": ReportDefinition(
        dimension="visit:entry_page",
        renames={"entry_page": "name", "visits": "total_entrances", "visitors": "unique_entrances"},
        metrics=("visitors", "visits", "visit_duration"),
        csv_headers=("name", "unique_entrances", "total_entrances", "visit_duration"),
        conversions_key="unique_entrances",
    ),
    "exit_pages": ReportDefinition(
        dimension="visit:exit_page",
        renames={"exit_page": "name", "visits": "total_exits", "visitors": "unique_exits"},
        metrics=("visitors", "visits"),
        csv_headers=("name", "unique_exits", "total_exits", "exit_rate"),
        conversions_key="unique_exits",
    ),
    "countries": ReportDefinition(
        dimension="visit:country",
        renames={"country": "code"},
        percentages=True,
    ),
    "regions": ReportDefinition(dimension="visit:region", renames={"region": "code"}),
    "cities": ReportDefinition(dimension="visit:city", renames={"city": "code"}),
    "browsers": ReportDefinition(
        dimension="visit:browser", renames={"browser": "name"}, percentages=True
    ),
    "browser_versions": ReportDefinition(
        dimension="visit:browser_version", renames={"browser_version": "name"}, percentages=True
    ),
    "operating_systems": ReportDefinition(
        dimension="visit:os", renames={"os": "name"}, percentages=True
    ),
    "operating_system_versions": ReportDefinition(
        dimension="visit:os_version", renames={"os_version": "name"}, percentages=True
    ),
    "screen_sizes": ReportDefinition(
        dimension="visit:screen", renames={"screen": "name"}, percentages=True
    ),
}


def _flag(params: Mapping[str, Any], name: str) -> bool:
    value = params.get(name)
    if isinstance(value, bool):
        return value
    return str(value).lower() in ("true", "1", "yes")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StatsEngine:
    """Runs stats reports for sites against a StatsStore.

    Example:
        >>> engine = StatsEngine(DuckDBStore("stats.duckdb"))
        >>> report = engine.top_stats(site, {"period": "7d"})
        >>> [s.name for s in report.top_stats]
        ['Unique visitors', 'Total visits', 'Total pageviews', ...]
    """

    def __init__(
        self,
        store: StatsStore,
        settings: EngineSettings | None = None,
        geo: GeoLocations | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            store: event store every report reads from.
            settings: engine policies, defaults when omitted.
            geo: geo reference data, loaded from settings.geo_file when omitted.
            clock: returns the current time, used to pin "now" in tests.
        """
        self.store = store
        self.settings = settings or EngineSettings()
        self.geo = geo or load_locations(self.settings.geo_file)
        self._clock = clock or _utc_now

    # --- plumbing ---

    def query(self, site: Site, params: Mapping[str, Any]) -> Query:
        """Build the Query a report would run for these params."""
        return build_query(site, params, self.settings, self._clock())

    def comparison(
        self,
        site: Site,
        query: Query,
        params: Mapping[str, Any],
        default_mode: ComparisonMode = ComparisonMode.OFF,
    ) -> Query | None:
        """Comparison query for params, or None when there is none to run."""
        if query.period == Period.REALTIME:
            return None
        directive = parse_comparison(params, default_mode)
        return maybe_compare(site, query, directive)

    def _call(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        except StoreError as e:
            logger.error("store %s failed: %s", operation, e.message)
            raise
        except Exception as e:
            logger.error("store %s failed: %s", operation, e)
            raise StoreError(f"Store {operation} failed: {e}", operation=operation) from e

    def _gather(self, *calls: Callable[[], Any]) -> list[Any]:
        """Run independent store calls and return their results in order.

        all calls are joined before anything is returned or raised, so a
        failure never leaves a call running behind the caller's back.
        """
        if len(calls) == 1:
            return [calls[0]()]

        workers = min(len(calls), self.settings.max_workers)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(call) for call in calls]
        return [future.result() for future in futures]

    def _aggregate(self, site: Site, query: Query, metrics: Sequence[str]) -> dict[str, dict[str, Any]]:
        return self._call("aggregate", self.store.aggregate, site, query.for_execution(), list(metrics))

    def _breakdown(
        self,
        site: Site,
        query: Query,
        dimension: str,
        metrics: Sequence[str],
        pagination: tuple[int, int],
    ) -> list[Row]:
        return self._call(
            "breakdown",
            self.store.breakdown,
            site,
            query.for_execution(),
            dimension,
            list(metrics),
            pagination,
        )

    def _timeseries(self, site: Site, query: Query, metrics: Sequence[str]) -> list[Row]:
        return self._call("timeseries", self.store.timeseries, site, query.for_execution(), list(metrics))

    def _imported_source(self, site: Site, query: Query) -> str | None:
        if query.include_imported and site.imported_data is not None:
            return site.imported_data.source
        return None

    def _total_visitors(self, site: Site, query: Query) -> int:
        """Visitors for the query with goal and property filters stripped."""
        total_query = query.remove_event_filters(["goal", "props"])
        result = self._aggregate(site, total_query, ["visitors"])
        return result["visitors"]["value"]

    # --- main graph ---

    def main_graph(self, site: Site, params: Mapping[str, Any]) -> MainGraph:
        query = self.query(site, params)

        metric = params.get("metric") or "visitors"
        if metric == "conversions":
            metric = "visitors"
        if metric not in METRICS or metric == "sample_percent":
            raise QueryValidationError(f"Invalid metric: {metric}")

        comparison = self.comparison(site, query, params)
        calls = [partial(self._timeseries, site, query, [metric])]
        if comparison is not None:
            calls.append(partial(self._timeseries, site, comparison, [metric]))
        results = self._gather(*calls)

        timeseries = results[0]
        comparison_timeseries = results[1] if comparison is not None else None

        labels = label_timeseries(timeseries, comparison_timeseries)
        return MainGraph(
            plot=plot_timeseries(timeseries, metric),
            labels=labels,
            comparison_plot=(
                plot_timeseries(comparison_timeseries, metric) if comparison_timeseries is not None else None
            ),
            comparison_labels=(
                label_timeseries(comparison_timeseries) if comparison_timeseries is not None else None
            ),
            present_index=present_index(query, labels, site.now(self._clock())),
            interval=query.interval.value,
            with_imported=query.include_imported,
            imported_source=self._imported_source(site, query),
            full_intervals=full_intervals(query, labels),
        )

    # --- top stats ---

    def top_stats(self, site: Site, params: Mapping[str, Any]) -> TopStatsReport:
        query = self.query(site, params)
        comparison = self.comparison(site, query, params, self.settings.top_stats_comparison)

        if query.period == Period.REALTIME:
            top_stats, sample_percent = self._realtime_top_stats(site, query)
        elif query.has_goal_filter:
            top_stats, sample_percent = self._goal_top_stats(site, query, comparison)
        else:
            top_stats, sample_percent = self._default_top_stats(site, query, comparison)

        return TopStatsReport(
            top_stats=top_stats,
            interval=query.interval.value,
            sample_percent=sample_percent,
            with_imported=query.include_imported,
            imported_source=self._imported_source(site, query),
            comparing_from=comparison.date_range.first if comparison else None,
            comparing_to=comparison.date_range.last if comparison else None,
            from_date=query.date_range.first,
            to_date=query.date_range.last,
        )

    def _realtime_top_stats(self, site: Site, query: Query) -> tuple[list[TopStat], int]:
        current_visitors = partial(self._call, "current_visitors", self.store.current_visitors, site)

        if query.has_goal_filter:
            converted, visitors = self._gather(
                partial(self._aggregate, site, query, ["visitors", "events"]),
                current_visitors,
            )
            return [
                TopStat(name="Current visitors", value=visitors),
                TopStat(name="Unique conversions (last 30 min)", value=converted["visitors"]["value"]),
                TopStat(name="Total conversions (last 30 min)", value=converted["events"]["value"]),
            ], 100

        stats, visitors = self._gather(
            partial(self._aggregate, site, query, ["visitors", "pageviews"]),
            current_visitors,
        )
        return [
            TopStat(name="Current visitors", value=visitors),
            TopStat(name="Unique visitors (last 30 min)", value=stats["visitors"]["value"]),
            TopStat(name="Pageviews (last 30 min)", value=stats["pageviews"]["value"]),
        ], 100

    def _goal_top_stats(
        self, site: Site, query: Query, comparison: Query | None
    ) -> tuple[list[TopStat], int]:
        calls = [
            partial(self._total_visitors, site, query),
            partial(self._aggregate, site, query, ["visitors", "events"]),
        ]
        if comparison is not None:
            calls.append(partial(self._total_visitors, site, comparison))
            calls.append(partial(self._aggregate, site, comparison, ["visitors", "events"]))
        results = self._gather(*calls)

        unique_visitors, converted = results[0], results[1]
        unique_conversions = converted["visitors"]["value"]
        total_conversions = converted["events"]["value"]
        conversion_rate = calculate_cr(unique_visitors, unique_conversions)

        if comparison is not None:
            prev_visitors, prev_converted = results[2], results[3]
            prev_unique = prev_converted["visitors"]["value"]
            prev_total = prev_converted["events"]["value"]
            prev_rate = calculate_cr(prev_visitors, prev_unique)
        else:
            prev_visitors = prev_unique = prev_total = prev_rate = None

        return [
            self._stat("Unique visitors", "visitors", unique_visitors, prev_visitors),
            self._stat("Unique conversions", "visitors", unique_conversions, prev_unique),
            self._stat("Total conversions", "events", total_conversions, prev_total),
            self._stat("Conversion rate", "conversion_rate", conversion_rate, prev_rate),
        ], 100

    def _default_top_stats(
        self, site: Site, query: Query, comparison: Query | None
    ) -> tuple[list[TopStat], Any]:
        metrics = ["visitors", "visits", "pageviews", "views_per_visit", "bounce_rate"]
        if "event:page" in query.filters:
            metrics.append("time_on_page")
        else:
            metrics.append("visit_duration")
        metrics.append("sample_percent")

        calls = [partial(self._aggregate, site, query, metrics)]
        if comparison is not None:
            calls.append(partial(self._aggregate, site, comparison, metrics))
        results = self._gather(*calls)
        current = results[0]
        previous = results[1] if comparison is not None else None

        names = [
            ("Unique visitors", "visitors"),
            ("Total visits", "visits"),
            ("Total pageviews", "pageviews"),
            ("Views per visit", "views_per_visit"),
            ("Bounce rate", "bounce_rate"),
            ("Visit duration", "visit_duration"),
            ("Time on page", "time_on_page"),
        ]
        top_stats = [
            self._stat(
                name,
                key,
                current[key]["value"],
                previous[key]["value"] if previous and key in previous else None,
            )
            for name, key in names
            if key in current
        ]
        sample_percent = current.get("sample_percent", {}).get("value")
        return top_stats, sample_percent

    @staticmethod
    def _stat(name: str, metric: str, value: Any, comparison_value: Any) -> TopStat:
        return TopStat(
            name=name,
            value=value,
            comparison_value=comparison_value,
            change=calculate_change(metric, comparison_value, value),
        )

    # --- breakdowns ---

    def breakdown(self, site: Site, report: str, params: Mapping[str, Any]) -> BreakdownResult:
        """Run one of the dimension breakdowns in REPORTS by name."""
        if report == "referrer_drilldown":
            return self.referrer_drilldown(site, params)
        if report == "conversions":
            return self.conversions(site, params)
        if report == "prop_breakdown":
            return self.prop_breakdown(site, params)
        if report == "all_props_breakdown":
            return self.all_props_breakdown(site, params)

        definition = REPORTS.get(report)
        if definition is None:
            raise QueryValidationError(
                f"Unknown report: {report}. Accepted values are: {', '.join(sorted(REPORTS))}"
            )

        query = self.query(site, params)
        pagination = parse_pagination(params, self.settings).as_tuple()
        metrics = definition.metrics
        if definition.detailed_metrics and _flag(params, "detailed"):
            metrics = definition.detailed_metrics

        rows = self._breakdown(site, query, definition.dimension, metrics, pagination)
        rows = self._maybe_add_cr(site, query, rows, definition.dimension)

        rows = transform_keys(rows, definition.renames)
        if report == "exit_pages":
            rows = self._add_exit_rates(site, query, rows)

        if definition.percentages:
            rows = add_percentages(rows, query)

        if report == "countries":
            rows = [self._enrich_country(row) for row in rows]
        elif report == "regions":
            rows = [self._enrich_region(row) for row in rows]
        elif report == "cities":
            rows = [self._enrich_city(row) for row in rows]

        return self._result(query, rows, definition)

    def _result(
        self,
        query: Query,
        rows: list[Row],
        definition: ReportDefinition | None = None,
        **extra: Any,
    ) -> BreakdownResult:
        csv_headers: tuple[str, ...] = ()
        csv_renames: dict[str, str] = {}
        if definition is not None:
            if query.has_goal_filter:
                csv_headers = GOAL_CSV_HEADERS
                csv_renames = {definition.conversions_key: "conversions"}
            else:
                csv_headers = definition.csv_headers
        extra.setdefault("csv_headers", csv_headers)
        extra.setdefault("csv_renames", csv_renames)

        return BreakdownResult(
            results=rows,
            from_date=query.date_range.first,
            to_date=query.date_range.last,
            interval=query.interval.value,
            with_imported=query.include_imported,
            **extra,
        )

    def _maybe_add_cr(self, site: Site, query: Query, rows: list[Row], dimension: str) -> list[Row]:
        """Overlay conversion rates when a goal filter is active.

        the denominator is the same breakdown without goal/prop filters,
        restricted to the values already on this page of results.
        """
        if not query.has_goal_filter or not rows:
            return rows

        column = dimension_column(dimension)
        values = tuple(str(row[column]) for row in rows)
        total_query = query.remove_event_filters(["goal", "props"]).put_filter(
            dimension, MemberFilter(values=values)
        )
        totals = self._breakdown(site, total_query, dimension, ["visitors"], (len(values), 1))
        return add_cr(rows, totals, column)

    def _add_exit_rates(self, site: Site, query: Query, rows: list[Row]) -> list[Row]:
        # exits per pageview only make sense without event filters narrowing pageviews
        if query.has_event_filters() or not rows:
            return rows

        pages = tuple(row["name"] for row in rows)
        pageviews_query = query.put_filter("event:page", MemberFilter(values=pages)).put_filter(
            "event:name", IsFilter(value="pageview")
        )
        pageviews = self._breakdown(site, pageviews_query, "event:page", ["pageviews"], (len(pages), 1))
        pageviews_by_page = {row["page"]: row.get("pageviews") for row in pageviews}

        return [
            {**row, "exit_rate": exit_rate(row.get("total_exits") or 0, pageviews_by_page.get(row["name"]))}
            for row in rows
        ]

    def _enrich_country(self, row: Row) -> Row:
        code = row["code"]
        try:
            country = self.geo.get_country(code)
        except LookupMiss as e:
            logger.warning(e.message)
            return {**row, "name": code, "flag": "", "alpha_3": "N/A", "code": code}
        return {
            **row,
            "name": country.name,
            "flag": country.flag,
            "alpha_3": country.alpha_3,
            "code": country.alpha_2,
        }

    def _enrich_region(self, row: Row) -> Row:
        code = row["code"]
        try:
            region = self.geo.get_subdivision(code)
        except LookupMiss as e:
            logger.warning(e.message)
            return {**row, "name": code, "country_flag": ""}
        return {**row, "name": region.name, "country_flag": self._flag_for(region.country_code)}

    def _enrich_city(self, row: Row) -> Row:
        code = row["code"]
        try:
            city = self.geo.get_city(code)
        except LookupMiss as e:
            logger.warning(e.message)
            return {**row, "name": str(code), "country_flag": ""}
        return {**row, "name": city.name, "country_flag": self._flag_for(city.country_code)}

    def _flag_for(self, alpha_2: str) -> str:
        try:
            return self.geo.get_country(alpha_2).flag
        except LookupMiss:
            return ""

    def referrer_drilldown(self, site: Site, params: Mapping[str, Any]) -> BreakdownResult:
        """Referrer URLs behind one source, plus total visitors from that source."""
        referrer = params.get("referrer")
        if not referrer:
            raise QueryValidationError("Missing parameter: referrer")

        query = self.query(site, params).put_filter("visit:source", IsFilter(value=referrer))
        pagination = parse_pagination(params, self.settings).as_tuple()
        metrics = ["visitors", "bounce_rate", "visit_duration"] if _flag(params, "detailed") else ["visitors"]

        rows, total = self._gather(
            partial(self._breakdown, site, query, "visit:referrer", metrics, pagination),
            partial(self._aggregate, site, query, ["visitors"]),
        )
        rows = self._maybe_add_cr(site, query, rows, "visit:referrer")
        rows = transform_keys(rows, {"referrer": "name"})

        return self._result(
            query,
            rows,
            total_visitors=total["visitors"]["value"],
            csv_headers=GOAL_CSV_HEADERS if query.has_goal_filter else SOURCE_CSV_HEADERS,
            csv_renames={"visitors": "conversions"} if query.has_goal_filter else {},
        )

    # --- goals and custom properties ---

    def conversions(self, site: Site, params: Mapping[str, Any]) -> BreakdownResult:
        """Goal breakdown with conversion rates against all visitors."""
        query = self.query(site, params)

        calls = [
            partial(self._total_visitors, site, query),
            partial(self._breakdown, site, query, "event:goal", ["visitors", "events"], (100, 1)),
        ]
        if query.has_goal_filter:
            calls.append(partial(self._call, "props", self.store.props, site, query.for_execution()))
        results = self._gather(*calls)

        total_visitors, rows = results[0], results[1]
        prop_names = results[2] if query.has_goal_filter else {}

        rows = transform_keys(
            rows, {"goal": "name", "visitors": "unique_conversions", "events": "total_conversions"}
        )
        rows = [
            {
                **row,
                "prop_names": prop_names.get(row["name"]),
                "conversion_rate": calculate_cr(total_visitors, row["unique_conversions"]),
            }
            for row in rows
        ]
        return self._result(
            query,
            rows,
            csv_headers=("name", "unique_conversions", "total_conversions"),
        )

    def prop_breakdown(self, site: Site, params: Mapping[str, Any]) -> BreakdownResult:
        """Values of one custom property with conversion counts and rates."""
        prop_name = params.get("prop_name")
        if not prop_name:
            raise QueryValidationError("Missing parameter: prop_name")

        query = self.query(site, params)
        pagination = parse_pagination(params, self.settings).as_tuple()
        rows = self._prop_rows(site, query, prop_name, pagination)
        return self._result(
            query,
            rows,
            csv_headers=("name", "unique_conversions", "total_conversions", "conversion_rate"),
        )

    def _prop_rows(self, site: Site, query: Query, prop_name: str, pagination: tuple[int, int]) -> list[Row]:
        dimension = f"event:props:{prop_name}"
        total_visitors, rows = self._gather(
            partial(self._total_visitors, site, query),
            partial(self._breakdown, site, query, dimension, ["visitors", "events"], pagination),
        )
        rows = transform_keys(
            rows, {prop_name: "name", "events": "total_conversions", "visitors": "unique_conversions"}
        )
        return [
            {**row, "conversion_rate": calculate_cr(total_visitors, row["unique_conversions"])}
            for row in rows
        ]

    def all_props_breakdown(self, site: Site, params: Mapping[str, Any]) -> BreakdownResult:
        """Every custom property of the filtered goal, one block per property.

        only meaningful for export, so rows carry a `prop` column and the
        json shape is just the concatenated blocks.
        """
        query = self.query(site, params)
        pagination = parse_pagination(params, self.settings).as_tuple()

        prop_names: list[str] = []
        goal_filter = query.filters.get("event:goal")
        if isinstance(goal_filter, IsFilter):
            props = self._call("props", self.store.props, site, query.for_execution())
            prop_names = props.get(clause_values(goal_filter)[0]) or []

        rows = []
        for prop_name in prop_names:
            rows.extend({"prop": prop_name, **row} for row in self._prop_rows(site, query, prop_name, pagination))

        return self._result(
            query,
            rows,
            csv_headers=("prop", "name", "unique_conversions", "total_conversions"),
        )

    # --- pass-throughs ---

    def current_visitors(self, site: Site) -> int:
        return self._call("current_visitors", self.store.current_visitors, site)

    def filter_suggestions(self, site: Site, filter_name: str, params: Mapping[str, Any]) -> list[Any]:
        query = self.query(site, params)
        return self._call(
            "filter_suggestions",
            self.store.filter_suggestions,
            site,
            query.for_execution(),
            filter_name,
            params.get("q"),
        )
