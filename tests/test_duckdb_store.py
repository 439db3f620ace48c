"""Tests for the DuckDB store and its SQL builder."""

from datetime import date, datetime, timezone

import pytest
from freezegun import freeze_time

from trafficlens.engine import StatsEngine
from trafficlens.errors import StoreError
from trafficlens.models.filters import (
    ContainsFilter,
    IsFilter,
    IsNotFilter,
    MatchesFilter,
    MemberFilter,
    NotMemberFilter,
)
from trafficlens.models.period import DateRange, Interval, Period
from trafficlens.models.query import Query
from trafficlens.models.site import Goal, Site
from trafficlens.store.duckdb_store import DuckDBStore, bucket_labels
from trafficlens.store.sql_builder import EventSQLBuilder, glob_to_regex, literal

NOW = datetime(2024, 3, 16, 12, 30, tzinfo=timezone.utc)


def week(**overrides) -> Query:
    values = {
        "period": Period.LAST_7_DAYS,
        "date_range": DateRange(first=date(2024, 3, 10), last=date(2024, 3, 16)),
        "interval": Interval.DATE,
    }
    values.update(overrides)
    return Query(**values)


@pytest.fixture
def shop() -> Site:
    """The sample events' site, with goals configured."""
    return Site(domain="example.com", goals=(Goal(event_name="Signup"), Goal(page_path="/register")))


class TestSQLBuilder:
    def test_literal_escapes_quotes(self):
        assert literal("it's") == "'it''s'"
        assert literal(3) == "3"

    @pytest.mark.parametrize(
        "pattern, expected",
        [
            ("/blog/*", "/blog/[^/]*"),
            ("/blog/**", "/blog/.*"),
            ("**goo**", ".*goo.*"),
            ("/a.b", "/a\\.b"),
        ],
    )
    def test_glob_to_regex(self, pattern, expected):
        assert glob_to_regex(pattern) == expected

    def test_unknown_dimension(self):
        with pytest.raises(ValueError, match="Unknown dimension"):
            EventSQLBuilder().dimension_expr("visit:colour")

    def test_prop_name_is_checked(self):
        with pytest.raises(ValueError, match="Unsupported property name"):
            EventSQLBuilder().dimension_expr("event:props:a'b")

    def test_unknown_metric(self, site):
        with pytest.raises(ValueError, match="Unknown metric"):
            EventSQLBuilder().aggregate(site, week(), ["revenue"], NOW)

    def test_format_sql(self, site):
        builder = EventSQLBuilder()
        sql = builder.aggregate(site, week(), ["visitors"], NOW)
        assert "COUNT(DISTINCT user_id)" in builder.format_sql(sql)


class TestAggregate:
    def test_totals(self, duckdb_store: DuckDBStore, site: Site):
        metrics = [
            "visitors",
            "visits",
            "pageviews",
            "events",
            "bounce_rate",
            "visit_duration",
            "views_per_visit",
            "time_on_page",
            "sample_percent",
        ]
        result = duckdb_store.aggregate(site, week(), metrics)
        values = {metric: result[metric]["value"] for metric in metrics}
        assert values == {
            "visitors": 3,
            "visits": 3,
            "pageviews": 5,
            "events": 6,
            "bounce_rate": 33,
            "visit_duration": 50,
            "views_per_visit": 1.67,
            "time_on_page": 45,
            "sample_percent": 100,
        }

    def test_empty_range(self, duckdb_store: DuckDBStore, site: Site):
        query = week(date_range=DateRange(first=date(2024, 3, 3), last=date(2024, 3, 9)))
        result = duckdb_store.aggregate(site, query, ["visitors", "bounce_rate"])
        assert result["visitors"]["value"] == 0
        assert result["bounce_rate"]["value"] is None

    def test_other_domains_excluded(self, duckdb_store: DuckDBStore):
        result = duckdb_store.aggregate(Site(domain="other.example"), week(), ["visitors"])
        assert result["visitors"]["value"] == 0

    @pytest.mark.parametrize(
        "dimension, clause, visitors",
        [
            ("visit:source", IsFilter(value="Google"), 1),
            ("visit:source", IsNotFilter(value="Google"), 2),
            ("visit:source", IsFilter(value="Direct / None"), 1),
            ("visit:source", ContainsFilter(value="witt"), 1),
            ("visit:country", MemberFilter(values=("DE", "EE")), 2),
            ("visit:country", NotMemberFilter(values=("DE", "EE")), 1),
            ("event:page", MatchesFilter(patterns=("/blog/*",)), 2),
            ("event:page", IsFilter(value="/register"), 1),
            ("event:goal", IsFilter(value="Signup"), 1),
            ("event:props:plan", IsFilter(value="pro"), 1),
        ],
    )
    def test_filters(self, duckdb_store: DuckDBStore, site: Site, dimension, clause, visitors):
        query = week(filters={dimension: clause})
        assert duckdb_store.aggregate(site, query, ["visitors"])["visitors"]["value"] == visitors

    def test_realtime_window(self, duckdb_store: DuckDBStore, site: Site):
        duckdb_store.insert_events(
            [{"timestamp": datetime(2024, 3, 16, 12, 10), "domain": "example.com", "name": "pageview",
              "pathname": "/", "user_id": 9, "session_id": 91}]
        )
        query = week(period=Period.LAST_30_MINUTES, interval=Interval.MINUTE)
        assert duckdb_store.aggregate(site, query, ["visitors"])["visitors"]["value"] == 1


class TestBreakdown:
    def test_sources(self, duckdb_store: DuckDBStore, site: Site):
        rows = duckdb_store.breakdown(site, week(), "visit:source", ["visitors"], (9, 1))
        assert rows == [
            {"source": "Direct / None", "visitors": 1},
            {"source": "Google", "visitors": 1},
            {"source": "Twitter", "visitors": 1},
        ]

    def test_pagination(self, duckdb_store: DuckDBStore, site: Site):
        rows = duckdb_store.breakdown(site, week(), "visit:source", ["visitors"], (1, 2))
        assert rows == [{"source": "Google", "visitors": 1}]

    def test_pages(self, duckdb_store: DuckDBStore, site: Site):
        rows = duckdb_store.breakdown(site, week(), "event:page", ["visitors", "pageviews"], (9, 1))
        assert rows == [
            {"page": "/", "visitors": 2, "pageviews": 2},
            {"page": "/blog/hello", "visitors": 2, "pageviews": 2},
            {"page": "/register", "visitors": 1, "pageviews": 1},
        ]

    def test_referrers_skip_missing(self, duckdb_store: DuckDBStore, site: Site):
        assert duckdb_store.breakdown(site, week(), "visit:referrer", ["visitors"], (9, 1)) == []

    def test_goals_are_configured_names(self, duckdb_store: DuckDBStore, shop: Site):
        rows = duckdb_store.breakdown(shop, week(), "event:goal", ["visitors", "events"], (9, 1))
        assert rows == [
            {"goal": "Signup", "visitors": 1, "events": 1},
            {"goal": "Visit /register", "visitors": 1, "events": 1},
        ]

    def test_goals_without_configuration(self, duckdb_store: DuckDBStore, site: Site):
        assert duckdb_store.breakdown(site, week(), "event:goal", ["visitors"], (9, 1)) == []

    def test_custom_property(self, duckdb_store: DuckDBStore, site: Site):
        rows = duckdb_store.breakdown(site, week(), "event:props:plan", ["visitors", "events"], (9, 1))
        assert rows == [{"plan": "pro", "visitors": 1, "events": 1}]


class TestTimeseries:
    def test_daily_zero_filled(self, duckdb_store: DuckDBStore, site: Site):
        series = duckdb_store.timeseries(site, week(), ["visitors"])
        assert [row["date"] for row in series] == [f"2024-03-{d}" for d in range(10, 17)]
        assert [row["visitors"] for row in series] == [0, 0, 0, 0, 2, 1, 0]

    def test_local_dates(self, duckdb_store: DuckDBStore):
        """In Auckland (UTC+13) the 12:00 UTC visit on the 14th lands on the 15th."""
        auckland = Site(domain="example.com", timezone="Pacific/Auckland")
        series = duckdb_store.timeseries(auckland, week(), ["visitors"])
        by_date = {row["date"]: row["visitors"] for row in series}
        assert by_date["2024-03-14"] == 1
        assert by_date["2024-03-15"] == 2

    def test_monthly(self, duckdb_store: DuckDBStore, site: Site):
        query = week(
            period=Period.CUSTOM,
            date_range=DateRange(first=date(2024, 2, 10), last=date(2024, 3, 16)),
            interval=Interval.MONTH,
        )
        series = duckdb_store.timeseries(site, query, ["pageviews"])
        assert series == [{"date": "2024-02-01", "pageviews": 0}, {"date": "2024-03-01", "pageviews": 5}]


class TestBucketLabels:
    def test_hours(self):
        query = week(
            period=Period.DAY, date_range=DateRange(first=date(2024, 3, 16), last=date(2024, 3, 16)),
            interval=Interval.HOUR,
        )
        labels = bucket_labels(query, NOW)
        assert len(labels) == 24
        assert labels[0] == "2024-03-16 00:00:00"

    def test_weeks_start_at_range_start(self):
        # 2024-03-10 is a sunday, the next monday is the 11th
        query = week(interval=Interval.WEEK)
        assert bucket_labels(query, NOW) == ["2024-03-10", "2024-03-11"]

    def test_realtime_minutes(self):
        query = week(period=Period.LAST_30_MINUTES, interval=Interval.MINUTE)
        labels = bucket_labels(query, NOW)
        assert len(labels) == 30
        assert labels[-1] == "2024-03-16 12:30:00"


class TestOtherCalls:
    def test_current_visitors(self, duckdb_store: DuckDBStore, site: Site):
        assert duckdb_store.current_visitors(site) == 0
        duckdb_store.insert_events(
            [{"timestamp": datetime(2024, 3, 16, 12, 28, tzinfo=timezone.utc), "domain": "example.com",
              "name": "pageview", "pathname": "/", "user_id": 9, "session_id": 91}]
        )
        assert duckdb_store.current_visitors(site) == 1

    @freeze_time("2024-03-16 12:30:00")
    def test_default_clock(self, site: Site, sample_events):
        with DuckDBStore() as store:
            store.insert_events(sample_events)
            store.insert_events(
                [{"timestamp": datetime(2024, 3, 16, 12, 27), "domain": "example.com",
                  "name": "pageview", "pathname": "/", "user_id": 9, "session_id": 91}]
            )
            assert store.current_visitors(site) == 1

    def test_props(self, duckdb_store: DuckDBStore, shop: Site):
        assert duckdb_store.props(shop, week()) == {"Signup": ["plan"]}

    def test_props_without_event_goals(self, duckdb_store: DuckDBStore, site: Site):
        assert duckdb_store.props(site, week()) == {}

    def test_suggestions(self, duckdb_store: DuckDBStore, site: Site):
        assert duckdb_store.filter_suggestions(site, week(), "browser", "fire") == ["Firefox"]
        assert duckdb_store.filter_suggestions(site, week(), "browser", None) == ["Chrome", "Firefox"]

    def test_goal_suggestions(self, duckdb_store: DuckDBStore, shop: Site):
        assert duckdb_store.filter_suggestions(shop, week(), "goal", "visit") == ["Visit /register"]

    def test_bad_sql_is_a_store_error(self, duckdb_store: DuckDBStore):
        with pytest.raises(StoreError) as exc_info:
            duckdb_store._fetch("SELECT * FROM missing_table", "aggregate")
        assert exc_info.value.operation == "aggregate"


class TestEngineOverDuckDB:
    @pytest.fixture
    def engine(self, duckdb_store: DuckDBStore) -> StatsEngine:
        return StatsEngine(duckdb_store, clock=lambda: NOW)

    def test_top_stats(self, engine: StatsEngine, site: Site):
        report = engine.top_stats(site, {"period": "7d"})
        stats = {s.name: s for s in report.top_stats}
        assert stats["Unique visitors"].value == 3
        assert stats["Unique visitors"].comparison_value == 0
        assert stats["Unique visitors"].change == 100
        assert stats["Bounce rate"].change is None

    def test_sources_with_goal(self, engine: StatsEngine, site: Site):
        result = engine.breakdown(site, "sources", {"period": "7d", "filters": '{"goal": "Signup"}'})
        assert result.results == [
            {"name": "Google", "visitors": 1, "total_visitors": 1, "conversion_rate": 100.0}
        ]

    def test_conversions(self, engine: StatsEngine, shop: Site):
        result = engine.conversions(shop, {"period": "7d"})
        assert [(r["name"], r["conversion_rate"]) for r in result.results] == [
            ("Signup", 33.3),
            ("Visit /register", 33.3),
        ]

    def test_exit_pages(self, engine: StatsEngine, site: Site):
        result = engine.breakdown(site, "exit_pages", {"period": "7d"})
        rates = {r["name"]: r["exit_rate"] for r in result.results}
        # two exits from /blog/hello over two pageviews, one from /register over one
        assert rates == {"/blog/hello": 100.0, "/register": 100.0}

    def test_main_graph(self, engine: StatsEngine, site: Site):
        graph = engine.main_graph(site, {"period": "7d"})
        assert graph.plot == [0, 0, 0, 0, 2, 1, 0]
        assert graph.present_index == 6
