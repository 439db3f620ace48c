"""Pytest fixtures for TrafficLens tests."""

import threading
from collections.abc import Callable, Generator
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from trafficlens.config import EngineSettings
from trafficlens.engine import StatsEngine
from trafficlens.models.filters import MemberFilter
from trafficlens.models.query import Query
from trafficlens.models.site import Goal, ImportedData, Site
from trafficlens.store.base import Row, dimension_column
from trafficlens.store.duckdb_store import DuckDBStore

# 2024-03-16 is a saturday
NOW = datetime(2024, 3, 16, 12, 30, tzinfo=timezone.utc)


@dataclass
class Call:
    operation: str
    query: Query | None = None
    dimension: str | None = None
    metrics: list[str] | None = None
    pagination: tuple[int, int] | None = None


class FakeStore:
    """In-memory StatsStore that records every call.

    canned results are picked by whether the query has a goal filter or is a
    comparison, which is all the engine's branching depends on.
    """

    def __init__(self) -> None:
        self.calls: list[Call] = []
        self._lock = threading.Lock()

        self.totals: dict[str, Any] = {}
        self.comparison_totals: dict[str, Any] = {}
        self.goal_totals: dict[str, Any] = {}
        self.aggregate_fn: Callable[[Query, list[str]], dict[str, Any]] | None = None

        self.rows: dict[str, list[Row]] = {}
        self.goal_rows: dict[str, list[Row]] = {}

        self.series: list[Row] = []
        self.comparison_series: list[Row] = []

        self.visitors_now = 0
        self.prop_names: dict[str, list[str]] = {}
        self.suggestions: list[Any] = []
        self.fail_on: set[str] = set()

    def _record(self, call: Call) -> None:
        with self._lock:
            self.calls.append(call)
        if call.operation in self.fail_on:
            raise RuntimeError(f"{call.operation} exploded")

    def ops(self, operation: str) -> list[Call]:
        return [c for c in self.calls if c.operation == operation]

    def aggregate(self, site: Site, query: Query, metrics: list[str]) -> dict[str, dict[str, Any]]:
        self._record(Call("aggregate", query, metrics=list(metrics)))
        if self.aggregate_fn is not None:
            values = self.aggregate_fn(query, metrics)
        elif query.has_goal_filter:
            values = self.goal_totals
        elif query.is_comparison:
            values = self.comparison_totals
        else:
            values = self.totals
        return {m: {"value": values[m]} for m in metrics if m in values}

    def breakdown(
        self,
        site: Site,
        query: Query,
        dimension: str,
        metrics: list[str],
        pagination: tuple[int, int],
    ) -> list[Row]:
        self._record(Call("breakdown", query, dimension, list(metrics), pagination))
        source = self.goal_rows if query.has_goal_filter else self.rows
        rows = [dict(r) for r in source.get(dimension, [])]

        member = query.filters.get(dimension)
        if isinstance(member, MemberFilter):
            column = dimension_column(dimension)
            rows = [r for r in rows if str(r[column]) in member.values]

        limit, page = pagination
        return rows[(page - 1) * limit : page * limit]

    def timeseries(self, site: Site, query: Query, metrics: list[str]) -> list[Row]:
        self._record(Call("timeseries", query, metrics=list(metrics)))
        return [dict(r) for r in (self.comparison_series if query.is_comparison else self.series)]

    def current_visitors(self, site: Site) -> int:
        self._record(Call("current_visitors"))
        return self.visitors_now

    def props(self, site: Site, query: Query) -> dict[str, list[str]]:
        self._record(Call("props", query))
        return self.prop_names

    def filter_suggestions(self, site: Site, query: Query, filter_name: str, partial: str | None) -> list[Any]:
        self._record(Call("filter_suggestions", query, dimension=filter_name))
        return [s for s in self.suggestions if not partial or partial in str(s)]


@pytest.fixture
def site() -> Site:
    """Plain UTC site with no goals or imports."""
    return Site(domain="example.com", stats_start_date=date(2023, 1, 10))


@pytest.fixture
def goal_site() -> Site:
    """Site with an event goal, a page goal and an imported GA window."""
    return Site(
        domain="shop.example",
        timezone="Europe/Tallinn",
        stats_start_date=date(2022, 6, 1),
        imported_data=ImportedData(end_date=date(2022, 5, 31)),
        goals=(Goal(event_name="Signup"), Goal(page_path="/register")),
    )


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def engine(fake_store: FakeStore) -> StatsEngine:
    """Engine over the fake store with the clock pinned to NOW."""
    return StatsEngine(fake_store, settings=EngineSettings(), clock=lambda: NOW)


@pytest.fixture
def sites_yaml() -> str:
    return """
sites:
  - domain: example.com
    timezone: Etc/UTC
    stats_start_date: 2024-01-01

  - domain: shop.example
    timezone: Europe/Tallinn
    stats_start_date: 2022-06-01
    imported_data:
      source: Google Analytics
      end_date: 2022-05-31
    goals:
      - event_name: Signup
      - page_path: /register
"""


@pytest.fixture
def sites_file(tmp_path: Path, sites_yaml: str) -> Path:
    path = tmp_path / "sites.yaml"
    path.write_text(sites_yaml)
    return path


def _event(ts: str, user: int, session: int, name: str = "pageview", **extra: Any) -> dict[str, Any]:
    return {
        "timestamp": datetime.fromisoformat(ts),
        "domain": "example.com",
        "name": name,
        "user_id": user,
        "session_id": session,
        **extra,
    }


@pytest.fixture
def sample_events() -> list[dict[str, Any]]:
    """A handful of sessions on 2024-03-14 and 2024-03-15 (UTC)."""
    google = {"referrer_source": "Google", "country_code": "DE", "browser": "Firefox"}
    twitter = {"referrer_source": "Twitter", "country_code": "EE", "browser": "Chrome"}
    direct = {"country_code": "US", "browser": "Chrome"}
    return [
        # user 1: two pages, then signs up
        _event("2024-03-14 10:00:00", 1, 11, pathname="/", entry_page="/", exit_page="/register", **google),
        _event("2024-03-14 10:01:00", 1, 11, pathname="/register", entry_page="/", exit_page="/register", **google),
        _event(
            "2024-03-14 10:02:00",
            1,
            11,
            name="Signup",
            pathname="/register",
            entry_page="/",
            exit_page="/register",
            props={"plan": "pro"},
            **google,
        ),
        # user 2: single page bounce
        _event("2024-03-14 12:00:00", 2, 21, pathname="/blog/hello", entry_page="/blog/hello",
               exit_page="/blog/hello", **twitter),
        # user 3: two pages on the 15th
        _event("2024-03-15 09:00:00", 3, 31, pathname="/", entry_page="/", exit_page="/blog/hello", **direct),
        _event("2024-03-15 09:00:30", 3, 31, pathname="/blog/hello", entry_page="/", exit_page="/blog/hello",
               **direct),
    ]


@pytest.fixture
def duckdb_store(sample_events: list[dict[str, Any]]) -> Generator[DuckDBStore, None, None]:
    """In-memory DuckDB store loaded with sample_events."""
    store = DuckDBStore(clock=lambda: NOW)
    store.insert_events(sample_events)
    yield store
    store.close()
