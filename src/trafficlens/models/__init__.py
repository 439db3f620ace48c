"""Pydantic models for trafficlens."""

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
from trafficlens.models.period import DateRange, Interval, Period
from trafficlens.models.query import ComparisonDirective, ComparisonMode, Pagination, Query
from trafficlens.models.report import (
    BreakdownResult,
    BreakdownRow,
    MainGraph,
    TopStat,
    TopStatsReport,
)
from trafficlens.models.site import Goal, ImportedData, Site

__all__ = [
    "BreakdownResult",
    "BreakdownRow",
    "ComparisonDirective",
    "ComparisonMode",
    "ContainsFilter",
    "DateRange",
    "DoesNotContainFilter",
    "DoesNotMatchFilter",
    "FilterClause",
    "Goal",
    "ImportedData",
    "Interval",
    "IsFilter",
    "IsNotFilter",
    "MainGraph",
    "MatchesFilter",
    "MemberFilter",
    "NotMemberFilter",
    "Pagination",
    "Period",
    "Query",
    "Site",
    "TopStat",
    "TopStatsReport",
]
