"""Pydantic models for report payloads.

breakdowns stay as plain lists of dicts - their columns depend on the
dimension and on whether a goal filter is active, so a fixed model would
mostly be in the way. the two fixed-shape reports get real models.
"""

from datetime import date
from typing import Any

from pydantic import BaseModel, Field

BreakdownRow = dict[str, Any]


class TopStat(BaseModel):
    name: str
    value: Any
    comparison_value: Any = None
    change: float | int | None = None


class TopStatsReport(BaseModel):
    top_stats: list[TopStat]
    interval: str
    sample_percent: Any = None
    with_imported: bool = False
    imported_source: str | None = None
    comparing_from: date | None = None
    comparing_to: date | None = None
    from_date: date = Field(serialization_alias="from")
    to_date: date = Field(serialization_alias="to")


class MainGraph(BaseModel):
    plot: list[Any]
    labels: list[Any]
    comparison_plot: list[Any] | None = None
    comparison_labels: list[Any] | None = None
    present_index: int | None = None
    interval: str
    with_imported: bool = False
    imported_source: str | None = None
    full_intervals: dict[str, bool] | None = None


class BreakdownResult(BaseModel):
    """Rows of a breakdown report plus the query context they came from.

    csv_headers/csv_renames pick the delimited export columns for this report
    and never show up in the json payload.
    """

    results: list[BreakdownRow]
    from_date: date = Field(serialization_alias="from")
    to_date: date = Field(serialization_alias="to")
    interval: str
    with_imported: bool = False
    total_visitors: int | None = None
    csv_headers: tuple[str, ...] = Field(default=(), exclude=True)
    csv_renames: dict[str, str] = Field(default_factory=dict, exclude=True)
