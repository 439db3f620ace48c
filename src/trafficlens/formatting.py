"""Shaping enriched results for JSON responses and CSV export."""

import csv
import io
from collections.abc import Iterable, Sequence
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

from trafficlens.enrichment import transform_keys
from trafficlens.models.report import BreakdownResult
from trafficlens.store.base import Row

GOAL_CSV_HEADERS = ("name", "conversions", "conversion_rate")


def to_csv(rows: Iterable[Row], headers: Sequence[str]) -> str:
    """Header row plus one row per item, columns picked by header name.

    anything in a row that isn't in headers is left out, and missing
    columns come out empty.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(headers)
    for row in rows:
        writer.writerow(["" if row.get(h) is None else row.get(h) for h in headers])
    return buffer.getvalue()


def result_csv(result: BreakdownResult) -> str:
    """CSV export of a breakdown, with the columns that report exports."""
    return to_csv(transform_keys(result.results, result.csv_renames), result.csv_headers)


def to_jsonable(value: Any) -> Any:
    """Recursively turn report payloads into json-serialisable values."""
    if isinstance(value, BaseModel):
        return to_jsonable(value.model_dump(by_alias=True))
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value
