"""Build Query values from raw request parameters.

params are the loosely-typed strings an HTTP layer hands over (period, date,
from, to, interval, filters, with_imported, ...). the pipeline is:

  validate -> resolve period -> parse filters -> decide imported data

each step produces plain values and the Query is constructed once at the end,
so there is never a half-built query floating around.
"""

import logging
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any

from trafficlens.config import EngineSettings
from trafficlens.dates import parse_iso_date, resolve_period, validate_params
from trafficlens.errors import QueryValidationError
from trafficlens.filter_parser import parse_filters
from trafficlens.models.period import DateRange, Period
from trafficlens.models.query import ComparisonDirective, ComparisonMode, Pagination, Query
from trafficlens.models.site import Site

logger = logging.getLogger(__name__)


def include_imported(
    site: Site,
    date_range: DateRange,
    has_filters: bool,
    requested: bool,
) -> bool:
    """Whether the store should merge imported data for this range.

    imported data only works for unfiltered queries that start inside the
    imported window, and only when the import actually finished.
    """
    imported = site.imported_data
    if imported is None:
        return False
    if imported.status != "ok":
        return False
    if date_range.first > imported.end_date:
        return False
    if has_filters:
        return False
    return requested


def build_query(
    site: Site,
    params: Mapping[str, Any],
    settings: EngineSettings | None = None,
    now: datetime | None = None,
) -> Query:
    """Turn request params into a Query for this site.

    Args:
        site: site being queried, supplies timezone and imported data info.
        params: raw request parameters.
        settings: engine policies.
        now: pins the clock (tests, replays); defaults to the real time.

    Raises:
        QueryValidationError: if any parameter is malformed.
    """
    settings = settings or EngineSettings()
    validate_params(params)

    today = site.today(now)
    resolved = resolve_period(params, today, site.stats_start_date, settings)
    filters = parse_filters(params.get("filters"))

    sample_threshold = params.get("sample_threshold", settings.sample_threshold)
    try:
        sample_threshold = int(sample_threshold)
    except (TypeError, ValueError) as e:
        raise QueryValidationError("Invalid value for sample_threshold") from e

    requested = str(params.get("with_imported", "")).lower() == "true"
    if resolved.period == Period.REALTIME:
        with_imported = False
    else:
        with_imported = include_imported(site, resolved.date_range, bool(filters), requested)

    query = Query(
        period=resolved.period,
        date_range=resolved.date_range,
        interval=resolved.interval,
        filters=filters,
        sample_threshold=sample_threshold,
        include_imported=with_imported,
        imported_requested=requested,
    )
    logger.debug(
        "built query for %s: period=%s range=%s..%s interval=%s filters=%s",
        site.domain,
        query.period.value,
        query.date_range.first,
        query.date_range.last,
        query.interval.value,
        list(query.filters),
    )
    return query


def _to_int(value: Any, default: int) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return default
    return default


def parse_pagination(params: Mapping[str, Any], settings: EngineSettings | None = None) -> Pagination:
    """limit/page from params; junk falls back to the defaults."""
    settings = settings or EngineSettings()
    limit = _to_int(params.get("limit"), settings.default_limit)
    page = _to_int(params.get("page"), settings.default_page)
    return Pagination(
        limit=limit if limit > 0 else settings.default_limit,
        page=page if page > 0 else settings.default_page,
    )


def parse_comparison(
    params: Mapping[str, Any],
    default_mode: ComparisonMode = ComparisonMode.OFF,
) -> ComparisonDirective:
    """Read comparison, compare_from, compare_to and match_day_of_week.

    unknown modes become OFF - comparisons are optional decoration, a typo
    shouldn't fail the whole request.
    """
    raw_mode = params.get("comparison")
    if raw_mode is None:
        mode = default_mode
    else:
        try:
            mode = ComparisonMode(raw_mode)
        except ValueError:
            logger.debug("unknown comparison mode %r, comparison disabled", raw_mode)
            mode = ComparisonMode.OFF

    from_date = _optional_date(params.get("compare_from"))
    to_date = _optional_date(params.get("compare_to"))

    return ComparisonDirective(
        mode=mode,
        from_date=from_date,
        to_date=to_date,
        match_day_of_week=str(params.get("match_day_of_week", "")).lower() == "true",
    )


def _optional_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    return parse_iso_date(value)
