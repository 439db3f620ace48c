"""Comparison queries - "how does this period stack up against another one".

given a base Query and a ComparisonDirective this derives a second Query over
a different date range with everything else (filters, interval, sampling)
carried over. imported data gets re-decided for the new range since the
comparison can reach back into a window the import does (or doesn't) cover.
"""

import logging
from datetime import timedelta

from trafficlens.dates import shift_years
from trafficlens.errors import QueryValidationError, UnsupportedComparisonError
from trafficlens.models.period import DateRange, Period
from trafficlens.models.query import ComparisonDirective, ComparisonMode, Query
from trafficlens.models.site import Site
from trafficlens.query_builder import include_imported

logger = logging.getLogger(__name__)

# realtime is a rolling window and `all` has nothing before it
NOT_COMPARABLE = frozenset({Period.REALTIME, Period.LAST_30_MINUTES, Period.ALL})


def previous_period_range(date_range: DateRange) -> DateRange:
    """Same length, ending the day before date_range starts."""
    length = date_range.days
    return DateRange(
        first=date_range.first - timedelta(days=length),
        last=date_range.first - timedelta(days=1),
    )


def year_over_year_range(date_range: DateRange) -> DateRange:
    return DateRange(first=shift_years(date_range.first, -1), last=shift_years(date_range.last, -1))


def align_day_of_week(comparison: DateRange, source: DateRange) -> DateRange:
    """Shift comparison forward 0-6 days so it starts on source's weekday."""
    n = (source.first.weekday() - comparison.first.weekday()) % 7
    return comparison.shift(n)


def _custom_range(directive: ComparisonDirective) -> DateRange:
    if directive.from_date is None or directive.to_date is None:
        raise UnsupportedComparisonError("custom comparison needs compare_from and compare_to")
    if directive.from_date > directive.to_date:
        raise QueryValidationError(
            f"Invalid comparison range: `compare_from` ({directive.from_date}) "
            f"is after `compare_to` ({directive.to_date})"
        )
    return DateRange(first=directive.from_date, last=directive.to_date)


def compare(site: Site, query: Query, directive: ComparisonDirective) -> Query:
    """Derive the comparison Query for query.

    Raises:
        UnsupportedComparisonError: comparison is off or not defined for this query.
        QueryValidationError: custom bounds are given but out of order.
    """
    if query.is_comparison:
        raise UnsupportedComparisonError("a comparison query can't be compared again")
    if query.period in NOT_COMPARABLE:
        raise UnsupportedComparisonError(f"comparisons are not supported for period {query.period.value}")

    match directive.mode:
        case ComparisonMode.OFF:
            raise UnsupportedComparisonError("comparison is off")
        case ComparisonMode.PREVIOUS_PERIOD:
            date_range = previous_period_range(query.date_range)
        case ComparisonMode.YEAR_OVER_YEAR:
            date_range = year_over_year_range(query.date_range)
        case ComparisonMode.CUSTOM:
            date_range = _custom_range(directive)

    if directive.match_day_of_week and directive.mode != ComparisonMode.CUSTOM:
        date_range = align_day_of_week(date_range, query.date_range)

    comparison = query.replace(
        date_range=date_range,
        include_imported=include_imported(
            site, date_range, bool(query.filters), query.imported_requested
        ),
        is_comparison=True,
    )
    logger.debug(
        "comparison (%s) for %s..%s is %s..%s",
        directive.mode.value,
        query.date_range.first,
        query.date_range.last,
        date_range.first,
        date_range.last,
    )
    return comparison


def maybe_compare(site: Site, query: Query, directive: ComparisonDirective) -> Query | None:
    """compare() that maps "not supported" to None."""
    try:
        return compare(site, query, directive)
    except UnsupportedComparisonError as e:
        logger.debug("no comparison: %s", e.message)
        return None
