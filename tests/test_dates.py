"""Tests for period resolution and calendar helpers."""

from datetime import date

import pytest

from trafficlens.config import EngineSettings, UnknownPeriodPolicy
from trafficlens.dates import (
    DATE_ERROR,
    INTERVAL_GRANULARITY_ERROR,
    end_of_month,
    months_between,
    resolve_period,
    shift_months,
    shift_years,
    validate_params,
)
from trafficlens.errors import QueryValidationError
from trafficlens.models.period import DateRange, Interval, Period, valid_for_period

TODAY = date(2024, 3, 16)


class TestCalendarHelpers:
    def test_end_of_month_leap_year(self):
        """February ends on the 29th in a leap year."""
        assert end_of_month(date(2024, 2, 10)) == date(2024, 2, 29)
        assert end_of_month(date(2023, 2, 10)) == date(2023, 2, 28)

    def test_shift_months_clamps_day(self):
        """Shifting from the 31st lands on the last day of a shorter month."""
        assert shift_months(date(2024, 3, 31), -1) == date(2024, 2, 29)
        assert shift_months(date(2024, 1, 15), -2) == date(2023, 11, 15)

    def test_shift_years_leap_day(self):
        """29 Feb moves to 28 Feb in a non-leap year."""
        assert shift_years(date(2024, 2, 29), -1) == date(2023, 2, 28)

    def test_months_between(self):
        assert months_between(date(2024, 1, 10), date(2024, 3, 16)) == 2
        assert months_between(date(2024, 1, 20), date(2024, 2, 10)) == 0
        assert months_between(date(2024, 3, 1), date(2024, 3, 16)) == 0


class TestResolvePeriod:
    def test_day(self):
        resolved = resolve_period({"period": "day", "date": "2024-03-10"}, TODAY)
        assert resolved.date_range == DateRange(first=date(2024, 3, 10), last=date(2024, 3, 10))
        assert resolved.interval == Interval.HOUR

    def test_day_defaults_to_today(self):
        resolved = resolve_period({"period": "day"}, TODAY)
        assert resolved.date_range.first == TODAY

    def test_7d(self):
        """7d covers the anchor and the six days before it."""
        resolved = resolve_period({"period": "7d", "date": "2024-03-16"}, TODAY)
        assert resolved.date_range == DateRange(first=date(2024, 3, 10), last=date(2024, 3, 16))
        assert resolved.date_range.days == 7
        assert resolved.interval == Interval.DATE

    def test_30d(self):
        """30d starts thirty days before the anchor."""
        resolved = resolve_period({"period": "30d"}, TODAY)
        assert resolved.date_range == DateRange(first=date(2024, 2, 15), last=TODAY)

    def test_month(self):
        resolved = resolve_period({"period": "month", "date": "2024-02-10"}, TODAY)
        assert resolved.date_range == DateRange(first=date(2024, 2, 1), last=date(2024, 2, 29))

    def test_6mo(self):
        """6mo is the anchor's month plus the five before, whole months."""
        resolved = resolve_period({"period": "6mo"}, TODAY)
        assert resolved.date_range == DateRange(first=date(2023, 10, 1), last=date(2024, 3, 31))
        assert resolved.interval == Interval.MONTH

    def test_12mo(self):
        resolved = resolve_period({"period": "12mo"}, TODAY)
        assert resolved.date_range == DateRange(first=date(2023, 4, 1), last=date(2024, 3, 31))

    def test_year(self):
        resolved = resolve_period({"period": "year", "date": "2023-07-04"}, TODAY)
        assert resolved.date_range == DateRange(first=date(2023, 1, 1), last=date(2023, 12, 31))

    def test_realtime(self):
        resolved = resolve_period({"period": "realtime"}, TODAY)
        assert resolved.date_range == DateRange(first=TODAY, last=TODAY)
        assert resolved.interval == Interval.MINUTE

    def test_custom_range(self):
        """Custom uses from/to exactly and honours a requested interval."""
        params = {"period": "custom", "from": "2021-09-06", "to": "2021-12-13", "interval": "month"}
        resolved = resolve_period(params, TODAY)
        assert resolved.date_range == DateRange(first=date(2021, 9, 6), last=date(2021, 12, 13))
        assert resolved.interval == Interval.MONTH

    def test_custom_range_default_interval(self):
        params = {"period": "custom", "from": "2021-09-06", "to": "2021-12-13"}
        assert resolve_period(params, TODAY).interval == Interval.DATE

    def test_custom_range_from_date_param(self):
        """Custom bounds can come in as date=first,last."""
        resolved = resolve_period({"period": "custom", "date": "2021-09-06,2021-12-13"}, TODAY)
        assert resolved.date_range == DateRange(first=date(2021, 9, 6), last=date(2021, 12, 13))

    def test_custom_minute_rejected(self):
        params = {"period": "custom", "from": "2021-09-06", "to": "2021-12-13", "interval": "minute"}
        with pytest.raises(QueryValidationError) as exc_info:
            resolve_period(params, TODAY)
        assert exc_info.value.message == INTERVAL_GRANULARITY_ERROR

    def test_custom_missing_bounds(self):
        with pytest.raises(QueryValidationError, match="requires `from` and `to`"):
            resolve_period({"period": "custom"}, TODAY)

    def test_custom_reversed_bounds(self):
        with pytest.raises(QueryValidationError, match="is after"):
            resolve_period({"period": "custom", "from": "2024-03-10", "to": "2024-03-01"}, TODAY)

    def test_missing_period_defaults_to_30d(self):
        assert resolve_period({}, TODAY).period == Period.LAST_30_DAYS

    def test_unknown_period_defaults_to_30d(self):
        assert resolve_period({"period": "fortnight"}, TODAY).period == Period.LAST_30_DAYS

    def test_unknown_period_rejected_by_policy(self):
        settings = EngineSettings(unknown_period_policy=UnknownPeriodPolicy.REJECT)
        with pytest.raises(QueryValidationError, match="Invalid value for period"):
            resolve_period({"period": "fortnight"}, TODAY, settings=settings)

    def test_30m_is_not_a_request_period(self):
        """30m is internal to realtime, asking for it falls back like any unknown period."""
        assert resolve_period({"period": "30m"}, TODAY).period == Period.LAST_30_DAYS

    @pytest.mark.parametrize(
        "period",
        ["realtime", "day", "7d", "30d", "month", "6mo", "12mo", "year", "all"],
    )
    def test_every_period_is_ordered_and_valid(self, period):
        """Ranges are never inverted and the interval always fits the period."""
        resolved = resolve_period({"period": period}, TODAY, stats_start_date=date(2023, 1, 10))
        assert resolved.date_range.first <= resolved.date_range.last
        assert valid_for_period(resolved.period, resolved.interval)

    def test_resolution_is_deterministic(self):
        params = {"period": "6mo", "date": "2024-01-31"}
        assert resolve_period(params, TODAY) == resolve_period(params, TODAY)


class TestResolveAll:
    def test_all_spanning_months_buckets_by_month(self):
        resolved = resolve_period({"period": "all"}, TODAY, stats_start_date=date(2023, 1, 10))
        assert resolved.date_range == DateRange(first=date(2023, 1, 10), last=TODAY)
        assert resolved.interval == Interval.MONTH

    def test_all_within_a_month_buckets_by_date(self):
        resolved = resolve_period({"period": "all"}, TODAY, stats_start_date=date(2024, 3, 1))
        assert resolved.interval == Interval.DATE

    def test_all_month_interval_can_be_disabled(self):
        settings = EngineSettings(all_period_month_interval=False)
        resolved = resolve_period(
            {"period": "all"}, TODAY, stats_start_date=date(2023, 1, 10), settings=settings
        )
        assert resolved.interval == Interval.DATE

    def test_all_starting_today(self):
        """A site with data only from today behaves like a single day."""
        resolved = resolve_period({"period": "all"}, TODAY, stats_start_date=TODAY)
        assert resolved.date_range == DateRange(first=TODAY, last=TODAY)
        assert resolved.interval == Interval.HOUR

    def test_all_without_stats_start(self):
        resolved = resolve_period({"period": "all"}, TODAY)
        assert resolved.date_range.first == TODAY


class TestValidateParams:
    def test_bad_date(self):
        with pytest.raises(QueryValidationError) as exc_info:
            validate_params({"date": "yesterday"})
        assert exc_info.value.message == DATE_ERROR

    def test_today_is_accepted(self):
        validate_params({"date": "today"})

    def test_unknown_interval(self):
        with pytest.raises(QueryValidationError, match="Accepted values are: minute, hour, date, week, month"):
            validate_params({"interval": "fortnight"})

    def test_interval_coarser_than_period(self):
        with pytest.raises(QueryValidationError, match="Invalid combination"):
            validate_params({"period": "day", "interval": "month"})

    def test_custom_date_pair(self):
        validate_params({"period": "custom", "date": "2021-09-06,2021-12-13"})

    def test_custom_date_pair_bad_half(self):
        with pytest.raises(QueryValidationError):
            validate_params({"period": "custom", "date": "2021-09-06,nope"})
