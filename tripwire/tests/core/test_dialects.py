"""Tests for SQL dialect helpers and chart periods."""

from datetime import date, datetime, timedelta, timezone

import pytest

from tripwire.core.dialects import (
    APM_PERIODS,
    ERROR_PERIODS,
    Dialect,
    date_trunc_sql,
    granularity_for_range,
    like_pattern,
    parse_bucket,
    percentile_offset,
    percentile_sql,
    prefix_tsquery,
    resolve_period,
)
from tripwire.core.models import Granularity


@pytest.mark.parametrize(
    "name, dialect",
    [
        ("asyncpg", Dialect.POSTGRES),
        ("postgresql", Dialect.POSTGRES),
        ("mysql2", Dialect.MYSQL),
        ("sqlite", Dialect.FALLBACK),
        (None, Dialect.FALLBACK),
    ],
)
def test_dialect_from_adapter_name(name, dialect):
    assert Dialect.from_adapter_name(name) is dialect


class TestDateTrunc:
    def test_postgres(self):
        assert date_trunc_sql(Dialect.POSTGRES, Granularity.HOUR) == "date_trunc('hour', created_at)"
        assert date_trunc_sql(Dialect.POSTGRES, Granularity.DAY) == "date_trunc('day', created_at)"

    def test_day_uses_date_elsewhere(self):
        assert date_trunc_sql(Dialect.MYSQL, Granularity.DAY) == "DATE(created_at)"
        assert date_trunc_sql(Dialect.FALLBACK, Granularity.DAY) == "DATE(created_at)"

    def test_fallback_minute(self):
        assert (
            date_trunc_sql(Dialect.FALLBACK, Granularity.MINUTE)
            == "strftime('%Y-%m-%d %H:%M:00', created_at)"
        )

    def test_rejects_unsafe_column(self):
        with pytest.raises(ValueError):
            date_trunc_sql(Dialect.FALLBACK, Granularity.DAY, "created_at; DROP TABLE x")


class TestPercentiles:
    def test_native_only_on_postgres(self):
        assert percentile_sql(Dialect.POSTGRES, "duration_ms", 95) == (
            "PERCENTILE_CONT(0.95) WITHIN GROUP (ORDER BY duration_ms)"
        )
        assert percentile_sql(Dialect.FALLBACK, "duration_ms", 95) is None

    @pytest.mark.parametrize("count, offset", [(1, 0), (2, 1), (10, 9), (30, 28)])
    def test_p95_offset(self, count, offset):
        assert percentile_offset(95, count) == offset

    def test_p50_offset(self):
        assert percentile_offset(50, 4) == 1


class TestSearch:
    def test_prefix_tsquery(self):
        assert prefix_tsquery("NoMethod err!") == "NoMethod:* & err:*"
        assert prefix_tsquery("") == ""

    def test_like_pattern_escapes_wildcards(self):
        assert like_pattern("100%_done") == "%100\\%\\_done%"


class TestBuckets:
    def test_parse_text_and_dates(self):
        utc = timezone.utc
        assert parse_bucket("2024-03-01 12:00:00") == datetime(2024, 3, 1, 12, tzinfo=utc)
        assert parse_bucket("2024-03-01") == datetime(2024, 3, 1, tzinfo=utc)
        assert parse_bucket(date(2024, 3, 1)) == datetime(2024, 3, 1, tzinfo=utc)
        assert parse_bucket(datetime(2024, 3, 1, 5)) == datetime(2024, 3, 1, 5, tzinfo=utc)

    def test_parse_garbage(self):
        with pytest.raises(ValueError):
            parse_bucket("yesterday")


class TestPeriods:
    def test_unknown_period_falls_back(self):
        assert resolve_period(ERROR_PERIODS, "fortnight", "1d") is ERROR_PERIODS["1d"]

    def test_all_time_has_no_lower_bound(self):
        assert ERROR_PERIODS["all"].since(datetime.now(timezone.utc)) is None

    def test_apm_periods(self):
        assert APM_PERIODS["1h"].granularity == Granularity.MINUTE
        assert APM_PERIODS["30d"].granularity == Granularity.DAY

    @pytest.mark.parametrize(
        "span, granularity",
        [
            (timedelta(minutes=30), Granularity.MINUTE),
            (timedelta(hours=6), Granularity.HOUR),
            (timedelta(days=3), Granularity.DAY),
        ],
    )
    def test_granularity_for_range(self, span, granularity):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert granularity_for_range(start, start + span) == granularity
