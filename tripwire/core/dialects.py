"""SQL dialect helpers for time bucketing, percentiles and search.

Stores build their aggregate queries from these fragments so that the same
chart semantics hold on PostgreSQL, MySQL and SQLite.
"""

import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum

from .models import Granularity

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")
_SEARCH_TOKEN = re.compile(r"[A-Za-z0-9_]+")


class Dialect(Enum):
    """Supported SQL dialects."""

    POSTGRES = "postgresql"
    MYSQL = "mysql"
    FALLBACK = "fallback"

    @classmethod
    def from_adapter_name(cls, name: str | None) -> "Dialect":
        """Map a driver or adapter name to a dialect."""
        lowered = (name or "").lower()
        if "postgres" in lowered or lowered in ("asyncpg", "psycopg", "psycopg2", "pg"):
            return cls.POSTGRES
        if "mysql" in lowered or "mariadb" in lowered or "trilogy" in lowered:
            return cls.MYSQL
        return cls.FALLBACK


def _check_identifier(column: str) -> str:
    if not _IDENTIFIER.match(column):
        raise ValueError(f"Invalid column name: {column!r}")
    return column


def date_trunc_sql(dialect: Dialect, granularity: Granularity, column: str = "created_at") -> str:
    """SQL expression truncating ``column`` to the start of its bucket."""
    column = _check_identifier(column)
    if granularity == Granularity.DAY:
        if dialect == Dialect.POSTGRES:
            return f"date_trunc('day', {column})"
        return f"DATE({column})"

    unit = granularity.value
    if dialect == Dialect.POSTGRES:
        return f"date_trunc('{unit}', {column})"
    if dialect == Dialect.MYSQL:
        pattern = "%Y-%m-%d %H:%i:00" if granularity == Granularity.MINUTE else "%Y-%m-%d %H:00:00"
        return f"DATE_FORMAT({column}, '{pattern}')"
    pattern = "%Y-%m-%d %H:%M:00" if granularity == Granularity.MINUTE else "%Y-%m-%d %H:00:00"
    return f"strftime('{pattern}', {column})"


def percentile_sql(dialect: Dialect, column: str, percentile: float) -> str | None:
    """Native percentile aggregate, or None when the dialect lacks one."""
    if dialect != Dialect.POSTGRES:
        return None
    if not 0 <= percentile <= 100:
        raise ValueError(f"percentile must be between 0 and 100, got {percentile}")
    column = _check_identifier(column)
    return f"PERCENTILE_CONT({percentile / 100:g}) WITHIN GROUP (ORDER BY {column})"


def percentile_offset(percentile: float, count: int) -> int:
    """Row offset of the p-th percentile in an ascending ordering."""
    return max(math.ceil(percentile / 100 * count) - 1, 0)


def prefix_tsquery(query: str) -> str:
    """PostgreSQL tsquery that prefix-matches every token of ``query``."""
    return " & ".join(f"{token}:*" for token in _SEARCH_TOKEN.findall(query or ""))


def like_pattern(query: str) -> str:
    """Substring LIKE pattern; use with ``ESCAPE '\\'``."""
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def parse_bucket(value: object) -> datetime:
    """Normalize a bucket value returned by any dialect to an aware datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value)
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M:%S.%f", "%Y-%m-%d"):
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    raise ValueError(f"Unrecognized bucket value: {value!r}")


# ============================================================================
# Chart periods
# ============================================================================


@dataclass(frozen=True)
class Period:
    """A chart window: how far back, and how wide each bucket is."""

    duration: timedelta | None  # None means "all time"
    granularity: Granularity

    def since(self, now: datetime) -> datetime | None:
        return None if self.duration is None else now - self.duration


ERROR_PERIODS: dict[str, Period] = {
    "1h": Period(timedelta(hours=1), Granularity.MINUTE),
    "2h": Period(timedelta(hours=2), Granularity.MINUTE),
    "4h": Period(timedelta(hours=4), Granularity.MINUTE),
    "1d": Period(timedelta(days=1), Granularity.HOUR),
    "2d": Period(timedelta(days=2), Granularity.HOUR),
    "1w": Period(timedelta(weeks=1), Granularity.DAY),
    "1m": Period(timedelta(days=30), Granularity.DAY),
    "all": Period(None, Granularity.DAY),
}

APM_PERIODS: dict[str, Period] = {
    "1h": Period(timedelta(hours=1), Granularity.MINUTE),
    "6h": Period(timedelta(hours=6), Granularity.MINUTE),
    "24h": Period(timedelta(hours=24), Granularity.HOUR),
    "7d": Period(timedelta(days=7), Granularity.HOUR),
    "30d": Period(timedelta(days=30), Granularity.DAY),
}


def resolve_period(periods: dict[str, Period], key: str, default: str) -> Period:
    """Look up a named period, falling back to ``default`` for unknown keys."""
    return periods.get(key) or periods[default]


def granularity_for_range(start: datetime, end: datetime) -> Granularity:
    span = end - start
    if span <= timedelta(hours=1):
        return Granularity.MINUTE
    if span <= timedelta(days=1):
        return Granularity.HOUR
    return Granularity.DAY
