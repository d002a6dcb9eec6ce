"""PostgreSQL trace store adapter.

Implements TraceStorePort on the same PostgreSQL database as the issue
store, using the native PERCENTILE_CONT aggregate.
"""

import json
import logging
import uuid
from datetime import datetime
from typing import Any

import asyncpg

from tripwire.core.dialects import Dialect, date_trunc_sql, parse_bucket, percentile_sql
from tripwire.core.models import (
    EndpointStats,
    Granularity,
    Profile,
    ProfileBlob,
    RequestTrace,
    ResponseTimeBucket,
    Span,
    SummaryStats,
    TimeBucket,
    round1,
)
from tripwire.core.ports import TraceStorePort

from .postgresql import PostgreSQLDatabase, _affected

logger = logging.getLogger(__name__)

P50 = percentile_sql(Dialect.POSTGRES, "duration_ms", 50)
P95 = percentile_sql(Dialect.POSTGRES, "duration_ms", 95)


class PostgreSQLTraceStore(TraceStorePort):
    """PostgreSQL-backed request trace store."""

    def __init__(self, database: PostgreSQLDatabase):
        self.database = database

    async def close(self) -> None:
        await self.database.close_pool()

    async def save_trace(
        self, trace: RequestTrace, profile: ProfileBlob | None = None
    ) -> RequestTrace:
        spans_json = (
            json.dumps([span.to_dict() for span in trace.spans]) if trace.spans else None
        )
        async with self.database.connection() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO request_traces
                    (id, endpoint, http_method, path, status, duration_ms, db_runtime_ms,
                     view_runtime_ms, db_query_count, spans, has_profile, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb, $11, $12)
                    """,
                    trace.id,
                    trace.endpoint,
                    trace.http_method,
                    trace.path,
                    trace.status,
                    trace.duration_ms,
                    trace.db_runtime_ms,
                    trace.view_runtime_ms,
                    trace.db_query_count,
                    spans_json,
                    profile is not None,
                    trace.created_at,
                )
                if profile is not None:
                    await conn.execute(
                        """
                        INSERT INTO request_profiles
                        (id, request_trace_id, profile_data, mode, samples, interval_ms,
                         created_at)
                        VALUES ($1, $2, $3, $4, $5, $6, $7)
                        """,
                        str(uuid.uuid4()),
                        trace.id,
                        profile.encode(),
                        profile.mode,
                        profile.samples,
                        profile.interval_ms,
                        trace.created_at,
                    )
        return trace

    async def get_trace(self, trace_id: str) -> RequestTrace | None:
        async with self.database.connection() as conn:
            row = await conn.fetchrow("SELECT * FROM request_traces WHERE id = $1", trace_id)
        return self._row_to_trace(row) if row is not None else None

    async def get_profile(self, trace_id: str) -> Profile | None:
        async with self.database.connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM request_profiles WHERE request_trace_id = $1", trace_id
            )
        if row is None:
            return None
        return Profile(
            id=row["id"],
            request_trace_id=row["request_trace_id"],
            profile_data=row["profile_data"],
            mode=row["mode"],
            samples=row["samples"],
            interval_ms=row["interval_ms"],
            created_at=row["created_at"],
        )

    async def response_time_series(
        self,
        since: datetime | None,
        granularity: Granularity,
        endpoint: str | None = None,
    ) -> list[ResponseTimeBucket]:
        where, params = _window(since, endpoint)
        bucket = date_trunc_sql(Dialect.POSTGRES, granularity)
        async with self.database.connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {bucket} AS bucket,
                       AVG(duration_ms) AS avg_duration,
                       MIN(duration_ms) AS min_duration,
                       MAX(duration_ms) AS max_duration,
                       COUNT(*) AS count
                FROM request_traces {where}
                GROUP BY 1
                ORDER BY 1
                """,
                *params,
            )
        return [
            ResponseTimeBucket(
                bucket=parse_bucket(row["bucket"]),
                avg=round1(row["avg_duration"]),
                min=round1(row["min_duration"]),
                max=round1(row["max_duration"]),
                count=row["count"],
            )
            for row in rows
        ]

    async def throughput_series(
        self, since: datetime | None, granularity: Granularity
    ) -> list[TimeBucket]:
        where, params = _window(since, None)
        bucket = date_trunc_sql(Dialect.POSTGRES, granularity)
        async with self.database.connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {bucket} AS bucket, COUNT(*) AS count
                FROM request_traces {where}
                GROUP BY 1
                ORDER BY 1
                """,
                *params,
            )
        return [TimeBucket(bucket=parse_bucket(row["bucket"]), count=row["count"]) for row in rows]

    async def slowest_endpoints(self, since: datetime, limit: int = 20) -> list[EndpointStats]:
        async with self.database.connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT endpoint,
                       COUNT(*) AS request_count,
                       AVG(duration_ms) AS avg_duration,
                       AVG(db_runtime_ms) AS avg_db_runtime,
                       AVG(db_query_count) AS avg_query_count,
                       {P50} AS p50_duration,
                       {P95} AS p95_duration,
                       COUNT(*) FILTER (WHERE status >= 500) AS error_count
                FROM request_traces
                WHERE created_at >= $1
                GROUP BY endpoint
                ORDER BY avg_duration DESC
                LIMIT $2
                """,
                since,
                limit,
            )
        return [
            EndpointStats(
                endpoint=row["endpoint"],
                request_count=row["request_count"],
                avg_duration=round1(row["avg_duration"]) or 0.0,
                avg_db_runtime=round1(row["avg_db_runtime"]) or 0.0,
                avg_query_count=round1(row["avg_query_count"]) or 0.0,
                p50_duration=round1(row["p50_duration"]) or 0.0,
                p95_duration=round1(row["p95_duration"]) or 0.0,
                error_count=row["error_count"] or 0,
            )
            for row in rows
        ]

    async def summary_stats(self, since: datetime) -> SummaryStats:
        async with self.database.connection() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT COUNT(*) AS total,
                       AVG(duration_ms) AS avg_duration,
                       AVG(db_runtime_ms) AS avg_db_runtime,
                       AVG(db_query_count) AS avg_query_count,
                       {P95} AS p95_duration,
                       COUNT(*) FILTER (WHERE status >= 500) AS error_count
                FROM request_traces
                WHERE created_at >= $1
                """,
                since,
            )
        return SummaryStats(
            total_requests=row["total"] or 0,
            avg_duration=round1(row["avg_duration"]) or 0.0,
            avg_db_runtime=round1(row["avg_db_runtime"]) or 0.0,
            avg_query_count=round1(row["avg_query_count"]) or 0.0,
            error_count=row["error_count"] or 0,
            p95_duration=round1(row["p95_duration"]) or 0.0,
        )

    async def cleanup_traces(self, before: datetime) -> int:
        async with self.database.connection() as conn:
            result = await conn.execute("DELETE FROM request_traces WHERE created_at < $1", before)
        return _affected(result)

    def _row_to_trace(self, row: asyncpg.Record) -> RequestTrace:
        """Convert a database row to a RequestTrace.

        Raises:
            ValueError: If row contains invalid data.
        """
        try:
            spans = None
            raw = row["spans"]
            if raw:
                items = json.loads(raw) if isinstance(raw, str) else raw
                spans = tuple(Span.from_dict(item) for item in items)
            return RequestTrace(
                id=row["id"],
                endpoint=row["endpoint"],
                http_method=row["http_method"],
                path=row["path"],
                status=row["status"],
                duration_ms=row["duration_ms"],
                db_runtime_ms=row["db_runtime_ms"],
                view_runtime_ms=row["view_runtime_ms"],
                db_query_count=row["db_query_count"],
                created_at=row["created_at"],
                spans=spans,
                has_profile=row["has_profile"],
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Failed to parse request trace row: {e}")
            raise ValueError(f"Row parsing failed: {e}") from e


def _window(since: datetime | None, endpoint: str | None) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if since is not None:
        params.append(since)
        clauses.append(f"created_at >= ${len(params)}")
    if endpoint is not None:
        params.append(endpoint)
        clauses.append(f"endpoint = ${len(params)}")
    return (f"WHERE {' AND '.join(clauses)}" if clauses else ""), params
