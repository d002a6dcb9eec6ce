"""SQLite trace store adapter.

Implements TraceStorePort on the same SQLite database as the issue store.
SQLite has no percentile aggregate, so percentiles are read with an
ORDER BY ... OFFSET lookup.
"""

import json
import logging
import uuid
from datetime import datetime
from typing import Any

import aiosqlite

from tripwire.core.dialects import Dialect, date_trunc_sql, parse_bucket, percentile_offset
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

from .sqlite import SQLiteDatabase, from_db, to_db

logger = logging.getLogger(__name__)


class SQLiteTraceStore(TraceStorePort):
    """SQLite-backed request trace store."""

    def __init__(self, database: SQLiteDatabase):
        self.database = database

    async def close(self) -> None:
        await self.database.close_pool()

    async def save_trace(
        self, trace: RequestTrace, profile: ProfileBlob | None = None
    ) -> RequestTrace:
        spans_json = (
            json.dumps([span.to_dict() for span in trace.spans]) if trace.spans else None
        )
        async with self.database.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO request_traces
                (id, endpoint, http_method, path, status, duration_ms, db_runtime_ms,
                 view_runtime_ms, db_query_count, spans, has_profile, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
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
                    1 if profile is not None else 0,
                    to_db(trace.created_at),
                ),
            )
            if profile is not None:
                await conn.execute(
                    """
                    INSERT INTO request_profiles
                    (id, request_trace_id, profile_data, mode, samples, interval_ms, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        str(uuid.uuid4()),
                        trace.id,
                        profile.encode(),
                        profile.mode,
                        profile.samples,
                        profile.interval_ms,
                        to_db(trace.created_at),
                    ),
                )
        return trace

    async def get_trace(self, trace_id: str) -> RequestTrace | None:
        async with self.database.connection() as conn:
            cursor = await conn.execute("SELECT * FROM request_traces WHERE id = ?", (trace_id,))
            row = await cursor.fetchone()
        return self._row_to_trace(row) if row is not None else None

    async def get_profile(self, trace_id: str) -> Profile | None:
        async with self.database.connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM request_profiles WHERE request_trace_id = ?", (trace_id,)
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return Profile(
            id=row["id"],
            request_trace_id=row["request_trace_id"],
            profile_data=row["profile_data"],
            mode=row["mode"],
            samples=row["samples"],
            interval_ms=row["interval_ms"],
            created_at=from_db(row["created_at"]),
        )

    async def response_time_series(
        self,
        since: datetime | None,
        granularity: Granularity,
        endpoint: str | None = None,
    ) -> list[ResponseTimeBucket]:
        where, params = _window(since, endpoint)
        bucket = date_trunc_sql(Dialect.FALLBACK, granularity)
        async with self.database.connection() as conn:
            cursor = await conn.execute(
                f"""
                SELECT {bucket} AS bucket,
                       AVG(duration_ms) AS avg_duration,
                       MIN(duration_ms) AS min_duration,
                       MAX(duration_ms) AS max_duration,
                       COUNT(*) AS count
                FROM request_traces {where}
                GROUP BY bucket
                ORDER BY bucket
                """,
                params,
            )
            rows = await cursor.fetchall()
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
        bucket = date_trunc_sql(Dialect.FALLBACK, granularity)
        async with self.database.connection() as conn:
            cursor = await conn.execute(
                f"""
                SELECT {bucket} AS bucket, COUNT(*) AS count
                FROM request_traces {where}
                GROUP BY bucket
                ORDER BY bucket
                """,
                params,
            )
            rows = await cursor.fetchall()
        return [TimeBucket(bucket=parse_bucket(row["bucket"]), count=row["count"]) for row in rows]

    async def slowest_endpoints(self, since: datetime, limit: int = 20) -> list[EndpointStats]:
        where, params = _window(since, None)
        async with self.database.connection() as conn:
            cursor = await conn.execute(
                f"""
                SELECT endpoint,
                       COUNT(*) AS request_count,
                       AVG(duration_ms) AS avg_duration,
                       AVG(db_runtime_ms) AS avg_db_runtime,
                       AVG(db_query_count) AS avg_query_count,
                       SUM(CASE WHEN status >= 500 THEN 1 ELSE 0 END) AS error_count
                FROM request_traces {where}
                GROUP BY endpoint
                ORDER BY avg_duration DESC
                LIMIT ?
                """,
                [*params, limit],
            )
            rows = await cursor.fetchall()

            results = []
            for row in rows:
                scoped_where, scoped_params = _window(since, row["endpoint"])
                count = row["request_count"]
                results.append(
                    EndpointStats(
                        endpoint=row["endpoint"],
                        request_count=count,
                        avg_duration=round1(row["avg_duration"]) or 0.0,
                        avg_db_runtime=round1(row["avg_db_runtime"]) or 0.0,
                        avg_query_count=round1(row["avg_query_count"]) or 0.0,
                        p50_duration=await self._percentile(
                            conn, 50, count, scoped_where, scoped_params
                        ),
                        p95_duration=await self._percentile(
                            conn, 95, count, scoped_where, scoped_params
                        ),
                        error_count=row["error_count"] or 0,
                    )
                )
        return results

    async def summary_stats(self, since: datetime) -> SummaryStats:
        where, params = _window(since, None)
        async with self.database.connection() as conn:
            cursor = await conn.execute(
                f"""
                SELECT COUNT(*) AS total,
                       AVG(duration_ms) AS avg_duration,
                       AVG(db_runtime_ms) AS avg_db_runtime,
                       AVG(db_query_count) AS avg_query_count,
                       SUM(CASE WHEN status >= 500 THEN 1 ELSE 0 END) AS error_count
                FROM request_traces {where}
                """,
                params,
            )
            row = await cursor.fetchone()
            total = row["total"] or 0
            p95 = await self._percentile(conn, 95, total, where, params) if total else 0.0
        return SummaryStats(
            total_requests=total,
            avg_duration=round1(row["avg_duration"]) or 0.0,
            avg_db_runtime=round1(row["avg_db_runtime"]) or 0.0,
            avg_query_count=round1(row["avg_query_count"]) or 0.0,
            error_count=row["error_count"] or 0,
            p95_duration=p95,
        )

    async def _percentile(
        self,
        conn: aiosqlite.Connection,
        percentile: float,
        count: int,
        where: str,
        params: list[Any],
    ) -> float:
        if count <= 0:
            return 0.0
        cursor = await conn.execute(
            f"""
            SELECT duration_ms FROM request_traces {where}
            ORDER BY duration_ms
            LIMIT 1 OFFSET ?
            """,
            [*params, percentile_offset(percentile, count)],
        )
        row = await cursor.fetchone()
        return round1(row[0]) if row is not None else 0.0

    async def cleanup_traces(self, before: datetime) -> int:
        async with self.database.connection() as conn:
            cursor = await conn.execute(
                "DELETE FROM request_traces WHERE created_at < ?", (to_db(before),)
            )
            return cursor.rowcount

    def _row_to_trace(self, row: aiosqlite.Row) -> RequestTrace:
        """Convert a database row to a RequestTrace.

        Raises:
            ValueError: If row contains invalid data.
        """
        try:
            spans = None
            if row["spans"]:
                spans = tuple(Span.from_dict(item) for item in json.loads(row["spans"]))
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
                created_at=from_db(row["created_at"]),
                spans=spans,
                has_profile=bool(row["has_profile"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Failed to parse request trace row: {e}")
            raise ValueError(f"Row parsing failed: {e}") from e


def _window(since: datetime | None, endpoint: str | None) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if since is not None:
        clauses.append("created_at >= ?")
        params.append(to_db(since))
    if endpoint is not None:
        clauses.append("endpoint = ?")
        params.append(endpoint)
    return (f"WHERE {' AND '.join(clauses)}" if clauses else ""), params
