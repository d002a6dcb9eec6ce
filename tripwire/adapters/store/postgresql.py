"""PostgreSQL issue store adapter.

Implements IssueStorePort using PostgreSQL with asyncpg for async access.
Provides ACID guarantees for group state with scalability for multi-process
production use. The connection pool and schema are shared with the
PostgreSQL trace store.
"""

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import asyncpg

from tripwire.core.dialects import Dialect, date_trunc_sql, parse_bucket, prefix_tsquery
from tripwire.core.models import (
    Actor,
    ContextEntry,
    GroupDraft,
    Granularity,
    IssueGroup,
    IssueStatus,
    Occurrence,
    RequestSnapshot,
    StoreError,
    StoreStats,
    TimeBucket,
)
from tripwire.core.ports import IssueStorePort

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS issue_groups (
        id TEXT PRIMARY KEY,
        fingerprint TEXT NOT NULL UNIQUE,
        exception_class TEXT NOT NULL,
        sanitized_message TEXT NOT NULL DEFAULT '',
        file_path TEXT,
        line_number INTEGER,
        method_name TEXT,
        occurrences_count INTEGER NOT NULL DEFAULT 0,
        first_seen_at TIMESTAMPTZ NOT NULL,
        last_seen_at TIMESTAMPTZ NOT NULL,
        status TEXT NOT NULL DEFAULT 'unresolved',
        resolved_at TIMESTAMPTZ,
        last_notified_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_issue_groups_status ON issue_groups(status)",
    "CREATE INDEX IF NOT EXISTS idx_issue_groups_last_seen ON issue_groups(last_seen_at DESC)",
    """
    CREATE INDEX IF NOT EXISTS idx_issue_groups_search ON issue_groups USING gin (
        to_tsvector('simple', coalesce(exception_class, '') || ' ' ||
            coalesce(sanitized_message, '') || ' ' || coalesce(file_path, ''))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS occurrences (
        id TEXT PRIMARY KEY,
        group_id TEXT NOT NULL REFERENCES issue_groups(id) ON DELETE CASCADE,
        exception_class TEXT NOT NULL,
        message TEXT,
        backtrace JSONB NOT NULL DEFAULT '[]'::jsonb,
        local_variables JSONB,
        request_method TEXT,
        request_url TEXT,
        request_params JSONB,
        request_headers JSONB,
        user_agent TEXT,
        ip_address TEXT,
        session_id TEXT,
        user_id TEXT,
        user_type TEXT,
        environment TEXT,
        hostname TEXT,
        process_id TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_occurrences_group ON occurrences(group_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_occurrences_created ON occurrences(created_at)",
    """
    CREATE TABLE IF NOT EXISTS context_entries (
        id BIGSERIAL PRIMARY KEY,
        occurrence_id TEXT NOT NULL REFERENCES occurrences(id) ON DELETE CASCADE,
        key TEXT NOT NULL,
        value TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_context_entries_occurrence ON context_entries(occurrence_id)",
    """
    CREATE TABLE IF NOT EXISTS request_traces (
        id TEXT PRIMARY KEY,
        endpoint TEXT NOT NULL,
        http_method TEXT NOT NULL,
        path TEXT,
        status INTEGER,
        duration_ms DOUBLE PRECISION NOT NULL,
        db_runtime_ms DOUBLE PRECISION,
        view_runtime_ms DOUBLE PRECISION,
        db_query_count INTEGER NOT NULL DEFAULT 0,
        spans JSONB,
        has_profile BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_request_traces_created ON request_traces(created_at)",
    """
    CREATE INDEX IF NOT EXISTS idx_request_traces_endpoint
    ON request_traces(endpoint, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS request_profiles (
        id TEXT PRIMARY KEY,
        request_trace_id TEXT NOT NULL UNIQUE
            REFERENCES request_traces(id) ON DELETE CASCADE,
        profile_data TEXT NOT NULL,
        mode TEXT NOT NULL DEFAULT 'cpu',
        samples INTEGER NOT NULL DEFAULT 0,
        interval_ms DOUBLE PRECISION,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
)

SEARCH_DOCUMENT = (
    "to_tsvector('simple', coalesce(exception_class, '') || ' ' || "
    "coalesce(sanitized_message, '') || ' ' || coalesce(file_path, ''))"
)


class PostgreSQLDatabase:
    """asyncpg pool and schema owner."""

    def __init__(self, dsn: str, pool_size: int = 10):
        """Initialize PostgreSQL access with connection pooling.

        Args:
            dsn: Connection URL, e.g. ``postgresql://user:pw@host:5432/db``.
            pool_size: Maximum number of pooled connections.
        """
        self.dsn = dsn
        self._pool: asyncpg.Pool | None = None
        self._pool_size = pool_size
        self._pool_lock = asyncio.Lock()
        self._schema_lock = asyncio.Lock()
        self._schema_initialized = False

    async def _init_pool(self) -> asyncpg.Pool:
        """Initialize the connection pool on first use."""
        if self._pool is not None:
            return self._pool
        async with self._pool_lock:
            if self._pool is None:
                self._pool = await asyncpg.create_pool(
                    dsn=self.dsn,
                    min_size=1,
                    max_size=self._pool_size,
                    server_settings={"timezone": "UTC"},
                )
        return self._pool

    async def close_pool(self) -> None:
        """Close all pooled connections."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def init_schema(self) -> None:
        """Create tables on first use. Subsequent calls are no-ops."""
        if self._schema_initialized:
            return
        async with self._schema_lock:
            if self._schema_initialized:
                return
            pool = await self._init_pool()
            async with pool.acquire() as conn:
                for statement in SCHEMA_STATEMENTS:
                    await conn.execute(statement)
            self._schema_initialized = True

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[asyncpg.Connection]:
        await self.init_schema()
        pool = await self._init_pool()
        async with pool.acquire() as conn:
            yield conn


class PostgreSQLIssueStore(IssueStorePort):
    """PostgreSQL-backed issue store."""

    def __init__(self, database: PostgreSQLDatabase):
        self.database = database

    async def close(self) -> None:
        await self.database.close_pool()

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def find_or_create_group(self, draft: GroupDraft, now: datetime) -> IssueGroup:
        """Look up the group for a fingerprint, inserting it if missing."""
        async with self.database.connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM issue_groups WHERE fingerprint = $1", draft.fingerprint
            )
            if row is None:
                try:
                    row = await conn.fetchrow(
                        """
                        INSERT INTO issue_groups
                        (id, fingerprint, exception_class, sanitized_message, file_path,
                         line_number, method_name, occurrences_count, first_seen_at,
                         last_seen_at, status)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, 0, $8, $8, $9)
                        RETURNING *
                        """,
                        str(uuid.uuid4()),
                        draft.fingerprint,
                        draft.exception_class,
                        draft.sanitized_message,
                        draft.location.file_path,
                        draft.location.line_number,
                        draft.location.method_name,
                        now,
                        IssueStatus.UNRESOLVED.value,
                    )
                    return self._row_to_group(row)
                except asyncpg.UniqueViolationError as e:
                    logger.debug(
                        f"Fingerprint insert race for {draft.fingerprint}: {e}",
                        extra={"fingerprint": draft.fingerprint},
                    )
                row = await conn.fetchrow(
                    "SELECT * FROM issue_groups WHERE fingerprint = $1", draft.fingerprint
                )
                if row is None:
                    raise StoreError(
                        f"Issue group for fingerprint {draft.fingerprint} vanished after "
                        "unique constraint violation"
                    )

            group_id = row["id"]
            reopened_row = await conn.fetchrow(
                """
                UPDATE issue_groups
                SET status = $2, resolved_at = NULL, last_seen_at = $3
                WHERE id = $1 AND status = $4
                RETURNING *
                """,
                group_id,
                IssueStatus.UNRESOLVED.value,
                now,
                IssueStatus.RESOLVED.value,
            )
            if reopened_row is not None:
                group = self._row_to_group(reopened_row)
                group.reopened = True
                logger.info(
                    f"Issue group {group_id} reopened",
                    extra={"group_id": group_id, "fingerprint": draft.fingerprint},
                )
                return group

            row = await conn.fetchrow(
                "UPDATE issue_groups SET last_seen_at = $2 WHERE id = $1 RETURNING *",
                group_id,
                now,
            )
            if row is None:
                raise StoreError(f"Issue group {group_id} disappeared during update")
            return self._row_to_group(row)

    async def get_group(self, group_id: str) -> IssueGroup | None:
        async with self.database.connection() as conn:
            row = await conn.fetchrow("SELECT * FROM issue_groups WHERE id = $1", group_id)
        return self._row_to_group(row) if row is not None else None

    async def get_group_by_fingerprint(self, fingerprint: str) -> IssueGroup | None:
        async with self.database.connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM issue_groups WHERE fingerprint = $1", fingerprint
            )
        return self._row_to_group(row) if row is not None else None

    async def list_groups(
        self,
        status: IssueStatus | None = None,
        order: str = "recent",
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[IssueGroup], int]:
        where, params = ("WHERE status = $1", [status.value]) if status else ("", [])
        order_by = (
            "occurrences_count DESC, last_seen_at DESC"
            if order == "frequent"
            else "last_seen_at DESC"
        )
        n = len(params)
        async with self.database.connection() as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM issue_groups {where}", *params)
            rows = await conn.fetch(
                f"""
                SELECT * FROM issue_groups {where}
                ORDER BY {order_by}
                LIMIT ${n + 1} OFFSET ${n + 2}
                """,
                *params,
                limit,
                offset,
            )
        return [self._row_to_group(row) for row in rows], total

    async def set_status(
        self, group_id: str, status: IssueStatus, resolved_at: datetime | None
    ) -> bool:
        async with self.database.connection() as conn:
            result = await conn.execute(
                "UPDATE issue_groups SET status = $2, resolved_at = $3 WHERE id = $1",
                group_id,
                status.value,
                resolved_at,
            )
        return _affected(result) == 1

    async def mark_notified(self, group_id: str, at: datetime) -> None:
        async with self.database.connection() as conn:
            await conn.execute(
                "UPDATE issue_groups SET last_notified_at = $2 WHERE id = $1", group_id, at
            )

    async def search_groups(self, query: str, limit: int = 50) -> list[IssueGroup]:
        """Prefix full-text search over class, message and file path."""
        tsquery = prefix_tsquery(query)
        async with self.database.connection() as conn:
            if not tsquery:
                rows = await conn.fetch(
                    "SELECT * FROM issue_groups ORDER BY last_seen_at DESC LIMIT $1", limit
                )
            else:
                rows = await conn.fetch(
                    f"""
                    SELECT * FROM issue_groups
                    WHERE {SEARCH_DOCUMENT} @@ to_tsquery('simple', $1)
                    ORDER BY last_seen_at DESC
                    LIMIT $2
                    """,
                    tsquery,
                    limit,
                )
        return [self._row_to_group(row) for row in rows]

    async def occurrence_counts(
        self,
        group_id: str | None,
        since: datetime | None,
        until: datetime | None,
        granularity: Granularity,
    ) -> list[TimeBucket]:
        bucket = date_trunc_sql(Dialect.POSTGRES, granularity)
        clauses: list[str] = []
        params: list[Any] = []
        for clause, value in (
            ("group_id = ${}", group_id),
            ("created_at >= ${}", since),
            ("created_at <= ${}", until),
        ):
            if value is not None:
                params.append(value)
                clauses.append(clause.format(len(params)))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        async with self.database.connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {bucket} AS bucket, COUNT(*) AS count
                FROM occurrences {where}
                GROUP BY 1
                ORDER BY 1
                """,
                *params,
            )
        return [TimeBucket(bucket=parse_bucket(row["bucket"]), count=row["count"]) for row in rows]

    async def delete_group(self, group_id: str) -> bool:
        async with self.database.connection() as conn:
            result = await conn.execute("DELETE FROM issue_groups WHERE id = $1", group_id)
        return _affected(result) == 1

    # ------------------------------------------------------------------
    # Occurrences
    # ------------------------------------------------------------------

    async def record_occurrence(self, occurrence: Occurrence) -> Occurrence:
        """Insert an occurrence with its context and bump the group counter."""
        try:
            return await self._insert_occurrence(occurrence)
        except asyncpg.ForeignKeyViolationError as e:
            raise StoreError(f"Issue group {occurrence.group_id} not found: {e}") from e

    async def _insert_occurrence(self, occurrence: Occurrence) -> Occurrence:
        request = occurrence.request
        actor = occurrence.actor
        async with self.database.connection() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO occurrences
                    (id, group_id, exception_class, message, backtrace, local_variables,
                     request_method, request_url, request_params, request_headers,
                     user_agent, ip_address, session_id, user_id, user_type,
                     environment, hostname, process_id, created_at)
                    VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7, $8, $9::jsonb,
                            $10::jsonb, $11, $12, $13, $14, $15, $16, $17, $18, $19)
                    """,
                    occurrence.id,
                    occurrence.group_id,
                    occurrence.exception_class,
                    occurrence.message,
                    json.dumps(list(occurrence.backtrace)),
                    _dump_json(occurrence.local_variables),
                    request.method if request else None,
                    request.url if request else None,
                    _dump_json(request.params) if request else None,
                    _dump_json(request.headers) if request else None,
                    request.user_agent if request else None,
                    request.ip_address if request else None,
                    request.session_id if request else None,
                    actor.id if actor else None,
                    actor.type if actor else None,
                    occurrence.environment,
                    occurrence.hostname,
                    occurrence.process_id,
                    occurrence.created_at,
                )
                if occurrence.context:
                    await conn.executemany(
                        "INSERT INTO context_entries (occurrence_id, key, value) "
                        "VALUES ($1, $2, $3)",
                        [(occurrence.id, entry.key, entry.value) for entry in occurrence.context],
                    )
                result = await conn.execute(
                    "UPDATE issue_groups SET occurrences_count = occurrences_count + 1 "
                    "WHERE id = $1",
                    occurrence.group_id,
                )
                if _affected(result) != 1:
                    raise StoreError(f"Issue group {occurrence.group_id} not found")
        return occurrence

    async def get_occurrence(self, occurrence_id: str) -> Occurrence | None:
        async with self.database.connection() as conn:
            rows = await conn.fetch("SELECT * FROM occurrences WHERE id = $1", occurrence_id)
            occurrences = await self._with_context(conn, rows)
        return occurrences[0] if occurrences else None

    async def recent_occurrences(self, group_id: str, limit: int = 10) -> list[Occurrence]:
        async with self.database.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM occurrences WHERE group_id = $1
                ORDER BY created_at DESC LIMIT $2
                """,
                group_id,
                limit,
            )
            return await self._with_context(conn, rows)

    async def latest_occurrence(self, group_id: str) -> Occurrence | None:
        occurrences = await self.recent_occurrences(group_id, limit=1)
        return occurrences[0] if occurrences else None

    async def cleanup_occurrences(self, before: datetime) -> int:
        async with self.database.connection() as conn:
            result = await conn.execute("DELETE FROM occurrences WHERE created_at < $1", before)
        return _affected(result)

    async def _with_context(
        self, conn: asyncpg.Connection, rows: Sequence[asyncpg.Record]
    ) -> list[Occurrence]:
        if not rows:
            return []
        entries = await conn.fetch(
            """
            SELECT occurrence_id, key, value FROM context_entries
            WHERE occurrence_id = ANY($1::text[])
            ORDER BY id
            """,
            [row["id"] for row in rows],
        )
        context: dict[str, list[ContextEntry]] = {}
        for entry in entries:
            context.setdefault(entry["occurrence_id"], []).append(
                ContextEntry(key=entry["key"], value=entry["value"] or "")
            )
        return [self._row_to_occurrence(row, context.get(row["id"], [])) for row in rows]

    # ------------------------------------------------------------------
    # Health and stats
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        try:
            async with self.database.connection() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except (asyncpg.PostgresError, OSError) as e:
            logger.warning(f"Issue store unavailable: {e}")
            return False

    async def stats(self) -> StoreStats:
        async with self.database.connection() as conn:
            total = await conn.fetchval("SELECT COUNT(*) FROM issue_groups")
            rows = await conn.fetch("SELECT status, COUNT(*) FROM issue_groups GROUP BY status")
            total_occurrences = await conn.fetchval("SELECT COUNT(*) FROM occurrences")
        return StoreStats(
            total_groups=total,
            by_status={row[0]: row[1] for row in rows},
            total_occurrences=total_occurrences,
        )

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _row_to_group(self, row: asyncpg.Record) -> IssueGroup:
        """Convert a database row to an IssueGroup.

        Raises:
            ValueError: If row contains invalid data.
        """
        try:
            return IssueGroup(
                id=row["id"],
                fingerprint=row["fingerprint"],
                exception_class=row["exception_class"],
                sanitized_message=row["sanitized_message"],
                file_path=row["file_path"],
                line_number=row["line_number"],
                method_name=row["method_name"],
                occurrences_count=row["occurrences_count"],
                first_seen_at=row["first_seen_at"],
                last_seen_at=row["last_seen_at"],
                status=IssueStatus(row["status"]),
                resolved_at=row["resolved_at"],
                last_notified_at=row["last_notified_at"],
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Failed to parse issue group row: {e}")
            raise ValueError(f"Row parsing failed: {e}") from e

    def _row_to_occurrence(self, row: asyncpg.Record, context: list[ContextEntry]) -> Occurrence:
        """Convert a database row to an Occurrence.

        Raises:
            ValueError: If row contains invalid data.
        """
        try:
            request = None
            if row["request_method"] or row["request_url"]:
                request = RequestSnapshot(
                    method=row["request_method"],
                    url=row["request_url"],
                    params=_load_json(row["request_params"]) or {},
                    headers=_load_json(row["request_headers"]) or {},
                    user_agent=row["user_agent"],
                    ip_address=row["ip_address"],
                    session_id=row["session_id"],
                )
            actor = Actor(id=row["user_id"], type=row["user_type"]) if row["user_id"] else None
            return Occurrence(
                id=row["id"],
                group_id=row["group_id"],
                exception_class=row["exception_class"],
                message=row["message"] or "",
                backtrace=tuple(_load_json(row["backtrace"]) or ()),
                created_at=row["created_at"],
                environment=row["environment"] or "",
                hostname=row["hostname"] or "",
                process_id=row["process_id"] or "",
                local_variables=_load_json(row["local_variables"]),
                request=request,
                actor=actor,
                context=tuple(context),
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Failed to parse occurrence row: {e}")
            raise ValueError(f"Row parsing failed: {e}") from e


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``'UPDATE 1'``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


def _dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(dict(value) if hasattr(value, "keys") else value, default=str)


def _load_json(value: Any) -> Any:
    if value is None or not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        logger.warning(f"Discarding unparseable JSON column: {e}")
        return None
