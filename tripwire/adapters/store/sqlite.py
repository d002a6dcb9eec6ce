"""SQLite issue store adapter.

Implements IssueStorePort using SQLite with aiosqlite for async access.
Provides ACID guarantees for group and occurrence state with zero
operational overhead. The connection pool and schema are shared with the
SQLite trace store.
"""

import asyncio
import json
import logging
import sqlite3
import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from tripwire.core.dialects import Dialect, date_trunc_sql, like_pattern, parse_bucket
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

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

SCHEMA = """
CREATE TABLE IF NOT EXISTS issue_groups (
    id TEXT PRIMARY KEY,
    fingerprint TEXT NOT NULL UNIQUE,
    exception_class TEXT NOT NULL,
    sanitized_message TEXT NOT NULL DEFAULT '',
    file_path TEXT,
    line_number INTEGER,
    method_name TEXT,
    occurrences_count INTEGER NOT NULL DEFAULT 0,
    first_seen_at TEXT NOT NULL,
    last_seen_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'unresolved',
    resolved_at TEXT,
    last_notified_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_issue_groups_status ON issue_groups(status);
CREATE INDEX IF NOT EXISTS idx_issue_groups_last_seen ON issue_groups(last_seen_at);

CREATE TABLE IF NOT EXISTS occurrences (
    id TEXT PRIMARY KEY,
    group_id TEXT NOT NULL REFERENCES issue_groups(id) ON DELETE CASCADE,
    exception_class TEXT NOT NULL,
    message TEXT,
    backtrace TEXT NOT NULL DEFAULT '[]',
    local_variables TEXT,
    request_method TEXT,
    request_url TEXT,
    request_params TEXT,
    request_headers TEXT,
    user_agent TEXT,
    ip_address TEXT,
    session_id TEXT,
    user_id TEXT,
    user_type TEXT,
    environment TEXT,
    hostname TEXT,
    process_id TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_occurrences_group ON occurrences(group_id, created_at);
CREATE INDEX IF NOT EXISTS idx_occurrences_created ON occurrences(created_at);

CREATE TABLE IF NOT EXISTS context_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    occurrence_id TEXT NOT NULL REFERENCES occurrences(id) ON DELETE CASCADE,
    key TEXT NOT NULL,
    value TEXT
);
CREATE INDEX IF NOT EXISTS idx_context_entries_occurrence ON context_entries(occurrence_id);

CREATE TABLE IF NOT EXISTS request_traces (
    id TEXT PRIMARY KEY,
    endpoint TEXT NOT NULL,
    http_method TEXT NOT NULL,
    path TEXT,
    status INTEGER,
    duration_ms REAL NOT NULL,
    db_runtime_ms REAL,
    view_runtime_ms REAL,
    db_query_count INTEGER NOT NULL DEFAULT 0,
    spans TEXT,
    has_profile INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_request_traces_created ON request_traces(created_at);
CREATE INDEX IF NOT EXISTS idx_request_traces_endpoint ON request_traces(endpoint, created_at);

CREATE TABLE IF NOT EXISTS request_profiles (
    id TEXT PRIMARY KEY,
    request_trace_id TEXT NOT NULL UNIQUE REFERENCES request_traces(id) ON DELETE CASCADE,
    profile_data TEXT NOT NULL,
    mode TEXT NOT NULL DEFAULT 'cpu',
    samples INTEGER NOT NULL DEFAULT 0,
    interval_ms REAL,
    created_at TEXT NOT NULL
);
"""


def to_db(value: datetime | None) -> str | None:
    """Store timestamps as sortable UTC text."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(TIMESTAMP_FORMAT)


def from_db(value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        parsed = datetime.strptime(value, TIMESTAMP_FORMAT)
    except ValueError:
        parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SQLiteDatabase:
    """Connection pool and schema owner for one SQLite file.

    Connections run in autocommit mode; multi-statement writes open an
    explicit ``BEGIN IMMEDIATE`` transaction through ``transaction()``.
    """

    def __init__(self, db_path: str, pool_size: int = 5, timeout: float = 30.0):
        """Initialize the database with connection pooling.

        Args:
            db_path: Path to SQLite database file.
            pool_size: Number of idle connections to keep in the pool.
            timeout: Seconds to wait for a write lock before failing.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._pool: list[aiosqlite.Connection] = []
        self._pool_lock = asyncio.Lock()
        self._schema_lock = asyncio.Lock()
        self._pool_size = pool_size
        self._timeout = timeout
        self._schema_initialized = False

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get a connection from the pool or create a new one."""
        async with self._pool_lock:
            if self._pool:
                return self._pool.pop()
        conn = await aiosqlite.connect(
            str(self.db_path), timeout=self._timeout, isolation_level=None
        )
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys = ON")
        return conn

    async def _return_connection(self, conn: aiosqlite.Connection) -> None:
        """Return a connection to the pool."""
        async with self._pool_lock:
            if len(self._pool) < self._pool_size:
                self._pool.append(conn)
                return
        await conn.close()

    async def close_pool(self) -> None:
        """Close all pooled connections."""
        async with self._pool_lock:
            for conn in self._pool:
                await conn.close()
            self._pool.clear()

    async def init_schema(self) -> None:
        """Create tables on first use. Subsequent calls are no-ops."""
        if self._schema_initialized:
            return
        async with self._schema_lock:
            if self._schema_initialized:
                return
            conn = await self._get_connection()
            try:
                await conn.execute("PRAGMA journal_mode = WAL")
                await conn.executescript(SCHEMA)
                self._schema_initialized = True
            finally:
                await self._return_connection(conn)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        await self.init_schema()
        conn = await self._get_connection()
        try:
            yield conn
        finally:
            await self._return_connection(conn)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run the enclosed statements as one write transaction."""
        async with self.connection() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()


class SQLiteIssueStore(IssueStorePort):
    """SQLite-backed issue store."""

    def __init__(self, database: SQLiteDatabase):
        self.database = database

    @classmethod
    def from_path(cls, db_path: str, pool_size: int = 5) -> "SQLiteIssueStore":
        return cls(SQLiteDatabase(db_path, pool_size=pool_size))

    async def close(self) -> None:
        await self.database.close_pool()

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def find_or_create_group(self, draft: GroupDraft, now: datetime) -> IssueGroup:
        """Look up the group for a fingerprint, inserting it if missing."""
        async with self.database.connection() as conn:
            group = await self._fetch_group(conn, "fingerprint", draft.fingerprint)
            if group is None:
                created = await self._insert_group(conn, draft, now)
                if created is not None:
                    return created
                # Another writer inserted the same fingerprint first.
                group = await self._fetch_group(conn, "fingerprint", draft.fingerprint)
                if group is None:
                    raise StoreError(
                        f"Issue group for fingerprint {draft.fingerprint} vanished after "
                        "unique constraint violation"
                    )
            return await self._touch_group(conn, group, now)

    async def _insert_group(
        self, conn: aiosqlite.Connection, draft: GroupDraft, now: datetime
    ) -> IssueGroup | None:
        group = IssueGroup(
            id=str(uuid.uuid4()),
            fingerprint=draft.fingerprint,
            exception_class=draft.exception_class,
            sanitized_message=draft.sanitized_message,
            file_path=draft.location.file_path,
            line_number=draft.location.line_number,
            method_name=draft.location.method_name,
            occurrences_count=0,
            first_seen_at=now,
            last_seen_at=now,
        )
        try:
            await conn.execute(
                """
                INSERT INTO issue_groups
                (id, fingerprint, exception_class, sanitized_message, file_path,
                 line_number, method_name, occurrences_count, first_seen_at,
                 last_seen_at, status)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
                """,
                (
                    group.id,
                    group.fingerprint,
                    group.exception_class,
                    group.sanitized_message,
                    group.file_path,
                    group.line_number,
                    group.method_name,
                    to_db(now),
                    to_db(now),
                    IssueStatus.UNRESOLVED.value,
                ),
            )
        except sqlite3.IntegrityError as e:
            logger.debug(
                f"Fingerprint insert race for {draft.fingerprint}: {e}",
                extra={"fingerprint": draft.fingerprint},
            )
            return None
        return group

    async def _touch_group(
        self, conn: aiosqlite.Connection, group: IssueGroup, now: datetime
    ) -> IssueGroup:
        """Refresh last_seen_at, reopening a resolved group atomically."""
        cursor = await conn.execute(
            """
            UPDATE issue_groups
            SET status = ?, resolved_at = NULL, last_seen_at = ?
            WHERE id = ? AND status = ?
            """,
            (IssueStatus.UNRESOLVED.value, to_db(now), group.id, IssueStatus.RESOLVED.value),
        )
        reopened = cursor.rowcount == 1
        if not reopened:
            await conn.execute(
                "UPDATE issue_groups SET last_seen_at = ? WHERE id = ?",
                (to_db(now), group.id),
            )

        fresh = await self._fetch_group(conn, "id", group.id)
        if fresh is None:
            raise StoreError(f"Issue group {group.id} disappeared during update")
        fresh.reopened = reopened
        if reopened:
            logger.info(
                f"Issue group {group.id} reopened",
                extra={"group_id": group.id, "fingerprint": group.fingerprint},
            )
        return fresh

    async def _fetch_group(
        self, conn: aiosqlite.Connection, column: str, value: str
    ) -> IssueGroup | None:
        cursor = await conn.execute(f"SELECT * FROM issue_groups WHERE {column} = ?", (value,))
        row = await cursor.fetchone()
        return self._row_to_group(row) if row is not None else None

    async def get_group(self, group_id: str) -> IssueGroup | None:
        async with self.database.connection() as conn:
            return await self._fetch_group(conn, "id", group_id)

    async def get_group_by_fingerprint(self, fingerprint: str) -> IssueGroup | None:
        async with self.database.connection() as conn:
            return await self._fetch_group(conn, "fingerprint", fingerprint)

    async def list_groups(
        self,
        status: IssueStatus | None = None,
        order: str = "recent",
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[IssueGroup], int]:
        where, params = ("WHERE status = ?", [status.value]) if status else ("", [])
        order_by = (
            "occurrences_count DESC, last_seen_at DESC"
            if order == "frequent"
            else "last_seen_at DESC"
        )
        async with self.database.connection() as conn:
            cursor = await conn.execute(f"SELECT COUNT(*) FROM issue_groups {where}", params)
            total = (await cursor.fetchone())[0]
            cursor = await conn.execute(
                f"SELECT * FROM issue_groups {where} ORDER BY {order_by} LIMIT ? OFFSET ?",
                [*params, limit, offset],
            )
            rows = await cursor.fetchall()
        return [self._row_to_group(row) for row in rows], total

    async def set_status(
        self, group_id: str, status: IssueStatus, resolved_at: datetime | None
    ) -> bool:
        async with self.database.connection() as conn:
            cursor = await conn.execute(
                "UPDATE issue_groups SET status = ?, resolved_at = ? WHERE id = ?",
                (status.value, to_db(resolved_at), group_id),
            )
            return cursor.rowcount == 1

    async def mark_notified(self, group_id: str, at: datetime) -> None:
        async with self.database.connection() as conn:
            await conn.execute(
                "UPDATE issue_groups SET last_notified_at = ? WHERE id = ?",
                (to_db(at), group_id),
            )

    async def search_groups(self, query: str, limit: int = 50) -> list[IssueGroup]:
        """Substring match on class, message and file path."""
        async with self.database.connection() as conn:
            if not query.strip():
                cursor = await conn.execute(
                    "SELECT * FROM issue_groups ORDER BY last_seen_at DESC LIMIT ?", (limit,)
                )
            else:
                pattern = like_pattern(query.strip())
                cursor = await conn.execute(
                    """
                    SELECT * FROM issue_groups
                    WHERE exception_class LIKE ? ESCAPE '\\'
                       OR sanitized_message LIKE ? ESCAPE '\\'
                       OR file_path LIKE ? ESCAPE '\\'
                    ORDER BY last_seen_at DESC
                    LIMIT ?
                    """,
                    (pattern, pattern, pattern, limit),
                )
            rows = await cursor.fetchall()
        return [self._row_to_group(row) for row in rows]

    async def occurrence_counts(
        self,
        group_id: str | None,
        since: datetime | None,
        until: datetime | None,
        granularity: Granularity,
    ) -> list[TimeBucket]:
        bucket = date_trunc_sql(Dialect.FALLBACK, granularity)
        clauses: list[str] = []
        params: list[Any] = []
        if group_id is not None:
            clauses.append("group_id = ?")
            params.append(group_id)
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(to_db(since))
        if until is not None:
            clauses.append("created_at <= ?")
            params.append(to_db(until))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        async with self.database.connection() as conn:
            cursor = await conn.execute(
                f"""
                SELECT {bucket} AS bucket, COUNT(*) AS count
                FROM occurrences {where}
                GROUP BY bucket
                ORDER BY bucket
                """,
                params,
            )
            rows = await cursor.fetchall()
        return [TimeBucket(bucket=parse_bucket(row["bucket"]), count=row["count"]) for row in rows]

    async def delete_group(self, group_id: str) -> bool:
        async with self.database.connection() as conn:
            cursor = await conn.execute("DELETE FROM issue_groups WHERE id = ?", (group_id,))
            return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Occurrences
    # ------------------------------------------------------------------

    async def record_occurrence(self, occurrence: Occurrence) -> Occurrence:
        """Insert an occurrence with its context and bump the group counter."""
        try:
            return await self._insert_occurrence(occurrence)
        except sqlite3.IntegrityError as e:
            raise StoreError(f"Issue group {occurrence.group_id} not found: {e}") from e

    async def _insert_occurrence(self, occurrence: Occurrence) -> Occurrence:
        request = occurrence.request
        actor = occurrence.actor
        async with self.database.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO occurrences
                (id, group_id, exception_class, message, backtrace, local_variables,
                 request_method, request_url, request_params, request_headers,
                 user_agent, ip_address, session_id, user_id, user_type,
                 environment, hostname, process_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
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
                    to_db(occurrence.created_at),
                ),
            )
            if occurrence.context:
                await conn.executemany(
                    "INSERT INTO context_entries (occurrence_id, key, value) VALUES (?, ?, ?)",
                    [(occurrence.id, entry.key, entry.value) for entry in occurrence.context],
                )
            cursor = await conn.execute(
                "UPDATE issue_groups SET occurrences_count = occurrences_count + 1 WHERE id = ?",
                (occurrence.group_id,),
            )
            if cursor.rowcount != 1:
                raise StoreError(f"Issue group {occurrence.group_id} not found")
        return occurrence

    async def get_occurrence(self, occurrence_id: str) -> Occurrence | None:
        async with self.database.connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM occurrences WHERE id = ?", (occurrence_id,)
            )
            rows = await cursor.fetchall()
            occurrences = await self._with_context(conn, rows)
        return occurrences[0] if occurrences else None

    async def recent_occurrences(self, group_id: str, limit: int = 10) -> list[Occurrence]:
        async with self.database.connection() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM occurrences WHERE group_id = ?
                ORDER BY created_at DESC LIMIT ?
                """,
                (group_id, limit),
            )
            rows = await cursor.fetchall()
            return await self._with_context(conn, rows)

    async def latest_occurrence(self, group_id: str) -> Occurrence | None:
        occurrences = await self.recent_occurrences(group_id, limit=1)
        return occurrences[0] if occurrences else None

    async def cleanup_occurrences(self, before: datetime) -> int:
        async with self.database.connection() as conn:
            cursor = await conn.execute(
                "DELETE FROM occurrences WHERE created_at < ?", (to_db(before),)
            )
            return cursor.rowcount

    async def _with_context(
        self, conn: aiosqlite.Connection, rows: Sequence[aiosqlite.Row]
    ) -> list[Occurrence]:
        if not rows:
            return []
        ids = [row["id"] for row in rows]
        placeholders = ", ".join("?" for _ in ids)
        cursor = await conn.execute(
            f"""
            SELECT occurrence_id, key, value FROM context_entries
            WHERE occurrence_id IN ({placeholders})
            ORDER BY id
            """,
            ids,
        )
        context: dict[str, list[ContextEntry]] = {}
        for entry in await cursor.fetchall():
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
                await conn.execute("SELECT 1 FROM issue_groups LIMIT 1")
            return True
        except (sqlite3.Error, OSError) as e:
            logger.warning(f"Issue store unavailable: {e}")
            return False

    async def stats(self) -> StoreStats:
        async with self.database.connection() as conn:
            cursor = await conn.execute("SELECT COUNT(*) FROM issue_groups")
            total = (await cursor.fetchone())[0]
            cursor = await conn.execute(
                "SELECT status, COUNT(*) FROM issue_groups GROUP BY status"
            )
            by_status = {row[0]: row[1] for row in await cursor.fetchall()}
            cursor = await conn.execute("SELECT COUNT(*) FROM occurrences")
            total_occurrences = (await cursor.fetchone())[0]
        return StoreStats(
            total_groups=total, by_status=by_status, total_occurrences=total_occurrences
        )

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _row_to_group(self, row: aiosqlite.Row) -> IssueGroup:
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
                first_seen_at=from_db(row["first_seen_at"]),
                last_seen_at=from_db(row["last_seen_at"]),
                status=IssueStatus(row["status"]),
                resolved_at=from_db(row["resolved_at"]),
                last_notified_at=from_db(row["last_notified_at"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Failed to parse issue group row: {e}")
            raise ValueError(f"Row parsing failed: {e}") from e

    def _row_to_occurrence(self, row: aiosqlite.Row, context: list[ContextEntry]) -> Occurrence:
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
                created_at=from_db(row["created_at"]),
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


def _dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(dict(value) if hasattr(value, "keys") else value, default=str)


def _load_json(value: str | None) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        logger.warning(f"Discarding unparseable JSON column: {e}")
        return None
