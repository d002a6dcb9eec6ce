"""SQL spans for aiosqlite and asyncpg connections.

``InstrumentedConnection`` forwards everything to the wrapped connection and
times the query methods both drivers expose. Transaction control and PRAGMA
statements are passed through without a span.
"""

import inspect
import re
import time
from typing import Any

from tripwire.core.spans import SpanCollector

# aiosqlite: execute, executemany, execute_fetchall, execute_insert
# asyncpg: execute, executemany, fetch, fetchrow, fetchval
QUERY_METHODS = frozenset(
    {
        "execute",
        "executemany",
        "execute_fetchall",
        "execute_insert",
        "fetch",
        "fetchrow",
        "fetchval",
    }
)
MAX_DESCRIPTION_LENGTH = 200

_UNTRACKED = re.compile(
    r"^\s*(BEGIN|COMMIT|END|ROLLBACK|SAVEPOINT|RELEASE|PRAGMA)\b", re.IGNORECASE
)
_WHITESPACE = re.compile(r"\s+")


def describe_query(sql: str) -> str:
    """Collapse whitespace and cut the statement for display."""
    description = _WHITESPACE.sub(" ", sql).strip()
    if len(description) > MAX_DESCRIPTION_LENGTH:
        return description[:MAX_DESCRIPTION_LENGTH] + "..."
    return description


def is_tracked(sql: str) -> bool:
    return bool(sql.strip()) and not _UNTRACKED.match(sql)


def _bind_count(args: tuple[Any, ...]) -> int:
    # aiosqlite takes one parameters sequence/mapping, asyncpg takes *args
    if len(args) == 1 and isinstance(args[0], (list, tuple, dict)):
        return len(args[0])
    return len(args)


class InstrumentedConnection:
    """Proxy around a driver connection that records each query."""

    def __init__(self, connection: Any, collector: SpanCollector, backend: str):
        self._connection = connection
        self._collector = collector
        self._backend = backend

    @property
    def wrapped(self) -> Any:
        return self._connection

    def __getattr__(self, name: str) -> Any:
        attr = getattr(self._connection, name)
        if name in QUERY_METHODS and callable(attr):
            return self._timed(name, attr)
        return attr

    def _timed(self, name: str, method: Any) -> Any:
        async def call(sql: str, *args: Any, **kwargs: Any) -> Any:
            if not self._collector.active() or not is_tracked(sql):
                return await _resolve(method(sql, *args, **kwargs))

            started = time.monotonic()
            try:
                return await _resolve(method(sql, *args, **kwargs))
            finally:
                duration_ms = (time.monotonic() - started) * 1000.0
                metadata: dict[str, Any] = {"backend": self._backend, "method": name}
                if name == "executemany":
                    metadata["many"] = True
                else:
                    metadata["binds"] = _bind_count(args)
                self._collector.record_query()
                self._collector.record_span("sql", describe_query(sql), duration_ms, metadata)

        return call


async def _resolve(result: Any) -> Any:
    # aiosqlite returns an awaitable proxy rather than a coroutine
    if inspect.isawaitable(result):
        return await result
    return result


class SqlInstrumenter:
    """Wraps host database connections so their queries show up in traces."""

    def __init__(self, collector: SpanCollector):
        self.collector = collector

    def wrap(self, connection: Any, backend: str = "sqlite") -> InstrumentedConnection:
        """Wrap an aiosqlite or asyncpg connection.

        Args:
            connection: Open driver connection (or asyncpg pool).
            backend: Label stored in span metadata, e.g. "sqlite" or "postgresql".
        """
        return InstrumentedConnection(connection, self.collector, backend)
