"""Tests for the HTTP and SQL span instrumentation."""

import aiosqlite
import httpx
import pytest

from tripwire.adapters.instrumentation import HttpInstrumenter, SqlInstrumenter
from tripwire.adapters.instrumentation.sql import describe_query, is_tracked
from tripwire.core.spans import SpanCollector


@pytest.fixture
def collector() -> SpanCollector:
    return SpanCollector()


def mock_transport(status_code: int = 200) -> httpx.MockTransport:
    return httpx.MockTransport(lambda request: httpx.Response(status_code, text="ok"))


class FakePgConnection:
    """Stands in for an asyncpg connection: coroutine methods taking *args."""

    def __init__(self):
        self.calls: list[tuple[str, tuple]] = []
        self.is_closed = False

    async def fetch(self, query, *args):
        self.calls.append((query, args))
        return [{"id": 1}]

    async def fetchval(self, query, *args):
        self.calls.append((query, args))
        return 1

    async def execute(self, query, *args):
        self.calls.append((query, args))
        if "broken" in query:
            raise RuntimeError("relation does not exist")
        return "INSERT 0 1"


class TestHttpInstrumenter:
    async def test_request_recorded_as_span(self, collector):
        client = HttpInstrumenter(collector).client(transport=mock_transport(201))

        with collector.request_scope():
            response = await client.post("https://payments.example.com/v1/charges?amount=5")
            spans = collector.collect_spans()

        await client.aclose()
        assert response.status_code == 201
        [span] = spans
        assert span.type == "http"
        assert span.description == "POST https://payments.example.com/v1/charges"
        assert dict(span.metadata) == {
            "method": "POST",
            "host": "payments.example.com",
            "port": None,
            "path": "/v1/charges",
            "status": 201,
        }

    async def test_no_span_outside_a_request(self, collector):
        client = HttpInstrumenter(collector).client(transport=mock_transport())
        response = await client.get("https://payments.example.com/health")
        await client.aclose()

        assert response.status_code == 200
        assert collector.collect_spans() == ()

    async def test_transport_error_still_recorded(self, collector):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = HttpInstrumenter(collector).client(transport=httpx.MockTransport(refuse))

        with collector.request_scope():
            with pytest.raises(httpx.ConnectError):
                await client.get("https://payments.example.com/v1/charges")
            spans = collector.collect_spans()

        await client.aclose()
        assert spans[0].metadata["status"] is None

    async def test_long_urls_are_cut(self, collector):
        client = HttpInstrumenter(collector).client(transport=mock_transport())

        with collector.request_scope():
            await client.get("https://payments.example.com/" + "a" * 300)
            [span] = collector.collect_spans()

        await client.aclose()
        assert len(span.description) == 200
        assert span.description.endswith("...")


class TestSqlHelpers:
    def test_describe_collapses_whitespace(self):
        assert describe_query("SELECT *\n   FROM orders\n WHERE id = ?") == (
            "SELECT * FROM orders WHERE id = ?"
        )

    def test_describe_cuts_long_statements(self):
        assert describe_query("SELECT " + "x" * 300).endswith("...")

    @pytest.mark.parametrize(
        "sql, expected",
        [
            ("SELECT 1", True),
            ("  begin immediate", False),
            ("COMMIT", False),
            ("PRAGMA journal_mode=WAL", False),
            ("   ", False),
        ],
    )
    def test_tracked_statements(self, sql, expected):
        assert is_tracked(sql) is expected


class TestSqliteConnection:
    async def test_queries_recorded_and_counted(self, collector, tmp_path):
        db = await aiosqlite.connect(tmp_path / "host.db")
        conn = SqlInstrumenter(collector).wrap(db)
        try:
            await conn.execute("CREATE TABLE orders (id INTEGER, total REAL)")

            with collector.request_scope():
                await conn.execute("INSERT INTO orders VALUES (?, ?)", (1, 9.5))
                rows = await conn.execute_fetchall("SELECT id FROM orders")
                await conn.commit()
                assert collector.query_count == 2
                spans = collector.collect_spans()
        finally:
            await db.close()

        assert [tuple(r) for r in rows] == [(1,)]
        assert [s.description for s in spans] == [
            "INSERT INTO orders VALUES (?, ?)",
            "SELECT id FROM orders",
        ]
        assert spans[0].metadata["binds"] == 2
        assert spans[0].metadata["backend"] == "sqlite"
        assert spans[1].metadata["method"] == "execute_fetchall"

    async def test_other_attributes_pass_through(self, collector, tmp_path):
        db = await aiosqlite.connect(tmp_path / "host.db")
        conn = SqlInstrumenter(collector).wrap(db)
        try:
            assert conn.wrapped is db
            assert conn.total_changes == 0
        finally:
            await db.close()


class TestPostgresConnection:
    async def test_asyncpg_style_calls(self, collector):
        fake = FakePgConnection()
        conn = SqlInstrumenter(collector).wrap(fake, backend="postgresql")

        with collector.request_scope():
            await conn.execute("BEGIN")
            assert await conn.fetchval("SELECT count(*) FROM orders WHERE id = $1", 7) == 1
            await conn.fetch("SELECT * FROM orders")
            spans = collector.collect_spans()

        assert len(fake.calls) == 3
        assert [s.metadata["method"] for s in spans] == ["fetchval", "fetch"]
        assert spans[0].metadata == {"backend": "postgresql", "method": "fetchval", "binds": 1}
        assert not conn.is_closed

    async def test_failed_query_recorded_and_raised(self, collector):
        conn = SqlInstrumenter(collector).wrap(FakePgConnection(), backend="postgresql")

        with collector.request_scope():
            with pytest.raises(RuntimeError):
                await conn.execute("INSERT INTO broken VALUES ($1)", 1)
            assert collector.query_count == 1
            [span] = collector.collect_spans()

        assert span.type == "sql"
