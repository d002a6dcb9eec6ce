"""Integration tests for the PostgreSQL stores.

These tests require a PostgreSQL instance and are skipped unless
TRIPWIRE_TEST_DATABASE_URL points at a disposable database.
"""

import asyncio
import os
import uuid
from datetime import timedelta

import pytest

from tripwire.core.models import (
    GroupDraft,
    IssueStatus,
    ProfileBlob,
    RequestTrace,
    SourceLocation,
    utcnow,
)
from tripwire.tests.builders import make_occurrence

DATABASE_URL = os.environ.get("TRIPWIRE_TEST_DATABASE_URL")

pytestmark = pytest.mark.skipif(
    not DATABASE_URL, reason="TRIPWIRE_TEST_DATABASE_URL is not set"
)


@pytest.fixture
async def database():
    from tripwire.adapters.store.postgresql import PostgreSQLDatabase

    db = PostgreSQLDatabase(DATABASE_URL, pool_size=5)
    async with db.connection() as conn:
        await conn.execute(
            "TRUNCATE request_profiles, request_traces, context_entries, "
            "occurrences, issue_groups CASCADE"
        )
    yield db
    await db.close_pool()


@pytest.fixture
def store(database):
    from tripwire.adapters.store.postgresql import PostgreSQLIssueStore

    return PostgreSQLIssueStore(database)


@pytest.fixture
def traces(database):
    from tripwire.adapters.store.postgresql_traces import PostgreSQLTraceStore

    return PostgreSQLTraceStore(database)


def draft() -> GroupDraft:
    return GroupDraft(
        uuid.uuid4().hex * 2, "KeyError", "missing key", SourceLocation("app/a.py", 3, "run")
    )


async def test_concurrent_first_occurrences_share_one_group(store):
    shared = draft()
    now = utcnow()

    async def track_once():
        group = await store.find_or_create_group(shared, now)
        await store.record_occurrence(make_occurrence(group, created_at=now))
        return group.id

    ids = await asyncio.gather(*(track_once() for _ in range(50)))

    assert len(set(ids)) == 1
    assert (await store.get_group(ids[0])).occurrences_count == 50


async def test_resolved_group_reopens(store):
    shared = draft()
    group = await store.find_or_create_group(shared, utcnow())
    await store.set_status(group.id, IssueStatus.RESOLVED, utcnow())

    reopened = await store.find_or_create_group(shared, utcnow())

    assert reopened.reopened
    assert reopened.status == IssueStatus.UNRESOLVED


async def test_prefix_search(store):
    group = await store.find_or_create_group(draft(), utcnow())
    results = await store.search_groups("miss")
    assert [g.id for g in results] == [group.id]


async def test_trace_percentiles(traces):
    now = utcnow()
    for i in range(1, 21):
        await traces.save_trace(
            RequestTrace(
                id=str(uuid.uuid4()),
                endpoint="OrdersController#index",
                http_method="GET",
                path="/orders",
                status=200,
                duration_ms=float(i * 10),
                db_runtime_ms=None,
                view_runtime_ms=None,
                db_query_count=0,
                created_at=now - timedelta(seconds=i),
            )
        )

    [stats] = await traces.slowest_endpoints(now - timedelta(hours=1))

    assert stats.request_count == 20
    assert stats.p50_duration == 105.0
    assert stats.p95_duration == 190.5


async def test_profile_round_trip(traces):
    trace = RequestTrace(
        id=str(uuid.uuid4()),
        endpoint="OrdersController#show",
        http_method="GET",
        path="/orders/1",
        status=200,
        duration_ms=12.0,
        db_runtime_ms=None,
        view_runtime_ms=None,
        db_query_count=0,
        created_at=utcnow(),
        has_profile=True,
    )
    await traces.save_trace(trace, ProfileBlob(b"stack-samples"))
    assert (await traces.get_profile(trace.id)).decode() == b"stack-samples"
