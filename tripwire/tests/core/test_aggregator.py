"""Tests for APM sampling and trace recording."""

import random
from dataclasses import replace
from datetime import timedelta

import pytest

from tripwire.core.aggregator import ApmAggregator
from tripwire.core.models import ApmPolicy, Granularity, ProfileBlob, RequestSample, Span, utcnow
from tripwire.core.spans import SpanCollector
from tripwire.tests.fakes import FakeTraceStorePort


def sample(**overrides) -> RequestSample:
    values = {
        "endpoint": "OrdersController#show",
        "http_method": "GET",
        "path": "/orders/42?expand=items",
        "duration_ms": 123.456,
        "status": 200,
        "db_runtime_ms": 40.111,
        "db_query_count": 3,
    }
    values.update(overrides)
    return RequestSample(**values)


@pytest.fixture
def store() -> FakeTraceStorePort:
    return FakeTraceStorePort()


@pytest.fixture
def collector() -> SpanCollector:
    return SpanCollector()


@pytest.fixture
def aggregator(store, collector) -> ApmAggregator:
    return ApmAggregator(store, ApmPolicy(enabled=True), span_collector=collector)


class TestRecord:
    async def test_trace_is_stored_with_rounded_timings(self, aggregator, store):
        trace = await aggregator.record(sample())
        assert trace is not None
        assert trace.path == "/orders/42"
        assert trace.duration_ms == 123.46
        assert trace.db_runtime_ms == 40.11
        assert trace.db_query_count == 3
        assert trace.id in store.traces

    async def test_disabled_policy_records_nothing(self, store):
        aggregator = ApmAggregator(store, ApmPolicy(enabled=False))
        assert await aggregator.record(sample()) is None
        assert store.traces == {}

    async def test_ignored_path(self, aggregator):
        assert await aggregator.record(sample(path="/assets/app.js")) is None

    async def test_missing_path(self, aggregator):
        assert await aggregator.record(sample(path=None)) is None

    async def test_exception_without_status_is_500(self, aggregator):
        trace = await aggregator.record(sample(status=None, had_exception=True))
        assert trace.status == 500

    async def test_spans_from_collector(self, aggregator, collector):
        collector.start_request()
        collector.record_span("sql", "SELECT * FROM orders", 5.0)
        collector.record_query()

        trace = await aggregator.record(sample(db_query_count=None))

        assert len(trace.spans) == 1
        assert trace.spans[0].description == "SELECT * FROM orders"
        assert trace.db_query_count == 1
        assert not collector.active()

    async def test_explicit_spans_are_capped(self, aggregator, caplog):
        spans = tuple(Span("sql", f"SELECT {i}", float(i), 1.0) for i in range(510))

        with caplog.at_level("WARNING", logger="tripwire.core.aggregator"):
            trace = await aggregator.record(sample(spans=spans))

        assert len(trace.spans) == 500
        assert trace.spans[-1].description == "SELECT 499"
        warnings = [r for r in caplog.records if "Span limit" in r.getMessage()]
        assert len(warnings) == 1

    async def test_explicit_spans_win(self, aggregator, collector):
        collector.start_request()
        collector.record_span("sql", "ignored", 1.0)
        explicit = (Span("view", "orders/show", 0.0, 10.0),)

        trace = await aggregator.record(sample(spans=explicit))

        assert trace.spans == explicit
        assert not collector.active()

    async def test_store_failure_is_swallowed_and_collector_cleared(
        self, aggregator, store, collector
    ):
        store.should_fail = True
        collector.start_request()
        assert await aggregator.record(sample()) is None
        assert not collector.active()

    async def test_profile_is_stored(self, aggregator, store):
        blob = ProfileBlob(data=b"\x00profile", mode="wall", samples=12, interval_ms=1.0)
        trace = await aggregator.record(sample(profile=blob))
        assert trace.has_profile
        assert store.profiles[trace.id].decode() == b"\x00profile"


class TestSampling:
    def test_rate_bounds(self, store):
        assert ApmAggregator(store, ApmPolicy(enabled=True, sample_rate=1.0)).should_sample()
        assert not ApmAggregator(store, ApmPolicy(enabled=True, sample_rate=0.0)).should_sample()

    def test_fractional_rate_uses_rng(self, store):
        aggregator = ApmAggregator(
            store, ApmPolicy(enabled=True, sample_rate=0.5), rng=random.Random(3)
        )
        decisions = [aggregator.should_sample() for _ in range(1000)]
        assert 400 < sum(decisions) < 600

    def test_invalid_rate_rejected(self):
        with pytest.raises(ValueError):
            ApmPolicy(sample_rate=1.5)


class TestQueries:
    async def test_named_period_resolves_window(self, aggregator, store):
        await aggregator.response_time_series("1h")
        name, (since, granularity, endpoint) = store.queries[-1]
        assert name == "response_time_series"
        assert granularity == Granularity.MINUTE
        assert utcnow() - since <= timedelta(hours=1, seconds=5)

    async def test_unknown_period_defaults_to_day(self, aggregator, store):
        await aggregator.throughput_series("forever")
        _, (since, granularity) = store.queries[-1]
        assert granularity == Granularity.HOUR

    async def test_cleanup_uses_retention(self, store):
        aggregator = ApmAggregator(store, ApmPolicy(enabled=True, retention_days=30))
        recent = await aggregator.record(sample())
        stale = replace(recent, id="stale", created_at=utcnow() - timedelta(days=31))
        store.traces[stale.id] = stale

        assert await aggregator.cleanup() == 1
        assert list(store.traces) == [recent.id]
