"""APM aggregation: sampling and storing request traces, and chart queries.

Recording is best-effort. Nothing in ``record`` ever raises into the
request that is being measured.
"""

import logging
import random
import uuid
from datetime import datetime, timedelta

from .dialects import APM_PERIODS, resolve_period
from .models import (
    ApmPolicy,
    EndpointStats,
    RequestSample,
    RequestTrace,
    ResponseTimeBucket,
    SummaryStats,
    TimeBucket,
    utcnow,
)
from .ports import TraceStorePort
from .spans import SpanCollector

logger = logging.getLogger(__name__)


class ApmAggregator:
    """Samples completed requests into traces and answers latency queries."""

    def __init__(
        self,
        store: TraceStorePort,
        policy: ApmPolicy,
        span_collector: SpanCollector | None = None,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.policy = policy
        self.span_collector = span_collector
        self.rng = rng or random.Random()

    def should_sample(self) -> bool:
        if self.policy.sample_rate >= 1.0:
            return True
        if self.policy.sample_rate <= 0.0:
            return False
        return self.rng.random() < self.policy.sample_rate

    def is_ignored(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.policy.ignore_paths)

    async def record(self, sample: RequestSample) -> RequestTrace | None:
        """Store one request's timings if it passes the gates.

        Gates: APM enabled, path present and not ignored, sampled in.
        Spans come from the sample or, failing that, from the span
        collector for the current request; the collector is cleared on
        every exit path.

        Returns:
            The stored RequestTrace, or None if skipped or failed.
        """
        try:
            if not self.policy.enabled:
                return None

            path = sample.path.split("?", 1)[0] if sample.path else None
            if not path or self.is_ignored(path):
                return None

            if not self.should_sample():
                return None

            spans = sample.spans
            query_count = sample.db_query_count
            if self.span_collector is not None and self.span_collector.active():
                if query_count is None:
                    query_count = self.span_collector.query_count
                collected = self.span_collector.collect_spans()
                if spans is None and self.policy.capture_spans:
                    spans = collected or None

            if spans and len(spans) > self.policy.max_spans:
                logger.warning(
                    f"Span limit of {self.policy.max_spans} reached; dropping "
                    f"{len(spans) - self.policy.max_spans} spans for {path}"
                )
                spans = spans[: self.policy.max_spans]

            status = sample.status
            if status is None and sample.had_exception:
                status = 500

            trace = RequestTrace(
                id=str(uuid.uuid4()),
                endpoint=sample.endpoint,
                http_method=sample.http_method,
                path=path,
                status=status,
                duration_ms=round(sample.duration_ms, 2),
                db_runtime_ms=_round2(sample.db_runtime_ms),
                view_runtime_ms=_round2(sample.view_runtime_ms),
                db_query_count=query_count or 0,
                created_at=utcnow(),
                spans=tuple(spans) if spans else None,
                has_profile=sample.profile is not None,
            )
            return await self.store.save_trace(trace, sample.profile)

        except Exception as e:
            logger.debug(f"Failed to record request trace: {e}", exc_info=True)
            return None

        finally:
            if self.span_collector is not None:
                self.span_collector.clear()

    async def response_time_series(
        self, period: str = "24h", endpoint: str | None = None
    ) -> list[ResponseTimeBucket]:
        window = resolve_period(APM_PERIODS, period, "24h")
        return await self.store.response_time_series(
            window.since(utcnow()), window.granularity, endpoint
        )

    async def throughput_series(self, period: str = "24h") -> list[TimeBucket]:
        window = resolve_period(APM_PERIODS, period, "24h")
        return await self.store.throughput_series(window.since(utcnow()), window.granularity)

    async def slowest_endpoints(
        self, since: datetime | None = None, limit: int = 20
    ) -> list[EndpointStats]:
        since = since or utcnow() - timedelta(hours=24)
        return await self.store.slowest_endpoints(since, limit)

    async def summary_stats(self, since: datetime | None = None) -> SummaryStats:
        since = since or utcnow() - timedelta(hours=24)
        return await self.store.summary_stats(since)

    async def cleanup(self, before: datetime | None = None) -> int:
        """Delete traces older than the APM retention window."""
        before = before or utcnow() - timedelta(days=self.policy.retention_days)
        deleted = await self.store.cleanup_traces(before)
        logger.info(
            f"Deleted {deleted} request traces older than {before.isoformat()}",
            extra={"deleted": deleted},
        )
        return deleted


def _round2(value: float | None) -> float | None:
    return None if value is None else round(value, 2)
