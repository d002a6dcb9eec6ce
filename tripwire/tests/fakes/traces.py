"""Fake TraceStorePort implementation for testing."""

import uuid
from datetime import datetime

from tripwire.core.models import (
    EndpointStats,
    Granularity,
    Profile,
    ProfileBlob,
    RequestTrace,
    ResponseTimeBucket,
    SummaryStats,
    TimeBucket,
    utcnow,
)
from tripwire.core.ports import TraceStorePort


class FakeTraceStorePort(TraceStorePort):
    """In-memory trace store that records saved traces.

    Aggregate queries return canned values; the SQL stores are exercised
    against real databases in the adapter tests.
    """

    def __init__(self):
        self.traces: dict[str, RequestTrace] = {}
        self.profiles: dict[str, Profile] = {}
        self.queries: list[tuple[str, tuple]] = []
        self.should_fail = False

    async def save_trace(
        self, trace: RequestTrace, profile: ProfileBlob | None = None
    ) -> RequestTrace:
        if self.should_fail:
            raise RuntimeError("trace store unavailable")
        self.traces[trace.id] = trace
        if profile is not None:
            self.profiles[trace.id] = Profile(
                id=str(uuid.uuid4()),
                request_trace_id=trace.id,
                profile_data=profile.encode(),
                mode=profile.mode,
                samples=profile.samples,
                interval_ms=profile.interval_ms,
                created_at=utcnow(),
            )
        return trace

    async def get_trace(self, trace_id: str) -> RequestTrace | None:
        return self.traces.get(trace_id)

    async def get_profile(self, trace_id: str) -> Profile | None:
        return self.profiles.get(trace_id)

    async def response_time_series(
        self,
        since: datetime | None,
        granularity: Granularity,
        endpoint: str | None = None,
    ) -> list[ResponseTimeBucket]:
        self.queries.append(("response_time_series", (since, granularity, endpoint)))
        return []

    async def throughput_series(
        self, since: datetime | None, granularity: Granularity
    ) -> list[TimeBucket]:
        self.queries.append(("throughput_series", (since, granularity)))
        return []

    async def slowest_endpoints(self, since: datetime, limit: int = 20) -> list[EndpointStats]:
        self.queries.append(("slowest_endpoints", (since, limit)))
        return []

    async def summary_stats(self, since: datetime) -> SummaryStats:
        self.queries.append(("summary_stats", (since,)))
        return SummaryStats(
            total_requests=len(self.traces),
            avg_duration=0.0,
            avg_db_runtime=0.0,
            avg_query_count=0.0,
            error_count=0,
            p95_duration=0.0,
        )

    async def cleanup_traces(self, before: datetime) -> int:
        stale = [k for k, t in self.traces.items() if t.created_at < before]
        for key in stale:
            del self.traces[key]
            self.profiles.pop(key, None)
        return len(stale)
