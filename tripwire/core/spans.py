"""Per-request span collection.

State lives in a ContextVar, so every asyncio task and thread sees its own
request. Callers open a request with ``request_scope()`` (or the
``start_request``/``clear`` pair) and instrumentation anywhere below it
records spans without passing the collector around.
"""

import logging
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any

from .models import Span

logger = logging.getLogger(__name__)

DEFAULT_MAX_SPANS = 500
# Offsets more negative than this are reported before being clamped.
ANOMALY_THRESHOLD_MS = -100.0


@dataclass
class _RequestState:
    started_at: float
    spans: list[Span] = field(default_factory=list)
    dropped: int = 0
    query_count: int = 0


_current: ContextVar[_RequestState | None] = ContextVar("tripwire_request_spans", default=None)


class SpanCollector:
    """Collects timed sub-operations for the request in the current context."""

    def __init__(
        self,
        max_spans: int = DEFAULT_MAX_SPANS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_spans = max_spans
        self.clock = clock

    def start_request(self) -> None:
        _current.set(_RequestState(started_at=self.clock()))

    def active(self) -> bool:
        return _current.get() is not None

    def record_span(
        self,
        type: str,
        description: str,
        duration_ms: float,
        metadata: Mapping[str, Any] | None = None,
    ) -> Span | None:
        """Record a span that just finished.

        The start offset is derived from the current clock minus the
        duration. Returns None when no request is active or the cap was hit.
        """
        state = _current.get()
        if state is None:
            return None

        if len(state.spans) >= self.max_spans:
            if state.dropped == 0:
                logger.warning(
                    f"Span limit of {self.max_spans} reached; dropping further spans "
                    "for this request"
                )
            state.dropped += 1
            return None

        now = self.clock()
        offset = round((now - duration_ms / 1000.0 - state.started_at) * 1000.0, 2)
        if offset < ANOMALY_THRESHOLD_MS:
            logger.warning(
                f"Span timing anomaly: {type} '{description[:80]}' starts {offset}ms "
                "before its request"
            )
        span = Span(
            type=type,
            description=description,
            start_offset_ms=max(offset, 0.0),
            duration_ms=round(duration_ms, 2),
            metadata=dict(metadata or {}),
        )
        state.spans.append(span)
        return span

    def record_query(self) -> None:
        """Count one SQL query against the active request."""
        state = _current.get()
        if state is not None:
            state.query_count += 1

    @property
    def query_count(self) -> int:
        state = _current.get()
        return state.query_count if state is not None else 0

    def collect_spans(self) -> tuple[Span, ...]:
        """Return the spans recorded so far and end the request."""
        state = _current.get()
        _current.set(None)
        if state is None:
            return ()
        return tuple(state.spans)

    def clear(self) -> None:
        _current.set(None)

    @contextmanager
    def request_scope(self) -> Iterator["SpanCollector"]:
        """Open a request; its state is discarded on every exit path."""
        token = _current.set(_RequestState(started_at=self.clock()))
        try:
            yield self
        finally:
            _current.reset(token)

    @contextmanager
    def measure(
        self,
        type: str,
        description: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> Iterator[None]:
        """Time the enclosed block and record it as a span."""
        started = self.clock()
        try:
            yield
        finally:
            self.record_span(type, description, (self.clock() - started) * 1000.0, metadata)
