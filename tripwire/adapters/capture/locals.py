"""Snapshot local variables at the point an exception was raised.

Two sources, checked in order:

1. Variables a host recorded explicitly with ``record()`` inside a
   ``capture_scope()``. The scope clears them on every exit path so one
   request never sees another request's locals.
2. The innermost application frame of ``exc.__traceback__``.
"""

import logging
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from contextvars import ContextVar
from types import FrameType, TracebackType
from typing import Any

from tripwire.core.fingerprint import VENDOR_MARKERS
from tripwire.core.ports import LocalsCapturePort

logger = logging.getLogger(__name__)

_recorded: ContextVar[dict[str, Any] | None] = ContextVar(
    "tripwire_recorded_locals", default=None
)


def record(variables: Mapping[str, Any]) -> None:
    """Remember locals for the current context."""
    _recorded.set(dict(variables))


def current() -> dict[str, Any] | None:
    return _recorded.get()


@contextmanager
def capture_scope() -> Iterator[None]:
    """Scope for recorded locals; always cleared on exit."""
    token = _recorded.set(None)
    try:
        yield
    finally:
        _recorded.reset(token)


class TracebackLocalsCapture(LocalsCapturePort):
    """Reads ``f_locals`` from the innermost application frame."""

    def __init__(
        self,
        app_root: str | None = None,
        vendor_markers: Sequence[str] = VENDOR_MARKERS,
    ):
        self.app_root = app_root.rstrip("/") if app_root else None
        self.vendor_markers = tuple(vendor_markers)

    def is_app_frame(self, frame: FrameType) -> bool:
        filename = frame.f_code.co_filename
        if any(marker in filename for marker in self.vendor_markers):
            return False
        return self.app_root is None or filename.startswith(self.app_root)

    def capture(self, exception: BaseException) -> Mapping[str, Any] | None:
        recorded = current()
        if recorded is not None:
            return recorded

        frame = self._innermost_app_frame(exception.__traceback__)
        if frame is None:
            return None
        logger.debug(
            f"Captured locals from {frame.f_code.co_filename}:{frame.f_lineno}"
        )
        return dict(frame.f_locals)

    def _innermost_app_frame(self, tb: TracebackType | None) -> FrameType | None:
        found = None
        while tb is not None:
            if self.is_app_frame(tb.tb_frame):
                found = tb.tb_frame
            tb = tb.tb_next
        return found
