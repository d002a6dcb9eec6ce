"""Tracking pipeline.

This module implements the single entry point the host calls for every
exception it wants recorded: filter, fingerprint, group, record, and
notify. Nothing here ever raises into the host.
"""

import inspect
import logging
import re
import traceback
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from .dispatch import NotifierDispatcher
from .fingerprint import Fingerprinter, exception_class_name, format_backtrace
from .models import IssueGroup, Occurrence, TrackingContext, TrackingPolicy, utcnow
from .ports import IssueStorePort, LocalsCapturePort, TrackingPort
from .recorder import OccurrenceRecorder
from .rules import NotificationRuleEvaluator
from .serializer import VariableSerializer

logger = logging.getLogger(__name__)

MAX_LOGGED_FRAMES = 10

BeforeTrackHook = Callable[[BaseException, TrackingContext], Any]
AfterTrackHook = Callable[[IssueGroup, Occurrence], Any]
FingerprintHook = Callable[[BaseException, TrackingContext], Any]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _extra_components(value: Any) -> tuple[Any, ...]:
    """Normalize a custom fingerprint hook result."""
    if value is None:
        return ()
    if isinstance(value, Mapping):
        value = value.get("extra_components") or ()
    if isinstance(value, (str, bytes)):
        return (value,)
    return tuple(value)


class Tracker(TrackingPort):
    """Implements the tracking pipeline.

    This service orchestrates:
    - Filtering out ignored exceptions, bots and paths
    - Fingerprinting and grouping
    - Recording the occurrence
    - Evaluating notification rules and dispatching
    """

    def __init__(
        self,
        store: IssueStorePort,
        fingerprinter: Fingerprinter,
        recorder: OccurrenceRecorder,
        evaluator: NotificationRuleEvaluator,
        dispatcher: NotifierDispatcher,
        policy: TrackingPolicy,
        before_track: BeforeTrackHook | None = None,
        after_track: AfterTrackHook | None = None,
        custom_fingerprint: FingerprintHook | None = None,
        serializer: VariableSerializer | None = None,
        locals_capture: LocalsCapturePort | None = None,
        filter_patterns: Sequence[str] | None = None,
    ):
        self.store = store
        self.fingerprinter = fingerprinter
        self.recorder = recorder
        self.evaluator = evaluator
        self.dispatcher = dispatcher
        self.policy = policy
        self.before_track = before_track
        self.after_track = after_track
        self.custom_fingerprint = custom_fingerprint
        self.serializer = serializer
        self.locals_capture = locals_capture
        self.filter_patterns = filter_patterns
        self._ignored_agents = [
            re.compile(pattern, re.IGNORECASE) for pattern in policy.ignored_user_agents
        ]

    async def track(
        self,
        exception: BaseException,
        context: TrackingContext | Mapping[str, Any] | None = None,
    ) -> Occurrence | None:
        """Record an exception and notify if the rules say so.

        Returns the created Occurrence, or None when filtered out or when
        any step failed.
        """
        try:
            ctx = TrackingContext.coerce(context)

            if not await self.should_track(exception, ctx):
                return None

            if self.before_track is not None:
                verdict = await _maybe_await(self.before_track(exception, ctx))
                if verdict is False:
                    logger.debug(f"before_track hook vetoed {exception_class_name(exception)}")
                    return None

            backtrace = format_backtrace(exception)
            extra = await self._fingerprint_components(exception, ctx)
            group = await self.find_or_create_from_exception(exception, extra, backtrace)

            occurrence = await self.recorder.create_from_exception(
                exception,
                group,
                request=ctx.request,
                user=ctx.user,
                custom_data=ctx.custom_data,
                local_variables=self._local_variables(exception, ctx),
                backtrace=backtrace,
            )

            group = await self._refresh(group)

            if self.evaluator.should_notify(group, occurrence):
                await self.dispatcher.notify(group, occurrence)

            if self.after_track is not None:
                await _maybe_await(self.after_track(group, occurrence))

            return occurrence

        except Exception as e:
            frames = traceback.format_tb(e.__traceback__)[:MAX_LOGGED_FRAMES]
            logger.error(
                f"Failed to track {type(exception).__name__}: {type(e).__name__}: {e}\n"
                + "".join(frames)
            )
            return None

    async def should_track(self, exception: BaseException, context: TrackingContext) -> bool:
        """Apply the ignore gates and the storage health check."""
        name = exception_class_name(exception)
        ignored = self.policy.ignored_exceptions
        if name in ignored or type(exception).__name__ in ignored:
            return False

        request = context.request
        if request is not None:
            agent = getattr(request, "user_agent", None)
            if agent and any(p.search(agent) for p in self._ignored_agents):
                return False
            path = getattr(request, "path", None)
            if path and any(path.startswith(p) for p in self.policy.middleware_ignore_paths):
                return False

        return await self.store.ping()

    async def find_or_create_from_exception(
        self,
        exception: BaseException,
        extra_components: Sequence[Any] = (),
        backtrace: Sequence[str] | None = None,
    ) -> IssueGroup:
        """Resolve the issue group an exception belongs to.

        Raises:
            StoreError: If the group could neither be created nor found.
        """
        draft = self.fingerprinter.draft_for(exception, backtrace, extra_components)
        return await self.store.find_or_create_group(draft, utcnow())

    async def _fingerprint_components(
        self, exception: BaseException, context: TrackingContext
    ) -> tuple[Any, ...]:
        if self.custom_fingerprint is None:
            return ()
        return _extra_components(await _maybe_await(self.custom_fingerprint(exception, context)))

    def _local_variables(
        self, exception: BaseException, context: TrackingContext
    ) -> Mapping[str, Any] | None:
        if context.local_variables is not None:
            return context.local_variables
        if self.locals_capture is None or self.serializer is None:
            return None
        raw = self.locals_capture.capture(exception)
        if raw is None:
            return None
        if self.filter_patterns is None:
            return self.serializer.serialize(raw)
        return self.serializer.serialize(raw, self.filter_patterns)

    async def _refresh(self, group: IssueGroup) -> IssueGroup:
        """Re-read authoritative group state after the counter increment."""
        fresh = await self.store.get_group(group.id)
        if fresh is None:
            return group
        fresh.reopened = group.reopened
        return fresh
