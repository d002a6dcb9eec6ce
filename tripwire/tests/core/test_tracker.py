"""Tests for the tracking pipeline."""

from typing import Any

import pytest

from tripwire.core.fingerprint import Fingerprinter
from tripwire.core.dispatch import NotifierDispatcher
from tripwire.core.models import IssueStatus, NotificationRules, TrackingContext, TrackingPolicy
from tripwire.core.ports import LocalsCapturePort
from tripwire.core.recorder import OccurrenceRecorder
from tripwire.core.rules import NotificationRuleEvaluator
from tripwire.core.serializer import VariableSerializer
from tripwire.core.tracker import Tracker
from tripwire.tests.fakes import FakeIssueStorePort, FakeNotifier, FakeRequest


def captured(message: str = "division by zero") -> ZeroDivisionError:
    """Raise and catch so the exception carries a real traceback."""
    try:
        raise ZeroDivisionError(message)
    except ZeroDivisionError as e:
        return e


class StaticLocals(LocalsCapturePort):
    def __init__(self, variables: dict[str, Any]):
        self.variables = variables

    def capture(self, exception: BaseException) -> dict[str, Any]:
        return self.variables


@pytest.fixture
def store() -> FakeIssueStorePort:
    return FakeIssueStorePort()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier("slack")


def build_tracker(store, notifier, policy=None, **kwargs) -> Tracker:
    policy = policy or TrackingPolicy(notification_cooldown=None)
    return Tracker(
        store=store,
        fingerprinter=Fingerprinter(),
        recorder=OccurrenceRecorder(store, policy),
        evaluator=NotificationRuleEvaluator(
            policy.rules, cooldown=policy.notification_cooldown, channel_count=1
        ),
        dispatcher=NotifierDispatcher([notifier], store),
        policy=policy,
        **kwargs,
    )


@pytest.fixture
def tracker(store, notifier) -> Tracker:
    return build_tracker(store, notifier)


class TestTrack:
    async def test_first_occurrence_creates_group_and_notifies(self, tracker, store, notifier):
        occurrence = await tracker.track(captured())

        assert occurrence is not None
        group = await store.get_group(occurrence.group_id)
        assert group.occurrences_count == 1
        assert group.exception_class == "ZeroDivisionError"
        assert notifier.send_count == 1
        sent_group, _ = notifier.sent[0]
        assert sent_group.occurrences_count == 1

    async def test_repeat_occurrence_joins_group_quietly(self, tracker, store, notifier):
        first = await tracker.track(captured("order 1 failed"))
        second = await tracker.track(captured("order 2 failed"))

        assert first.group_id == second.group_id
        group = await store.get_group(first.group_id)
        assert group.occurrences_count == 2
        assert notifier.send_count == 1

    async def test_threshold_notifies(self, tracker, notifier):
        for _ in range(10):
            await tracker.track(captured())
        # first occurrence plus the tenth
        assert notifier.send_count == 2

    async def test_resolved_group_reopens_and_notifies(self, tracker, store, notifier):
        first = await tracker.track(captured())
        group = await store.get_group(first.group_id)
        await store.set_status(group.id, IssueStatus.RESOLVED, group.last_seen_at)

        await tracker.track(captured())

        reopened = await store.get_group(first.group_id)
        assert reopened.status == IssueStatus.UNRESOLVED
        assert reopened.resolved_at is None
        assert notifier.send_count == 2
        assert notifier.sent[-1][0].recently_reopened

    async def test_ignored_group_records_without_notifying(self, tracker, store, notifier):
        first = await tracker.track(captured())
        await store.set_status(first.group_id, IssueStatus.IGNORED, None)

        await tracker.track(captured())

        assert (await store.get_group(first.group_id)).occurrences_count == 2
        assert notifier.send_count == 1

    async def test_store_failure_never_raises(self, tracker, store, notifier):
        store.fail_on_record = True
        assert await tracker.track(captured()) is None
        assert notifier.send_count == 0

    async def test_request_and_user_context_recorded(self, tracker):
        class User:
            id = 17

        request = FakeRequest(params={"card_number": "4111", "password": "x"})
        occurrence = await tracker.track(
            captured(), {"request": request, "user": User(), "custom_data": {"plan": "pro"}}
        )

        assert occurrence.request_url == "https://shop.example.com/orders/42"
        assert occurrence.request.params["password"] == "[FILTERED]"
        assert occurrence.user_identifier == "User#17"
        assert occurrence.context[0].key == "plan"
        assert occurrence.context[0].value == "pro"


class TestFilters:
    async def test_ignored_exception_class(self, store, notifier):
        policy = TrackingPolicy(ignored_exceptions=("ZeroDivisionError",))
        tracker = build_tracker(store, notifier, policy)
        assert await tracker.track(captured()) is None
        assert store.groups == {}

    async def test_bot_user_agent(self, tracker, store):
        request = FakeRequest(user_agent="Mozilla/5.0 (compatible; Googlebot/2.1)")
        assert await tracker.track(captured(), TrackingContext(request=request)) is None
        assert store.groups == {}

    async def test_ignored_path_prefix(self, tracker, store):
        request = FakeRequest(path="/health/live")
        assert await tracker.track(captured(), TrackingContext(request=request)) is None

    async def test_unhealthy_store(self, tracker, store):
        store.healthy = False
        assert await tracker.track(captured()) is None

    async def test_before_track_veto(self, store, notifier):
        tracker = build_tracker(store, notifier, before_track=lambda exc, ctx: False)
        assert await tracker.track(captured()) is None
        assert store.groups == {}


class TestHooks:
    async def test_custom_fingerprint_splits_groups(self, store, notifier):
        tracker = build_tracker(
            store,
            notifier,
            custom_fingerprint=lambda exc, ctx: ctx.custom_data.get("tenant"),
        )
        a = await tracker.track(captured(), {"custom_data": {"tenant": "acme"}})
        b = await tracker.track(captured(), {"custom_data": {"tenant": "globex"}})
        assert a.group_id != b.group_id

    async def test_async_after_track_hook(self, store, notifier):
        seen = []

        async def after(group, occurrence):
            seen.append((group.id, occurrence.id))

        tracker = build_tracker(store, notifier, after_track=after)
        occurrence = await tracker.track(captured())
        assert seen == [(occurrence.group_id, occurrence.id)]

    async def test_captured_locals_are_serialized_and_filtered(self, store, notifier):
        tracker = build_tracker(
            store,
            notifier,
            serializer=VariableSerializer(),
            locals_capture=StaticLocals({"amount": 10, "api_token": "secret"}),
        )
        occurrence = await tracker.track(captured())
        assert dict(occurrence.local_variables) == {"amount": 10, "api_token": "[FILTERED]"}

    async def test_explicit_locals_take_precedence(self, store, notifier):
        tracker = build_tracker(
            store,
            notifier,
            serializer=VariableSerializer(),
            locals_capture=StaticLocals({"amount": 10}),
        )
        occurrence = await tracker.track(captured(), {"local_variables": {"given": True}})
        assert dict(occurrence.local_variables) == {"given": True}


async def test_notification_rules_flow_through_policy(store, notifier):
    policy = TrackingPolicy(
        notification_cooldown=None,
        rules=NotificationRules(on_first_occurrence=False),
    )
    tracker = build_tracker(store, notifier, policy)
    await tracker.track(captured())
    assert notifier.send_count == 0
