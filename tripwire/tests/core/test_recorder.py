"""Tests for building and persisting occurrences."""

import pytest

from tripwire.core.models import (
    Actor,
    GroupDraft,
    HostInfo,
    SourceLocation,
    TrackingPolicy,
    utcnow,
)
from tripwire.core.recorder import (
    MAX_CONTEXT_VALUE_LENGTH,
    MAX_PARAMS_JSON_LENGTH,
    OccurrenceRecorder,
    actor_from_user,
    filter_params,
    normalize_header_name,
    serialize_context_value,
)
from tripwire.tests.fakes import FakeIssueStorePort, FakeRequest


@pytest.fixture
def store() -> FakeIssueStorePort:
    return FakeIssueStorePort()


@pytest.fixture
def recorder(store) -> OccurrenceRecorder:
    return OccurrenceRecorder(
        store,
        TrackingPolicy(environment="staging", backtrace_lines_limit=3),
        HostInfo(environment="staging", hostname="web-1", process_id="99"),
    )


class BrokenRequest(FakeRequest):
    @property
    def params(self):
        raise RuntimeError("body already consumed")


class TestHelpers:
    def test_header_names_normalized(self):
        assert normalize_header_name("HTTP_USER_AGENT") == "user-agent"
        assert normalize_header_name("X-Forwarded-For") == "x-forwarded-for"

    def test_filter_params_masks_nested_values(self):
        params = {"user": {"name": "a", "password": "p"}, "items": [{"token": "t"}]}
        assert filter_params(params, ("password", "token")) == {
            "user": {"name": "a", "password": "[FILTERED]"},
            "items": [{"token": "[FILTERED]"}],
        }

    def test_context_values(self):
        assert serialize_context_value("plain") == "plain"
        assert serialize_context_value({"a": 1}) == '{"a": 1}'
        assert len(serialize_context_value("x" * 20_000)) == MAX_CONTEXT_VALUE_LENGTH

    def test_context_value_repr_fallback(self):
        cyclic: list = []
        cyclic.append(cyclic)
        assert serialize_context_value(cyclic) == "[[...]]"

    def test_actor_from_various_users(self):
        class Account:
            id = 5

        assert actor_from_user(None) is None
        assert actor_from_user(Account()) == Actor(id="5", type="Account")
        assert actor_from_user({"id": 3}) == Actor(id="3", type="User")
        assert actor_from_user({"name": "anonymous"}) is None


class TestRequestExtraction:
    def test_only_allowed_headers_kept(self, recorder):
        request = FakeRequest(
            headers={"HTTP_ACCEPT": "text/html", "Authorization": "Bearer x", "Cookie": "s=1"}
        )
        snapshot = recorder.extract_request_data(request)
        assert dict(snapshot.headers) == {"accept": "text/html"}

    def test_oversized_params_replaced_with_preview(self, recorder):
        request = FakeRequest(params={"blob": "x" * (MAX_PARAMS_JSON_LENGTH + 10)})
        snapshot = recorder.extract_request_data(request)
        assert snapshot.params["_truncated"] is True
        assert len(snapshot.params["_preview"]) == MAX_PARAMS_JSON_LENGTH

    def test_extraction_failure_yields_none(self, recorder):
        assert recorder.extract_request_data(BrokenRequest()) is None


class TestCreateFromException:
    async def test_occurrence_recorded_with_host_metadata(self, recorder, store):
        draft = GroupDraft("fp-1", "ValueError", "bad", SourceLocation("app.py", 1))
        group = await store.find_or_create_group(draft, utcnow())

        occurrence = await recorder.create_from_exception(
            ValueError("bad"),
            group,
            request=BrokenRequest(),
            custom_data={"": "skipped", "order": 12},
            backtrace=["a.py:1:in a", "b.py:2:in b", "c.py:3:in c", "d.py:4:in d"],
        )

        assert occurrence.environment == "staging"
        assert occurrence.hostname == "web-1"
        assert occurrence.process_id == "99"
        assert occurrence.backtrace == ("a.py:1:in a", "b.py:2:in b", "c.py:3:in c")
        assert occurrence.request is None
        assert [(e.key, e.value) for e in occurrence.context] == [("order", "12")]
        assert (await store.get_group(group.id)).occurrences_count == 1
