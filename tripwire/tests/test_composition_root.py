"""Tests for wiring the application from settings."""

import logging
from unittest.mock import patch

import aiosqlite
import httpx
import pytest

from tripwire.adapters.notification import (
    EmailNotifier,
    GitHubIssueCreator,
    OncePerGroupNotifier,
    ResendNotifier,
    SlackNotifier,
    TelegramNotifier,
    WebhookNotifier,
)
from tripwire.adapters.store.sqlite import SQLiteIssueStore
from tripwire.adapters.store.sqlite_traces import SQLiteTraceStore
from tripwire.config import Settings
from tripwire.core.models import IssueStatus, RequestSample
from tripwire.main import build_application, build_notifiers, build_stores, configure_logging
from tripwire.tests.fakes import FakeNotifier


def settings(tmp_path, **overrides) -> Settings:
    return Settings(_env_file=None, store_sqlite_path=str(tmp_path / "tripwire.db"), **overrides)


def fail_checkout():
    raise ZeroDivisionError("division by zero")


class TestBuildStores:
    def test_sqlite_stores_share_database(self, tmp_path) -> None:
        store, traces = build_stores(settings(tmp_path))
        assert isinstance(store, SQLiteIssueStore)
        assert isinstance(traces, SQLiteTraceStore)
        assert store.database is traces.database

    def test_postgresql_requires_url(self, tmp_path) -> None:
        with pytest.raises(ValueError):
            build_stores(settings(tmp_path, store_backend="postgresql"))


class TestBuildNotifiers:
    def test_no_channels_by_default(self, tmp_path) -> None:
        assert build_notifiers(settings(tmp_path)) == []

    def test_every_configured_channel(self, tmp_path) -> None:
        notifiers = build_notifiers(
            settings(
                tmp_path,
                slack_webhook_url="https://hooks.slack.example/T1",
                telegram_bot_token="123:abc",
                telegram_chat_id="-100",
                webhook_url="https://hooks.example.com/errors",
                email_recipients=["ops@example.com"],
                smtp_host="smtp.example.com",
                resend_api_key="re_123",
            )
        )
        assert [type(n) for n in notifiers] == [
            SlackNotifier,
            TelegramNotifier,
            WebhookNotifier,
            EmailNotifier,
            ResendNotifier,
        ]

    def test_telegram_needs_chat_id(self, tmp_path) -> None:
        assert build_notifiers(settings(tmp_path, telegram_bot_token="123:abc")) == []

    def test_once_per_group_wraps_channels(self, tmp_path) -> None:
        [notifier] = build_notifiers(
            settings(
                tmp_path,
                slack_webhook_url="https://hooks.slack.example/T1",
                notify_once_per_group=True,
            )
        )
        assert isinstance(notifier, OncePerGroupNotifier)
        assert notifier.name == "slack:once"


class TestBuildApplication:
    async def test_github_tracker_when_configured(self, tmp_path) -> None:
        app = build_application(
            settings(tmp_path, github_repo="acme/shop", github_token="ghp_x"), notifiers=[]
        )
        try:
            assert isinstance(app.issue_tracker, GitHubIssueCreator)
            assert app.management.issue_tracker is app.issue_tracker
        finally:
            await app.close()

    async def test_track_resolve_and_reopen_end_to_end(self, tmp_path) -> None:
        notifier = FakeNotifier("slack")
        app = build_application(
            settings(tmp_path, notification_cooldown_seconds=0), notifiers=[notifier]
        )
        try:
            try:
                fail_checkout()
            except ZeroDivisionError as e:
                first = await app.tracker.track(e, {"custom_data": {"order": 42}})

            group = await app.store.get_group(first.group_id)
            assert group.occurrences_count == 1
            assert group.method_name == "fail_checkout"
            assert notifier.send_count == 1

            await app.management.resolve_group(group.id)
            try:
                fail_checkout()
            except ZeroDivisionError as e:
                second = await app.tracker.track(e)

            reopened = await app.store.get_group(second.group_id)
            assert second.group_id == first.group_id
            assert reopened.status == IssueStatus.UNRESOLVED
            assert reopened.occurrences_count == 2
            assert notifier.send_count == 2
        finally:
            await app.close()

        assert notifier.closed

    async def test_apm_records_traces(self, tmp_path) -> None:
        app = build_application(settings(tmp_path, apm_enabled=True), notifiers=[])
        try:
            with app.span_collector.request_scope():
                with app.span_collector.measure("sql", "SELECT * FROM orders"):
                    pass
                trace = await app.aggregator.record(
                    RequestSample("OrdersController#index", "GET", "/orders", 12.5, status=200)
                )

            stored = await app.trace_store.get_trace(trace.id)
            assert stored.duration_ms == 12.5
            assert stored.spans[0].type == "sql"
        finally:
            await app.close()

    async def test_instrumented_calls_feed_traces(self, tmp_path) -> None:
        app = build_application(settings(tmp_path, apm_enabled=True), notifiers=[])
        transport = httpx.MockTransport(lambda request: httpx.Response(200))
        client = app.http_instrumenter.client(transport=transport)
        db = await aiosqlite.connect(tmp_path / "host.db")
        conn = app.sql_instrumenter.wrap(db)
        try:
            await conn.execute("CREATE TABLE orders (id INTEGER)")
            with app.span_collector.request_scope():
                await conn.execute("INSERT INTO orders VALUES (?)", (1,))
                await client.get("https://payments.example.com/charges")
                trace = await app.aggregator.record(
                    RequestSample("OrdersController#create", "POST", "/orders", 30.0)
                )

            stored = await app.trace_store.get_trace(trace.id)
            assert [s.type for s in stored.spans] == ["sql", "http"]
            assert stored.db_query_count == 1
        finally:
            await client.aclose()
            await db.close()
            await app.close()

    def test_instrumenters_absent_without_span_capture(self, tmp_path) -> None:
        disabled = build_application(settings(tmp_path), notifiers=[])
        no_spans = build_application(
            settings(tmp_path, apm_enabled=True, apm_capture_spans=False), notifiers=[]
        )
        assert disabled.http_instrumenter is None
        assert no_spans.sql_instrumenter is None


def test_configure_logging_formats() -> None:
    with patch("tripwire.main.logging.basicConfig") as basic_config:
        configure_logging("DEBUG", "json")
        configure_logging("WARNING", "text")

    json_call, text_call = basic_config.call_args_list
    assert json_call.kwargs["level"] == logging.DEBUG
    assert json_call.kwargs["format"].startswith('{"time"')
    assert text_call.kwargs["level"] == logging.WARNING
    assert " - %(levelname)s - " in text_call.kwargs["format"]
