"""Composition root for tripwire.

This module is the ONLY location that imports both core domain logic
and concrete adapter implementations. All wiring of dependencies
happens here.

Module Structure:
- Configuration loading via config module
- Adapter instantiation (stores, notifier channels, issue tracker)
- Core service initialization (tracker, APM aggregator, management)
- Entry point selection (daemon or CLI)

Host applications embed tripwire by calling ``build_application`` and
using the returned Application's ``tracker`` and ``aggregator``.
"""

import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from typing import Any

from tripwire.adapters.capture import TracebackLocalsCapture
from tripwire.adapters.cli.commands import CLICommandHandler, run_command
from tripwire.adapters.instrumentation import HttpInstrumenter, SqlInstrumenter
from tripwire.adapters.mail import SMTPMailDelivery
from tripwire.adapters.notification import (
    EmailNotifier,
    ErrorEmailRenderer,
    GitHubIssueCreator,
    OncePerGroupNotifier,
    ResendNotifier,
    SlackNotifier,
    TelegramNotifier,
    WebhookNotifier,
)
from tripwire.adapters.scheduler.daemon import RetentionScheduler
from tripwire.adapters.store.sqlite import SQLiteDatabase, SQLiteIssueStore
from tripwire.adapters.store.sqlite_traces import SQLiteTraceStore
from tripwire.config import Settings, load_settings
from tripwire.core.aggregator import ApmAggregator
from tripwire.core.dispatch import NotifierDispatcher
from tripwire.core.fingerprint import Fingerprinter
from tripwire.core.management_service import ManagementService
from tripwire.core.ports import (
    IssueStorePort,
    IssueTrackerPort,
    NotifierPort,
    TraceStorePort,
)
from tripwire.core.recorder import OccurrenceRecorder
from tripwire.core.rules import NotificationRuleEvaluator
from tripwire.core.serializer import VariableSerializer
from tripwire.core.spans import SpanCollector
from tripwire.core.tracker import Tracker

logger = logging.getLogger(__name__)


@dataclass
class Application:
    """Fully wired tripwire services."""

    settings: Settings
    store: IssueStorePort
    trace_store: TraceStorePort
    tracker: Tracker
    aggregator: ApmAggregator
    management: ManagementService
    span_collector: SpanCollector
    dispatcher: NotifierDispatcher
    issue_tracker: IssueTrackerPort | None = None
    http_instrumenter: HttpInstrumenter | None = None
    sql_instrumenter: SqlInstrumenter | None = None

    async def close(self) -> None:
        """Release stores, HTTP clients and pending mail."""
        await self.dispatcher.close()
        if self.issue_tracker is not None:
            await self.issue_tracker.close()
        await self.trace_store.close()
        await self.store.close()


def build_stores(settings: Settings) -> tuple[IssueStorePort, TraceStorePort]:
    """Create the issue and trace stores sharing one database."""
    if settings.store_backend == "postgresql":
        # Lazy import for optional PostgreSQL dependency
        from tripwire.adapters.store.postgresql import (
            PostgreSQLDatabase,
            PostgreSQLIssueStore,
        )
        from tripwire.adapters.store.postgresql_traces import PostgreSQLTraceStore

        if not settings.database_url:
            raise ValueError("postgresql store selected but TRIPWIRE_DATABASE_URL not set")
        pg = PostgreSQLDatabase(settings.database_url, pool_size=settings.store_pool_size)
        logger.info("Issue store initialized: PostgreSQL")
        return PostgreSQLIssueStore(pg), PostgreSQLTraceStore(pg)

    db = SQLiteDatabase(settings.store_sqlite_path, pool_size=settings.store_pool_size)
    logger.info(f"Issue store initialized: {settings.store_sqlite_path}")
    return SQLiteIssueStore(db), SQLiteTraceStore(db)


def build_notifiers(settings: Settings) -> list[NotifierPort]:
    """Create one notifier per configured channel, in a fixed order."""
    renderer = ErrorEmailRenderer(app_name=settings.app_name, app_root=settings.app_root)
    notifiers: list[NotifierPort] = []

    if settings.slack_webhook_url:
        notifiers.append(
            SlackNotifier(
                webhook_url=settings.slack_webhook_url,
                channel=settings.slack_channel,
                username=settings.slack_username,
                icon_emoji=settings.slack_icon_emoji,
                app_name=settings.app_name,
            )
        )
    if settings.telegram_bot_token and settings.telegram_chat_id:
        notifiers.append(
            TelegramNotifier(
                bot_token=settings.telegram_bot_token,
                chat_id=settings.telegram_chat_id,
                app_name=settings.app_name,
            )
        )
    if settings.webhook_url:
        notifiers.append(
            WebhookNotifier(
                url=settings.webhook_url,
                method=settings.webhook_method,
                headers=settings.webhook_headers,
                app_name=settings.app_name,
                environment=settings.environment,
            )
        )
    if settings.email_recipients and settings.smtp_host:
        notifiers.append(
            EmailNotifier(
                recipients=settings.email_recipients,
                mail_delivery=SMTPMailDelivery(
                    host=settings.smtp_host,
                    port=settings.smtp_port,
                    username=settings.smtp_username,
                    password=settings.smtp_password,
                    use_tls=settings.smtp_use_tls,
                ),
                sender=settings.email_sender,
                renderer=renderer,
            )
        )
    if settings.email_recipients and settings.resend_api_key:
        notifiers.append(
            ResendNotifier(
                api_key=settings.resend_api_key,
                recipients=settings.email_recipients,
                sender=settings.email_sender,
                renderer=renderer,
            )
        )

    if settings.notify_once_per_group:
        notifiers = [OncePerGroupNotifier(n) for n in notifiers]

    logger.info(
        f"Notifier channels: {', '.join(n.name for n in notifiers) or 'none'}"
    )
    return notifiers


def build_application(
    settings: Settings,
    store: IssueStorePort | None = None,
    trace_store: TraceStorePort | None = None,
    notifiers: list[NotifierPort] | None = None,
    issue_tracker: IssueTrackerPort | None = None,
) -> Application:
    """Wire every component from settings.

    Stores, notifiers and the issue tracker can be injected; anything not
    given is built from settings.
    """
    if store is None or trace_store is None:
        built_store, built_traces = build_stores(settings)
        store = store or built_store
        trace_store = trace_store or built_traces
    if notifiers is None:
        notifiers = build_notifiers(settings)
    if issue_tracker is None and settings.github_repo and settings.github_token:
        issue_tracker = GitHubIssueCreator(
            repo=settings.github_repo,
            token=settings.github_token,
            labels=settings.github_labels,
            app_root=settings.app_root,
        )

    policy = settings.to_tracking_policy()
    apm_policy = settings.to_apm_policy()

    fingerprinter = Fingerprinter(app_root=settings.app_root)
    recorder = OccurrenceRecorder(store, policy)
    evaluator = NotificationRuleEvaluator(
        policy.rules,
        cooldown=policy.notification_cooldown,
        channel_count=len(notifiers),
    )
    dispatcher = NotifierDispatcher(notifiers, store)
    tracker = Tracker(
        store=store,
        fingerprinter=fingerprinter,
        recorder=recorder,
        evaluator=evaluator,
        dispatcher=dispatcher,
        policy=policy,
        serializer=VariableSerializer(),
        locals_capture=TracebackLocalsCapture(app_root=settings.app_root),
        filter_patterns=settings.variable_filter_patterns(),
    )

    span_collector = SpanCollector(max_spans=apm_policy.max_spans)
    aggregator = ApmAggregator(trace_store, apm_policy, span_collector=span_collector)
    http_instrumenter: HttpInstrumenter | None = None
    sql_instrumenter: SqlInstrumenter | None = None
    if apm_policy.enabled and apm_policy.capture_spans:
        http_instrumenter = HttpInstrumenter(span_collector)
        sql_instrumenter = SqlInstrumenter(span_collector)
    management = ManagementService(store, policy, issue_tracker=issue_tracker)

    return Application(
        settings=settings,
        store=store,
        trace_store=trace_store,
        tracker=tracker,
        aggregator=aggregator,
        management=management,
        span_collector=span_collector,
        dispatcher=dispatcher,
        issue_tracker=issue_tracker,
        http_instrumenter=http_instrumenter,
        sql_instrumenter=sql_instrumenter,
    )


async def _run_cli_interactive(cli_handler: CLICommandHandler) -> None:
    """Run interactive CLI loop.

    Provides a REPL-like interface for management commands.

    Args:
        cli_handler: CLICommandHandler instance for executing commands.
    """
    logger.info("Starting interactive CLI. Type 'help' for available commands or 'exit' to quit.")

    loop = asyncio.get_running_loop()

    while True:
        try:
            # Read command from stdin in a thread to avoid blocking
            command_line = await loop.run_in_executor(None, input, "tripwire> ")
            command_line = command_line.strip()

            if not command_line:
                continue

            if command_line.lower() == "exit":
                logger.info("Exiting CLI")
                break

            if command_line.lower() == "help":
                _print_cli_help()
                continue

            parts = command_line.split(maxsplit=1)
            command = parts[0].lower()
            args_str = parts[1] if len(parts) > 1 else ""

            try:
                args = json.loads(args_str) if args_str else {}
            except json.JSONDecodeError:
                logger.error("Invalid JSON arguments. Use 'help' for command syntax.")
                continue
            if not isinstance(args, dict):
                logger.error("Arguments must be a JSON object. Use 'help' for command syntax.")
                continue

            try:
                result = await _execute_cli_command(cli_handler, command, args)
                print(json.dumps(result, indent=2, default=str))
            except Exception as e:
                logger.error(f"Command execution error: {e}", exc_info=True)
                print(json.dumps({"status": "error", "message": str(e)}, indent=2))

        except EOFError:
            # Ctrl+D to exit
            logger.info("EOF received, exiting CLI")
            break
        except KeyboardInterrupt:
            logger.info("Interrupted by user")
            continue


async def _execute_cli_command(
    cli_handler: CLICommandHandler,
    command: str,
    args: dict[str, Any],
) -> dict[str, Any]:
    """Execute a CLI command.

    Raises:
        ValueError: If command is not recognized or a required
            parameter is missing.
    """
    required = {
        "details": "group_id",
        "resolve": "group_id",
        "unresolve": "group_id",
        "ignore": "group_id",
        "create_issue": "group_id",
        "search": "query",
    }
    param = required.get(command)
    if param is not None and param not in args:
        raise ValueError(f"Missing required parameter: {param}")

    try:
        return await run_command(cli_handler, command, args)
    except ValueError as e:
        raise ValueError(f"{e}. Use 'help' for available commands.") from e


def _print_cli_help() -> None:
    """Print CLI help message."""
    help_text = """
Available Commands (JSON format):

  list
    List issue groups, most recent first.
    Optional: status (unresolved, resolved, ignored), order (recent, frequent),
              limit, offset

    Example: list {"status": "unresolved", "order": "frequent"}

  details
    Show a group with its most recent occurrences.
    Required: group_id
    Optional: format (json, text)

    Example: details {"group_id": "uuid-here", "format": "text"}

  search
    Search groups by exception class, message or file.
    Required: query

    Example: search {"query": "ZeroDivisionError"}

  resolve / unresolve / ignore
    Change a group's status.
    Required: group_id

    Example: resolve {"group_id": "uuid-here"}

  chart
    Occurrence counts over time.
    Optional: group_id, period (1h, 2h, 4h, 1d, 2d, 1w, 1m, all),
              start and end (ISO timestamps)

    Example: chart {"group_id": "uuid-here", "period": "1w"}

  create_issue
    Open a GitHub issue for a group.
    Required: group_id

  cleanup
    Apply the retention policies now.
    Optional: before (ISO timestamp)

  stats
    Store statistics.

  performance
    APM summary, slowest endpoints and response times.
    Optional: period (1h, 6h, 24h, 7d, 30d), limit

  help
    Show this help message.

  exit
    Exit the CLI.

Note: All commands accept arguments as a single JSON object.
Provide the JSON after the command name on the same line.
    """
    print(help_text)


def configure_logging(log_level: str, log_format: str) -> None:
    """Configure application logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: Log format (json, text).
    """
    level = getattr(logging, log_level, logging.INFO)

    if log_format == "json":
        format_str = '{"time": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s"}'
    else:
        format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=level,
        format=format_str,
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )


async def bootstrap(settings: Settings | None = None) -> None:
    """Load configuration, wire adapters, and start the selected run mode.

    Raises:
        ValueError: On invalid store configuration.
        asyncio.CancelledError: On graceful shutdown signal
    """
    settings = settings or load_settings()

    configure_logging(settings.log_level, settings.log_format)
    logger.info("Loading tripwire...")

    app = build_application(settings)

    logger.info(f"Starting in {settings.run_mode} mode...")
    try:
        if settings.run_mode == "daemon":
            scheduler = RetentionScheduler(
                management=app.management,
                aggregator=app.aggregator,
                interval_seconds=settings.cleanup_interval_seconds,
            )
            await scheduler.start()

        elif settings.run_mode == "cli":
            logger.info("CLI mode - Ready for interactive commands")
            cli_handler = CLICommandHandler(app.management, app.aggregator)
            await _run_cli_interactive(cli_handler)

    finally:
        await app.close()


def main() -> None:
    """Application entry point.

    Exit codes:
        0: Successful shutdown
        1: Fatal bootstrap or runtime error
        130: Interrupted by user (SIGINT/KeyboardInterrupt)
    """
    try:
        asyncio.run(bootstrap())
    except KeyboardInterrupt:
        logger.warning("Shutdown requested by user (SIGINT)")
        sys.exit(130)
    except asyncio.CancelledError:
        logger.info("Graceful shutdown completed")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
