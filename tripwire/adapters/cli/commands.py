"""CLI command implementations for tripwire management.

Provides human-initiated actions through the command-line interface.

This adapter maps CLI commands to ManagementPort and ApmAggregator
operations. It handles CLI-specific formatting and error reporting:
every command returns a dictionary with a ``status`` of ``success`` or
``error``.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from tripwire.core.aggregator import ApmAggregator
from tripwire.core.models import (
    GroupNotFound,
    IssueGroup,
    IssueStatus,
    Occurrence,
    TimeBucket,
)
from tripwire.core.ports import ManagementPort

logger = logging.getLogger(__name__)


def group_to_dict(group: IssueGroup) -> dict[str, Any]:
    return {
        "id": group.id,
        "fingerprint": group.fingerprint,
        "exception_class": group.exception_class,
        "message": group.sanitized_message,
        "location": group.location_label,
        "status": group.status.value,
        "occurrences_count": group.occurrences_count,
        "first_seen_at": group.first_seen_at.isoformat(),
        "last_seen_at": group.last_seen_at.isoformat(),
        "resolved_at": group.resolved_at.isoformat() if group.resolved_at else None,
        "recently_reopened": group.recently_reopened,
    }


def occurrence_to_dict(occurrence: Occurrence) -> dict[str, Any]:
    return {
        "id": occurrence.id,
        "message": occurrence.message,
        "created_at": occurrence.created_at.isoformat(),
        "environment": occurrence.environment,
        "hostname": occurrence.hostname,
        "request_url": occurrence.request_url,
        "request_method": occurrence.request_method,
        "user": occurrence.user_identifier,
        "backtrace": list(occurrence.backtrace),
        "local_variables": occurrence.local_variables,
        "context": {entry.key: entry.value for entry in occurrence.context},
    }


def parse_time(value: str) -> datetime:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _buckets(buckets: list[TimeBucket]) -> list[dict[str, Any]]:
    return [{"bucket": b.bucket.isoformat(), "count": b.count} for b in buckets]


class CLICommandHandler:
    """Handles CLI commands by delegating to ManagementPort.

    Lookup failures (GroupNotFound) and invalid arguments (ValueError)
    come back as error dictionaries; anything else propagates.
    """

    def __init__(
        self,
        management: ManagementPort,
        aggregator: ApmAggregator | None = None,
    ):
        """Initialize the CLI command handler.

        Args:
            management: ManagementPort implementation to execute commands.
            aggregator: APM aggregator for the performance command.
        """
        self.management = management
        self.aggregator = aggregator

    @staticmethod
    def _error(operation: str, message: str, **fields: Any) -> dict[str, Any]:
        return {"status": "error", "operation": operation, **fields, "message": message}

    async def list_groups(
        self,
        status: str | None = None,
        order: str = "recent",
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        try:
            status_filter = IssueStatus(status) if status else None
            groups, total = await self.management.list_groups(
                status_filter, order, limit, offset
            )
        except ValueError as e:
            logger.error(f"Failed to list issue groups: {e}")
            return self._error("list", str(e))

        return {
            "status": "success",
            "operation": "list",
            "total": total,
            "data": [group_to_dict(g) for g in groups],
        }

    async def get_group_details(
        self, group_id: str, format: str = "json"
    ) -> dict[str, Any]:
        """Retrieve group details.

        Args:
            group_id: Id of the issue group.
            format: Output format ('json', 'text'). Default 'json'.
        """
        if format not in ("json", "text"):
            return self._error("details", f"Unsupported format: {format}")

        try:
            details = await self.management.get_group_details(group_id)
        except GroupNotFound as e:
            logger.error(f"Failed to get issue group details: {e}")
            return self._error("details", str(e), group_id=group_id)

        data = {
            "group": group_to_dict(details.group),
            "occurrences": [occurrence_to_dict(o) for o in details.recent_occurrences],
        }
        return {
            "status": "success",
            "operation": "details",
            "data": data if format == "json" else self._format_details_as_text(data),
        }

    def _format_details_as_text(self, details: dict[str, Any]) -> str:
        group = details["group"]
        lines = []

        lines.append(f"Group ID: {group['id']}")
        lines.append(f"Fingerprint: {group['fingerprint']}")
        lines.append(f"Exception: {group['exception_class']}")
        lines.append(f"Message: {group['message']}")
        lines.append(f"Location: {group['location']}")
        lines.append("")

        lines.append(f"Status: {group['status']}")
        lines.append(f"Occurrences: {group['occurrences_count']}")
        lines.append(f"First Seen: {group['first_seen_at']}")
        lines.append(f"Last Seen: {group['last_seen_at']}")
        lines.append("")

        if details["occurrences"]:
            lines.append("Recent Occurrences:")
            for occ in details["occurrences"]:
                where = f" {occ['request_method']} {occ['request_url']}" if occ["request_url"] else ""
                lines.append(f"  - {occ['created_at']} [{occ['environment']}]{where}")
            lines.append("")

        return "\n".join(lines)

    async def search_groups(self, query: str, limit: int = 50) -> dict[str, Any]:
        groups = await self.management.search_groups(query, limit)
        return {
            "status": "success",
            "operation": "search",
            "query": query,
            "data": [group_to_dict(g) for g in groups],
        }

    async def _change_status(self, operation: str, group_id: str) -> dict[str, Any]:
        actions = {
            "resolve": self.management.resolve_group,
            "unresolve": self.management.unresolve_group,
            "ignore": self.management.ignore_group,
        }
        try:
            group = await actions[operation](group_id)
        except (GroupNotFound, ValueError) as e:
            logger.error(f"Failed to {operation} issue group: {e}")
            return self._error(operation, str(e), group_id=group_id)

        return {
            "status": "success",
            "operation": operation,
            "group_id": group_id,
            "message": f"Issue group {group_id} is now {group.status.value}",
        }

    async def resolve_group(self, group_id: str) -> dict[str, Any]:
        return await self._change_status("resolve", group_id)

    async def unresolve_group(self, group_id: str) -> dict[str, Any]:
        return await self._change_status("unresolve", group_id)

    async def ignore_group(self, group_id: str) -> dict[str, Any]:
        return await self._change_status("ignore", group_id)

    async def chart(
        self,
        group_id: str | None = None,
        period: str = "1d",
        start: str | None = None,
        end: str | None = None,
    ) -> dict[str, Any]:
        """Occurrence counts by period name or by explicit ISO start/end."""
        try:
            if start and end:
                buckets = await self.management.occurrences_in_range(
                    group_id, parse_time(start), parse_time(end)
                )
            else:
                buckets = await self.management.occurrences_over_time(group_id, period)
        except (GroupNotFound, ValueError) as e:
            logger.error(f"Failed to chart occurrences: {e}")
            return self._error("chart", str(e), group_id=group_id)

        return {"status": "success", "operation": "chart", "data": _buckets(buckets)}

    async def create_issue(self, group_id: str) -> dict[str, Any]:
        try:
            result = await self.management.create_issue(group_id)
        except GroupNotFound as e:
            return self._error("create_issue", str(e), group_id=group_id)

        if not result.success:
            return self._error("create_issue", result.error or "unknown error", group_id=group_id)
        return {
            "status": "success",
            "operation": "create_issue",
            "group_id": group_id,
            "issue_number": result.issue_number,
            "issue_url": result.issue_url,
        }

    async def cleanup(self, before: str | None = None) -> dict[str, Any]:
        try:
            cutoff = parse_time(before) if before else None
        except ValueError as e:
            return self._error("cleanup", str(e))

        deleted = await self.management.cleanup(cutoff)
        result: dict[str, Any] = {
            "status": "success",
            "operation": "cleanup",
            "occurrences_deleted": deleted,
        }
        if self.aggregator is not None:
            result["traces_deleted"] = await self.aggregator.cleanup(cutoff)
        return result

    async def get_stats(self) -> dict[str, Any]:
        stats = await self.management.get_stats()
        return {
            "status": "success",
            "operation": "stats",
            "data": {
                "total_groups": stats.total_groups,
                "by_status": dict(stats.by_status),
                "total_occurrences": stats.total_occurrences,
            },
        }

    async def performance(self, period: str = "24h", limit: int = 10) -> dict[str, Any]:
        if self.aggregator is None:
            return self._error("performance", "APM is not enabled")

        summary = await self.aggregator.summary_stats()
        endpoints = await self.aggregator.slowest_endpoints(limit=limit)
        series = await self.aggregator.response_time_series(period)
        return {
            "status": "success",
            "operation": "performance",
            "data": {
                "summary": {
                    "total_requests": summary.total_requests,
                    "avg_duration": summary.avg_duration,
                    "avg_db_runtime": summary.avg_db_runtime,
                    "avg_query_count": summary.avg_query_count,
                    "error_count": summary.error_count,
                    "p95_duration": summary.p95_duration,
                },
                "slowest_endpoints": [
                    {
                        "endpoint": e.endpoint,
                        "request_count": e.request_count,
                        "avg_duration": e.avg_duration,
                        "p50_duration": e.p50_duration,
                        "p95_duration": e.p95_duration,
                        "error_count": e.error_count,
                    }
                    for e in endpoints
                ],
                "response_times": [
                    {
                        "bucket": b.bucket.isoformat(),
                        "avg": b.avg,
                        "min": b.min,
                        "max": b.max,
                        "count": b.count,
                    }
                    for b in series
                ],
            },
        }


async def run_command(
    handler: CLICommandHandler,
    command: str,
    args: dict[str, Any],
) -> dict[str, Any]:
    """Run a CLI command by name.

    Raises:
        ValueError: If command is not recognized.
        KeyError: If a required argument is missing.
    """
    if command == "list":
        return await handler.list_groups(
            args.get("status"),
            args.get("order", "recent"),
            int(args.get("limit", 50)),
            int(args.get("offset", 0)),
        )
    elif command == "details":
        return await handler.get_group_details(args["group_id"], args.get("format", "json"))
    elif command == "search":
        return await handler.search_groups(args["query"], int(args.get("limit", 50)))
    elif command == "resolve":
        return await handler.resolve_group(args["group_id"])
    elif command == "unresolve":
        return await handler.unresolve_group(args["group_id"])
    elif command == "ignore":
        return await handler.ignore_group(args["group_id"])
    elif command == "chart":
        return await handler.chart(
            args.get("group_id"), args.get("period", "1d"), args.get("start"), args.get("end")
        )
    elif command == "create_issue":
        return await handler.create_issue(args["group_id"])
    elif command == "cleanup":
        return await handler.cleanup(args.get("before"))
    elif command == "stats":
        return await handler.get_stats()
    elif command == "performance":
        return await handler.performance(args.get("period", "24h"), int(args.get("limit", 10)))
    else:
        raise ValueError(f"Unknown command: {command}")
