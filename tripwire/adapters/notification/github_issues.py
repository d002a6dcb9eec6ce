"""GitHub Issues adapter.

Implements IssueTrackerPort by opening a GitHub issue that describes an
issue group: details table, stack trace, local variables, request
context and the source lines around the failure.
"""

import json
import logging
from pathlib import Path
from typing import Any

import httpx

from tripwire.core.models import IssueGroup, IssueResult, Occurrence
from tripwire.core.ports import IssueTrackerPort

from .base import truncate

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
GITHUB_TIMEOUT = httpx.Timeout(30.0, connect=10.0)
STACK_FRAMES_LIMIT = 20
SOURCE_CONTEXT_LINES = 5


class GitHubIssueCreator(IssueTrackerPort):
    """Creates GitHub issues for issue groups."""

    def __init__(
        self,
        repo: str,
        token: str,
        labels: list[str] | None = None,
        app_root: str | None = None,
        api_base_url: str = GITHUB_API_URL,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize GitHub issue creator.

        Args:
            repo: Repository as ``owner/name``.
            token: GitHub token with issue write access.
            labels: Labels applied to created issues.
            app_root: Application root used to read source context.
            api_base_url: Base URL for the GitHub API.
            client: Optional preconfigured HTTP client.
        """
        self.repo = repo
        self.token = token
        self.labels = labels or []
        self.app_root = app_root
        self.api_base_url = api_base_url
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.repo) and bool(self.token)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client.

        Returns:
            httpx.AsyncClient configured with GitHub authentication.
        """
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.api_base_url,
                timeout=GITHUB_TIMEOUT,
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": "2022-11-28",
                },
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def create_issue(
        self, group: IssueGroup, occurrence: Occurrence | None
    ) -> IssueResult:
        """Open an issue for a group; errors are returned, not raised."""
        if not self.configured:
            return IssueResult(error="GitHub not configured")

        try:
            client = await self._get_client()
            response = await client.post(
                f"/repos/{self.repo}/issues",
                json={
                    "title": self.format_title(group),
                    "body": self.format_body(group, occurrence),
                    "labels": self.labels,
                },
            )
        except httpx.HTTPError as e:
            logger.error(
                f"Failed to create GitHub issue: {e}",
                extra={"group_id": group.id},
            )
            return IssueResult(error=f"Failed to create issue: {e}")

        if response.status_code != 201:
            logger.error(
                f"Failed to create GitHub issue: {response.status_code}",
                extra={"group_id": group.id, "response": response.text},
            )
            return IssueResult(
                error=f"GitHub API error: {response.status_code} - {response.text}"
            )

        issue_data = response.json()
        logger.info(
            f"Created GitHub issue #{issue_data['number']}",
            extra={
                "group_id": group.id,
                "issue_number": issue_data["number"],
                "issue_url": issue_data["html_url"],
            },
        )
        return IssueResult(
            success=True,
            issue_number=issue_data["number"],
            issue_url=issue_data["html_url"],
        )

    @staticmethod
    def format_title(group: IssueGroup) -> str:
        return (
            f"[tripwire] {group.exception_class}: "
            f"{truncate(group.sanitized_message, 80)}"
        )

    def format_body(self, group: IssueGroup, occurrence: Occurrence | None) -> str:
        """Format the markdown issue body."""
        lines = []

        lines.append("## Error Details")
        lines.append("")
        lines.append("| Field | Value |")
        lines.append("|-------|-------|")
        lines.append(f"| **Exception** | `{group.exception_class}` |")
        lines.append(f"| **Message** | {group.sanitized_message} |")
        lines.append(f"| **File** | `{group.file_path}:{group.line_number}` |")
        lines.append(f"| **Method** | `{group.method_name}` |")
        lines.append(f"| **Occurrences** | {group.occurrences_count} |")
        lines.append(f"| **First seen** | {group.first_seen_at.isoformat()} |")
        lines.append(f"| **Last seen** | {group.last_seen_at.isoformat()} |")
        lines.append("")

        lines.append("## Stack Trace")
        lines.append("")
        lines.append("```")
        if occurrence is not None and occurrence.backtrace:
            lines.extend(occurrence.backtrace[:STACK_FRAMES_LIMIT])
        else:
            lines.append("No backtrace available")
        lines.append("```")
        lines.append("")

        if occurrence is not None:
            lines.extend(self._local_variables_section(occurrence))
            lines.extend(self._request_section(occurrence))
        lines.extend(self._source_section(group))

        lines.append("---")
        lines.append("_Created by tripwire_")

        return "\n".join(lines)

    @staticmethod
    def _format_value(value: Any) -> str:
        if isinstance(value, (dict, list)):
            return json.dumps(value, default=str)
        if isinstance(value, str):
            return repr(truncate(value, 100))
        return repr(value)

    def _local_variables_section(self, occurrence: Occurrence) -> list[str]:
        if not occurrence.local_variables:
            return []
        lines = ["## Local Variables", "", "```python"]
        for key, value in occurrence.local_variables.items():
            lines.append(f"{key}: {self._format_value(value)}")
        lines.extend(["```", ""])
        return lines

    @staticmethod
    def _request_section(occurrence: Occurrence) -> list[str]:
        if not occurrence.request_url:
            return []
        return [
            "## Request Context",
            "",
            "| Field | Value |",
            "|-------|-------|",
            f"| **URL** | `{occurrence.request_method} {occurrence.request_url}` |",
            f"| **User Agent** | {truncate(occurrence.user_agent, 80)} |",
            f"| **IP** | {occurrence.ip_address or ''} |",
            "",
        ]

    def _source_section(self, group: IssueGroup) -> list[str]:
        """Source lines around the failing line, when the file is readable."""
        if not group.file_path or not self.app_root:
            return []

        path = Path(self.app_root) / group.file_path
        try:
            source = path.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError:
            logger.debug(f"Source context unavailable for {path}")
            return []

        line_number = group.line_number or 1
        start = max(line_number - SOURCE_CONTEXT_LINES, 1)
        end = min(line_number + SOURCE_CONTEXT_LINES, len(source))
        if start > end:
            return []

        lines = ["## Source Context", "", "```python"]
        for n in range(start, end + 1):
            prefix = "→ " if n == line_number else "  "
            lines.append(f"{prefix}{n:>4}: {source[n - 1]}")
        lines.extend(["```", ""])
        return lines
