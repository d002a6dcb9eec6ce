"""Shared plumbing for HTTP notifier channels.

Every channel formats the same summary of a group and occurrence, talks
HTTP through a lazily created httpx.AsyncClient, and reports transport
failures as a DeliveryOutcome instead of raising.
"""

import logging
from typing import Any

import httpx
from markupsafe import escape

from tripwire.core.models import DeliveryOutcome, IssueGroup, Occurrence
from tripwire.core.ports import NotifierPort

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(10.0, connect=5.0)
MESSAGE_PREVIEW_LENGTH = 200


def truncate(text: str | None, limit: int) -> str:
    """Cut text to ``limit`` characters, marking the cut with '...'."""
    text = text or ""
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def escape_html(text: object) -> str:
    if text is None:
        return ""
    return str(escape(text))


class BaseNotifier(NotifierPort):
    """Base class for notifier channels."""

    name = "base"

    def __init__(
        self,
        app_name: str = "tripwire",
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.app_name = app_name
        self.timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def status_emoji(group: IssueGroup) -> str:
        if group.recently_reopened:
            return "🔄"
        return "🚨" if group.occurrences_count == 1 else "⚠️"

    def format_message(self, group: IssueGroup, occurrence: Occurrence) -> dict[str, Any]:
        """Channel-neutral summary of what happened."""
        return {
            "title": f"Error in {self.app_name}",
            "exception_class": group.exception_class,
            "message": truncate(group.sanitized_message, MESSAGE_PREVIEW_LENGTH),
            "occurrences": group.occurrences_count,
            "status": group.status.value,
            "location": group.location_label,
            "user": occurrence.user_identifier,
            "url": occurrence.request_url,
            "method": occurrence.request_method,
            "timestamp": occurrence.created_at.isoformat(),
            "reopened": group.recently_reopened,
        }

    async def _deliver(self, method: str, url: str, **kwargs: Any) -> DeliveryOutcome:
        """Issue the HTTP request and translate the result."""
        try:
            client = await self._get_client()
            response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(
                f"{self.name} notification failed: {e}",
                extra={"channel": self.name},
            )
            return DeliveryOutcome(channel=self.name, ok=False, detail=str(e))

        if response.is_success:
            return DeliveryOutcome(channel=self.name, ok=True, status_code=response.status_code)

        logger.error(
            f"{self.name} notification failed: HTTP {response.status_code}",
            extra={"channel": self.name, "response": response.text[:500]},
        )
        return DeliveryOutcome(
            channel=self.name,
            ok=False,
            status_code=response.status_code,
            detail=response.text[:500],
        )
