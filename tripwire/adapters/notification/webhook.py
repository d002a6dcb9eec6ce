"""Generic JSON webhook notifier."""

import logging
from collections.abc import Mapping
from typing import Any

import httpx

from tripwire.core.models import DeliveryOutcome, IssueGroup, Occurrence, utcnow

from .base import BaseNotifier, truncate

logger = logging.getLogger(__name__)


class WebhookNotifier(BaseNotifier):
    """POSTs (or PUTs) a JSON event describing the occurrence to a URL."""

    name = "webhook"

    def __init__(
        self,
        url: str,
        method: str = "POST",
        headers: Mapping[str, str] | None = None,
        app_name: str = "tripwire",
        environment: str = "production",
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize webhook notifier.

        Raises:
            ValueError: If method is not POST or PUT.
        """
        super().__init__(app_name=app_name, client=client)
        method = method.upper()
        if method not in ("POST", "PUT"):
            raise ValueError(f"Unsupported HTTP method: {method}")
        self.url = url
        self.method = method
        self.headers = dict(headers or {})
        self.environment = environment

    async def send(self, group: IssueGroup, occurrence: Occurrence) -> DeliveryOutcome:
        return await self._deliver(
            self.method,
            self.url,
            json=self.build_payload(group, occurrence),
            headers={"Content-Type": "application/json", **self.headers},
        )

    def build_payload(self, group: IssueGroup, occurrence: Occurrence) -> dict[str, Any]:
        return {
            "event": "error.occurred",
            "timestamp": utcnow().isoformat(),
            "app": self.app_name,
            "environment": self.environment,
            "error_group": {
                "id": group.id,
                "fingerprint": group.fingerprint,
                "exception_class": group.exception_class,
                "message": group.sanitized_message,
                "status": group.status.value,
                "occurrences_count": group.occurrences_count,
                "first_seen_at": group.first_seen_at.isoformat(),
                "last_seen_at": group.last_seen_at.isoformat(),
                "file_path": group.file_path,
                "line_number": group.line_number,
                "recently_reopened": group.recently_reopened,
            },
            "occurrence": {
                "id": occurrence.id,
                "message": truncate(occurrence.message, 500),
                "request_url": occurrence.request_url,
                "request_method": occurrence.request_method,
                "user_id": occurrence.actor.id if occurrence.actor else None,
                "user_identifier": occurrence.user_identifier,
                "ip_address": occurrence.ip_address,
                "created_at": occurrence.created_at.isoformat(),
            },
        }
