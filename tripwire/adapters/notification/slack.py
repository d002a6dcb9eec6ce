"""Slack incoming-webhook notifier."""

import logging
from typing import Any

import httpx

from tripwire.core.models import DeliveryOutcome, IssueGroup, Occurrence

from .base import BaseNotifier, truncate

logger = logging.getLogger(__name__)

SLACK_TIMEOUT = httpx.Timeout(5.0, connect=5.0)


class SlackNotifier(BaseNotifier):
    """Posts an attachment-style message to a Slack incoming webhook."""

    name = "slack"

    def __init__(
        self,
        webhook_url: str,
        channel: str | None = None,
        username: str = "tripwire",
        icon_emoji: str = ":rotating_light:",
        app_name: str = "tripwire",
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize Slack notifier.

        Args:
            webhook_url: Slack incoming webhook URL.
            channel: Override the webhook's default channel (optional).
            username: Display name for the bot.
            icon_emoji: Emoji used as the bot avatar.
            app_name: Application name shown in the footer.
            client: Pre-configured HTTP client (tests).
        """
        super().__init__(app_name=app_name, timeout=SLACK_TIMEOUT, client=client)
        self.webhook_url = webhook_url
        self.channel = channel
        self.username = username
        self.icon_emoji = icon_emoji

    async def send(self, group: IssueGroup, occurrence: Occurrence) -> DeliveryOutcome:
        return await self._deliver("POST", self.webhook_url, json=self.build_payload(group, occurrence))

    def build_payload(self, group: IssueGroup, occurrence: Occurrence) -> dict[str, Any]:
        data = self.format_message(group, occurrence)

        fields = [
            {"title": "Exception", "value": data["exception_class"], "short": True},
            {"title": "Occurrences", "value": str(data["occurrences"]), "short": True},
            {"title": "Location", "value": data["location"], "short": True},
        ]
        if data["user"]:
            fields.append({"title": "User", "value": data["user"], "short": True})
        if data["url"]:
            fields.append(
                {
                    "title": "URL",
                    "value": f"{data['method']} {truncate(data['url'], 80)}",
                    "short": False,
                }
            )

        attachment: dict[str, Any] = {
            "color": "warning" if data["reopened"] else "danger",
            "title": data["message"],
            "fields": fields,
            "footer": data["title"],
            "ts": int(occurrence.created_at.timestamp()),
        }
        if data["reopened"]:
            attachment["pretext"] = (
                ":recycle: This error was previously resolved and has reoccurred."
            )

        payload: dict[str, Any] = {
            "username": self.username,
            "icon_emoji": self.icon_emoji,
            "attachments": [attachment],
        }
        if self.channel:
            payload["channel"] = self.channel
        return payload
