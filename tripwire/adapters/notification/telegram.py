"""Telegram bot notifier."""

import logging

import httpx

from tripwire.core.models import DeliveryOutcome, IssueGroup, Occurrence

from .base import BaseNotifier, escape_html, truncate

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"


class TelegramNotifier(BaseNotifier):
    """Sends an HTML-formatted message through the Telegram Bot API."""

    name = "telegram"

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        app_name: str = "tripwire",
        api_base_url: str = TELEGRAM_API_URL,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(app_name=app_name, client=client)
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.api_base_url = api_base_url.rstrip("/")

    async def send(self, group: IssueGroup, occurrence: Occurrence) -> DeliveryOutcome:
        return await self._deliver(
            "POST",
            f"{self.api_base_url}/bot{self.bot_token}/sendMessage",
            data={
                "chat_id": self.chat_id,
                "text": self.build_text(group, occurrence),
                "parse_mode": "HTML",
                "disable_web_page_preview": "true",
            },
        )

    def build_text(self, group: IssueGroup, occurrence: Occurrence) -> str:
        data = self.format_message(group, occurrence)

        lines = [
            f"{self.status_emoji(group)} <b>{escape_html(data['title'])}</b>",
            "",
            f"<b>Type:</b> <code>{escape_html(data['exception_class'])}</code>",
            f"<b>Message:</b> {escape_html(data['message'])}",
        ]
        if data["user"]:
            lines.append(f"<b>User:</b> {escape_html(data['user'])}")
        lines.append(f"<b>Count:</b> {data['occurrences']}")
        lines.append(f"<b>Time:</b> {occurrence.created_at.strftime('%Y-%m-%d %H:%M')}")
        lines.append("")
        lines.append(f"<b>Location:</b> {escape_html(data['location'])}")
        if data["url"]:
            lines.append(
                f"<b>URL:</b> {escape_html(data['method'])} {escape_html(truncate(data['url'], 100))}"
            )
        if data["reopened"]:
            lines.append("")
            lines.append("<i>This error was previously resolved and has reoccurred.</i>")

        return "\n".join(lines)
