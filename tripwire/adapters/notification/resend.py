"""Resend transactional email API notifier."""

import logging
from collections.abc import Sequence

import httpx

from tripwire.core.models import DeliveryOutcome, IssueGroup, Occurrence

from .base import BaseNotifier
from .rendering import ErrorEmailRenderer

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class ResendNotifier(BaseNotifier):
    """Sends the HTML error email through the Resend HTTP API."""

    name = "resend"

    def __init__(
        self,
        api_key: str,
        recipients: str | Sequence[str],
        sender: str,
        renderer: ErrorEmailRenderer | None = None,
        api_url: str = RESEND_API_URL,
        client: httpx.AsyncClient | None = None,
    ):
        self.renderer = renderer or ErrorEmailRenderer()
        super().__init__(app_name=self.renderer.app_name, client=client)
        self.api_key = api_key
        self.recipients = [recipients] if isinstance(recipients, str) else list(recipients)
        self.sender = sender
        self.api_url = api_url

    async def send(self, group: IssueGroup, occurrence: Occurrence) -> DeliveryOutcome:
        return await self._deliver(
            "POST",
            self.api_url,
            json={
                "from": self.sender,
                "to": self.recipients,
                "subject": self.renderer.subject(group),
                "html": self.renderer.html(group, occurrence),
            },
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
