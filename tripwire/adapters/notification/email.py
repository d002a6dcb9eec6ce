"""Email notifier that hands rendered messages to a mail delivery facility."""

import logging
from collections.abc import Sequence
from email.message import EmailMessage

from tripwire.core.models import DeliveryOutcome, IssueGroup, Occurrence
from tripwire.core.ports import MailDeliveryPort, NotifierPort

from .rendering import ErrorEmailRenderer

logger = logging.getLogger(__name__)


class EmailNotifier(NotifierPort):
    """Queues an HTML error email; delivery happens in the background."""

    name = "email"

    def __init__(
        self,
        recipients: str | Sequence[str],
        mail_delivery: MailDeliveryPort,
        sender: str | None = None,
        renderer: ErrorEmailRenderer | None = None,
    ):
        """Initialize email notifier.

        Args:
            recipients: One address or a list of addresses.
            mail_delivery: Transport the message is queued on.
            sender: From address; defaults to ``errors@localhost``.
            renderer: Template renderer (app name and root for the body).
        """
        self.recipients = [recipients] if isinstance(recipients, str) else list(recipients)
        self.mail_delivery = mail_delivery
        self.sender = sender or "errors@localhost"
        self.renderer = renderer or ErrorEmailRenderer()

    def build_message(self, group: IssueGroup, occurrence: Occurrence) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = self.renderer.subject(group)
        msg["From"] = self.sender
        msg["To"] = ", ".join(self.recipients)
        msg.set_content(
            f"{group.exception_class}: {group.sanitized_message}\n"
            f"Occurrences: {group.occurrences_count}\n"
            f"Location: {group.location_label}\n"
        )
        msg.add_alternative(self.renderer.html(group, occurrence), subtype="html")
        return msg

    async def send(self, group: IssueGroup, occurrence: Occurrence) -> DeliveryOutcome:
        try:
            await self.mail_delivery.deliver(self.build_message(group, occurrence))
        except Exception as e:
            logger.error(f"Email notification failed: {e}", extra={"channel": self.name})
            return DeliveryOutcome(channel=self.name, ok=False, detail=str(e))
        return DeliveryOutcome(channel=self.name, ok=True, detail="queued")

    async def close(self) -> None:
        await self.mail_delivery.close()
