"""SMTP mail delivery running off the event loop.

Messages are handed to a worker thread so the caller never waits on the
SMTP conversation; failures are logged when the background send ends.
"""

import asyncio
import logging
import smtplib
import ssl
from email.message import EmailMessage

from tripwire.core.ports import MailDeliveryPort

logger = logging.getLogger(__name__)


class SMTPMailDelivery(MailDeliveryPort):
    """Background SMTP sender."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        timeout: float = 15.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _send_blocking(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls(context=ssl.create_default_context())
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(message)

    def _on_done(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"SMTP delivery to {self.host}:{self.port} failed: {exc}",
                exc_info=exc,
            )
        else:
            logger.debug(f"SMTP delivery to {self.host}:{self.port} succeeded")

    async def deliver(self, message: EmailMessage) -> None:
        task = asyncio.create_task(asyncio.to_thread(self._send_blocking, message))
        self._pending.add(task)
        task.add_done_callback(self._on_done)

    async def close(self) -> None:
        """Wait for in-flight messages."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
