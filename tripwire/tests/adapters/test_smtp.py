"""Tests for background SMTP delivery."""

import logging
from email.message import EmailMessage

import pytest

from tripwire.adapters.mail import smtp
from tripwire.adapters.mail.smtp import SMTPMailDelivery


class FakeSMTP:
    """Stands in for smtplib.SMTP and records the conversation."""

    instances: list["FakeSMTP"] = []
    fail_with: Exception | None = None

    def __init__(self, host, port, timeout):
        self.host, self.port, self.timeout = host, port, timeout
        self.calls: list[str] = []
        self.sent: list[EmailMessage] = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.calls.append("quit")
        return False

    def starttls(self, context=None):
        self.calls.append("starttls")

    def login(self, username, password):
        self.calls.append(f"login:{username}")

    def send_message(self, message):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        self.calls.append("send")
        self.sent.append(message)


@pytest.fixture(autouse=True)
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(smtp.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def message() -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = "[ERROR] shop: KeyError"
    msg["To"] = "ops@example.com"
    msg.set_content("body")
    return msg


async def test_delivers_in_background():
    delivery = SMTPMailDelivery("smtp.example.com", 2525, username="u", password="p")

    await delivery.deliver(message())
    await delivery.close()

    [server] = FakeSMTP.instances
    assert (server.host, server.port) == ("smtp.example.com", 2525)
    assert server.calls == ["starttls", "login:u", "send", "quit"]
    assert delivery.pending == 0


async def test_plain_connection_without_credentials():
    delivery = SMTPMailDelivery("localhost", 25, use_tls=False)

    await delivery.deliver(message())
    await delivery.close()

    assert FakeSMTP.instances[0].calls == ["send", "quit"]


async def test_failure_is_logged_not_raised(caplog):
    FakeSMTP.fail_with = OSError("connection reset")
    delivery = SMTPMailDelivery("smtp.example.com")

    with caplog.at_level(logging.ERROR, logger="tripwire.adapters.mail.smtp"):
        await delivery.deliver(message())
        await delivery.close()

    assert "connection reset" in caplog.text
