"""Notification adapters for alerting developers about errors.

Implementations support multiple output channels:
- Slack (incoming webhook)
- Telegram (bot API)
- Generic JSON webhook
- Email (SMTP delivery or the Resend API)
- GitHub issues (on demand, via IssueTrackerPort)
"""

from .email import EmailNotifier
from .github_issues import GitHubIssueCreator
from .once_per_group import OncePerGroupNotifier
from .rendering import ErrorEmailRenderer
from .resend import ResendNotifier
from .slack import SlackNotifier
from .telegram import TelegramNotifier
from .webhook import WebhookNotifier

__all__ = [
    "EmailNotifier",
    "ErrorEmailRenderer",
    "GitHubIssueCreator",
    "OncePerGroupNotifier",
    "ResendNotifier",
    "SlackNotifier",
    "TelegramNotifier",
    "WebhookNotifier",
]
