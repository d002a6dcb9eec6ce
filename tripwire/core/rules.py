"""Notification rules for issue groups.

This module implements the business rules that decide whether a freshly
recorded occurrence should produce notifications.
"""

from datetime import datetime, timedelta

from .models import IssueGroup, NotificationRules, Occurrence, utcnow


class NotificationRuleEvaluator:
    """Decides whether an occurrence is worth telling anyone about.

    Pure decision logic, no side effects. Gates are evaluated in order and
    the first one that decides wins.
    """

    def __init__(
        self,
        rules: NotificationRules,
        cooldown: timedelta | None = timedelta(minutes=5),
        channel_count: int = 0,
    ):
        self.rules = rules
        self.cooldown = cooldown
        self.channel_count = channel_count

    def should_notify(
        self,
        group: IssueGroup,
        occurrence: Occurrence,
        now: datetime | None = None,
    ) -> bool:
        """Should this occurrence be delivered to the notifier channels?

        Considers, in order:
        - Nothing to do without channels
        - Only configured environments notify
        - Cooldown since the last notification (applies to every rule below)
        - Critical exception classes
        - First occurrence, reopen, or an exact threshold count

        Args:
            group: Authoritative group state, counter already incremented.
            occurrence: The occurrence just recorded.
            now: Evaluation time (defaults to the current UTC time).
        """
        if self.channel_count <= 0:
            return False

        if occurrence.environment not in self.rules.notify_in_environments:
            return False

        now = now or utcnow()
        if self.in_cooldown(group, now):
            return False

        if group.exception_class in self.rules.critical_exceptions:
            return True

        if self.rules.on_first_occurrence and group.occurrences_count == 1:
            return True

        if self.rules.on_reopen and group.recently_reopened:
            return True

        return group.occurrences_count in self.rules.on_threshold

    def in_cooldown(self, group: IssueGroup, now: datetime) -> bool:
        if self.cooldown is None or group.last_notified_at is None:
            return False
        return now - group.last_notified_at < self.cooldown
