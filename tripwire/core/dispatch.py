"""Fan-out of one occurrence to every configured notifier channel."""

import logging
from collections.abc import Sequence

from .models import DeliveryOutcome, IssueGroup, Occurrence, utcnow
from .ports import IssueStorePort, NotifierPort

logger = logging.getLogger(__name__)


class NotifierDispatcher:
    """Delivers an occurrence to each channel in turn.

    Channels are attempted sequentially in configuration order. A failing
    channel is logged and skipped; it never prevents the remaining channels
    from being attempted, and never propagates to the caller.
    """

    def __init__(self, notifiers: Sequence[NotifierPort], store: IssueStorePort):
        self.notifiers = list(notifiers)
        self.store = store

    async def notify(self, group: IssueGroup, occurrence: Occurrence) -> list[DeliveryOutcome]:
        """Send to every channel that accepts this occurrence.

        After all channels were attempted the group's last_notified_at is
        recorded exactly once, whatever the individual outcomes were.

        Returns:
            One DeliveryOutcome per channel that was attempted.
        """
        if not self.notifiers:
            return []

        outcomes: list[DeliveryOutcome] = []
        for notifier in self.notifiers:
            try:
                if not notifier.should_notify(group, occurrence):
                    continue
                outcome = await notifier.send(group, occurrence)
            except Exception as e:
                logger.error(
                    f"Notifier {notifier.name} failed: {e}",
                    extra={"channel": notifier.name, "group_id": group.id},
                    exc_info=True,
                )
                outcome = DeliveryOutcome(channel=notifier.name, ok=False, detail=str(e))
            outcomes.append(outcome)

        now = utcnow()
        try:
            await self.store.mark_notified(group.id, now)
            group.last_notified_at = now
        except Exception as e:
            logger.error(
                f"Failed to record notification time for group {group.id}: {e}",
                extra={"group_id": group.id},
                exc_info=True,
            )

        return outcomes

    async def close(self) -> None:
        for notifier in self.notifiers:
            try:
                await notifier.close()
            except Exception as e:
                logger.warning(f"Error closing notifier {notifier.name}: {e}")
