"""Channel wrapper that alerts at most once per issue group."""

from collections import OrderedDict

from tripwire.core.models import DeliveryOutcome, IssueGroup, Occurrence
from tripwire.core.ports import NotifierPort

DEFAULT_MAX_GROUPS = 10_000


class OncePerGroupNotifier(NotifierPort):
    """Forwards to ``inner`` only the first time a group reaches this channel.

    Seen groups are remembered in process memory, least recently seen first
    out once ``max_groups`` is exceeded. A restart or an eviction lets the
    group alert once more.
    """

    def __init__(self, inner: NotifierPort, max_groups: int = DEFAULT_MAX_GROUPS):
        if max_groups <= 0:
            raise ValueError("max_groups must be positive")
        self.inner = inner
        self.name = f"{inner.name}:once"
        self.max_groups = max_groups
        self._seen: OrderedDict[str, None] = OrderedDict()

    def should_notify(self, group: IssueGroup, occurrence: Occurrence) -> bool:
        if group.id in self._seen:
            self._seen.move_to_end(group.id)
            return False
        return self.inner.should_notify(group, occurrence)

    async def send(self, group: IssueGroup, occurrence: Occurrence) -> DeliveryOutcome:
        self._seen[group.id] = None
        self._seen.move_to_end(group.id)
        while len(self._seen) > self.max_groups:
            self._seen.popitem(last=False)
        return await self.inner.send(group, occurrence)

    async def close(self) -> None:
        await self.inner.close()
