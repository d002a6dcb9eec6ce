"""Management service: implements ManagementPort for human-initiated operations.

This is a core service that orchestrates management operations (resolve,
unresolve, ignore, get details, list, search, chart, delete, create issue,
retention cleanup) by interacting with the issue store and the optional
issue tracker. It ensures all state changes are properly logged and
auditable.
"""

import logging
from datetime import datetime, timedelta

from .dialects import ERROR_PERIODS, granularity_for_range, resolve_period
from .models import (
    GroupDetails,
    GroupNotFound,
    IssueGroup,
    IssueResult,
    IssueStatus,
    StoreStats,
    TimeBucket,
    TrackingPolicy,
    utcnow,
)
from .ports import IssueStorePort, IssueTrackerPort, ManagementPort

logger = logging.getLogger(__name__)


class ManagementService(ManagementPort):
    """Core implementation of ManagementPort.

    Coordinates management operations with the issue store and the
    external issue tracker. All operations are logged for audit trails.
    """

    def __init__(
        self,
        store: IssueStorePort,
        policy: TrackingPolicy,
        issue_tracker: IssueTrackerPort | None = None,
    ):
        """Initialize the management service.

        Args:
            store: IssueStorePort implementation for persistence.
            policy: Tracking policy (retention settings).
            issue_tracker: Optional IssueTrackerPort for create_issue.
        """
        self.store = store
        self.policy = policy
        self.issue_tracker = issue_tracker

    async def _require_group(self, group_id: str) -> IssueGroup:
        group = await self.store.get_group(group_id)
        if group is None:
            raise GroupNotFound(group_id)
        return group

    async def resolve_group(self, group_id: str) -> IssueGroup:
        """Mark a group as resolved.

        Raises:
            GroupNotFound: If the group doesn't exist.
        """
        group = await self._require_group(group_id)
        group.resolve(utcnow())
        await self.store.set_status(group.id, group.status, group.resolved_at)

        logger.info(
            f"Issue group {group_id} resolved",
            extra={"group_id": group_id, "fingerprint": group.fingerprint},
        )
        return group

    async def unresolve_group(self, group_id: str) -> IssueGroup:
        """Return a group to unresolved.

        Raises:
            GroupNotFound: If the group doesn't exist.
        """
        group = await self._require_group(group_id)
        group.unresolve()
        await self.store.set_status(group.id, group.status, None)

        logger.info(
            f"Issue group {group_id} unresolved",
            extra={"group_id": group_id, "fingerprint": group.fingerprint},
        )
        return group

    async def ignore_group(self, group_id: str) -> IssueGroup:
        """Mark a group ignored; it is never reopened by new occurrences.

        Raises:
            GroupNotFound: If the group doesn't exist.
            ValueError: If the group is already ignored.
        """
        group = await self._require_group(group_id)
        try:
            group.ignore()
        except ValueError as e:
            raise ValueError(f"Cannot ignore issue group: {e}") from e
        await self.store.set_status(group.id, group.status, group.resolved_at)

        logger.info(
            f"Issue group {group_id} ignored",
            extra={"group_id": group_id, "fingerprint": group.fingerprint},
        )
        return group

    async def get_group_details(self, group_id: str, occurrence_limit: int = 10) -> GroupDetails:
        """Retrieve a group with its most recent occurrences.

        Raises:
            GroupNotFound: If the group doesn't exist.
        """
        group = await self._require_group(group_id)
        occurrences = await self.store.recent_occurrences(group_id, limit=occurrence_limit)

        logger.debug(
            f"Retrieved issue group details for {group_id}",
            extra={"group_id": group_id},
        )
        return GroupDetails(group=group, recent_occurrences=tuple(occurrences))

    async def list_groups(
        self,
        status: IssueStatus | None = None,
        order: str = "recent",
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[IssueGroup], int]:
        if order not in ("recent", "frequent"):
            raise ValueError(f"Unknown order {order!r}; expected 'recent' or 'frequent'")
        groups, total = await self.store.list_groups(status, order, limit, offset)

        logger.debug(
            "Listed issue groups" + (f" with status={status.value}" if status else ""),
            extra={"count": len(groups), "total": total},
        )
        return groups, total

    async def search_groups(self, query: str, limit: int = 50) -> list[IssueGroup]:
        return await self.store.search_groups(query.strip(), limit)

    async def occurrences_over_time(
        self, group_id: str | None = None, period: str = "1d"
    ) -> list[TimeBucket]:
        """Occurrence counts for one of the named chart periods.

        Unknown period names fall back to "1d".
        """
        if group_id is not None:
            await self._require_group(group_id)
        window = resolve_period(ERROR_PERIODS, period, "1d")
        return await self.store.occurrence_counts(
            group_id, window.since(utcnow()), None, window.granularity
        )

    async def occurrences_in_range(
        self, group_id: str | None, start: datetime, end: datetime
    ) -> list[TimeBucket]:
        if end < start:
            raise ValueError("end must not be before start")
        if group_id is not None:
            await self._require_group(group_id)
        return await self.store.occurrence_counts(
            group_id, start, end, granularity_for_range(start, end)
        )

    async def delete_group(self, group_id: str) -> None:
        """Delete a group with every occurrence recorded under it.

        Raises:
            GroupNotFound: If the group doesn't exist.
        """
        if not await self.store.delete_group(group_id):
            raise GroupNotFound(group_id)
        logger.info(f"Issue group {group_id} deleted", extra={"group_id": group_id})

    async def create_issue(self, group_id: str) -> IssueResult:
        """Open a ticket for a group in the configured issue tracker.

        Raises:
            GroupNotFound: If the group doesn't exist.
        """
        group = await self._require_group(group_id)
        if self.issue_tracker is None:
            return IssueResult(success=False, error="Issue tracker not configured")

        occurrence = await self.store.latest_occurrence(group_id)
        result = await self.issue_tracker.create_issue(group, occurrence)
        if result.success:
            logger.info(
                f"Created issue #{result.issue_number} for group {group_id}",
                extra={"group_id": group_id, "issue_url": result.issue_url},
            )
        else:
            logger.warning(
                f"Issue creation failed for group {group_id}: {result.error}",
                extra={"group_id": group_id},
            )
        return result

    async def cleanup(self, before: datetime | None = None) -> int:
        """Delete occurrences older than the retention window.

        Returns:
            Number of occurrences deleted; 0 when retention is disabled and
            no explicit cutoff was given.
        """
        if before is None:
            if self.policy.retention_days is None:
                return 0
            before = utcnow() - timedelta(days=self.policy.retention_days)

        deleted = await self.store.cleanup_occurrences(before)
        logger.info(
            f"Deleted {deleted} occurrences older than {before.isoformat()}",
            extra={"deleted": deleted},
        )
        return deleted

    async def get_stats(self) -> StoreStats:
        return await self.store.stats()
