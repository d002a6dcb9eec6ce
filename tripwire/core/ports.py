"""Port interfaces for the tripwire error tracking system.

These abstract base classes define the boundaries between core
domain logic and external adapters. Implementations live in the
adapters/ package.

Port Interface Categories:

1. **Driven Ports** (core calls out to adapters)
   - IssueStorePort: Persist issue groups and occurrences
   - TraceStorePort: Persist and aggregate request traces
   - NotifierPort: Deliver alerts to a channel
   - MailDeliveryPort: Hand rendered email to a transport
   - IssueTrackerPort: Open tickets in an external tracker
   - LocalsCapturePort: Snapshot local variables at the failing frame
   - RequestPort: Read-only view of the host's request object

2. **Driving Ports** (adapters/external systems call into core)
   - TrackingPort: Entry point for exceptions raised in the host
   - ManagementPort: Human-initiated actions (resolve, ignore, etc.)
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime
from email.message import EmailMessage
from typing import Any

from .models import (
    DeliveryOutcome,
    EndpointStats,
    GroupDetails,
    GroupDraft,
    Granularity,
    IssueGroup,
    IssueResult,
    IssueStatus,
    Occurrence,
    Profile,
    ProfileBlob,
    RequestTrace,
    ResponseTimeBucket,
    StoreStats,
    SummaryStats,
    TimeBucket,
    TrackingContext,
)


# ============================================================================
# DRIVEN PORTS (Core calls out to adapters)
# ============================================================================


class IssueStorePort(ABC):
    """Port for persisting and querying issue groups and their occurrences.

    Implementations must guarantee:
    - At most one group per fingerprint, even under concurrent first-time
      inserts from several processes
    - The occurrence insert and the counter increment commit together
    - Context entries are deleted with their occurrence, and occurrences
      with their group
    """

    @abstractmethod
    async def find_or_create_group(self, draft: GroupDraft, now: datetime) -> IssueGroup:
        """Return the group for a fingerprint, creating it when missing.

        A new group starts with occurrences_count 0. An existing resolved
        group is reopened atomically (status unresolved, resolved_at cleared)
        and returned with ``reopened`` set. Any other existing group only has
        last_seen_at refreshed.

        Args:
            draft: Fingerprint and descriptive fields for a new group.
            now: Timestamp to use for first_seen_at / last_seen_at.

        Returns:
            The persisted IssueGroup.

        Raises:
            StoreError: If the group could not be created nor found after the
                single retry that follows a unique-constraint violation.
        """

    @abstractmethod
    async def get_group(self, group_id: str) -> IssueGroup | None:
        """Retrieve a group by its ID.

        Returns:
            IssueGroup if found, None otherwise.
        """

    @abstractmethod
    async def get_group_by_fingerprint(self, fingerprint: str) -> IssueGroup | None:
        """Retrieve a group by its fingerprint hash.

        Returns:
            IssueGroup if found, None otherwise.
        """

    @abstractmethod
    async def list_groups(
        self,
        status: IssueStatus | None = None,
        order: str = "recent",
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[IssueGroup], int]:
        """List groups, optionally filtered by status.

        Args:
            status: Restrict to this status (optional).
            order: "recent" (last_seen_at desc) or "frequent"
                (occurrences_count desc).
            limit: Page size.
            offset: Rows to skip.

        Returns:
            Tuple of (page of groups, total matching count).
        """

    @abstractmethod
    async def set_status(
        self, group_id: str, status: IssueStatus, resolved_at: datetime | None
    ) -> bool:
        """Persist a status transition.

        Returns:
            True if the group existed and was updated.
        """

    @abstractmethod
    async def mark_notified(self, group_id: str, at: datetime) -> None:
        """Record when the group last produced notifications."""

    @abstractmethod
    async def search_groups(self, query: str, limit: int = 50) -> list[IssueGroup]:
        """Full-text prefix search over class, message and file path.

        A blank query returns groups ordered by last_seen_at.
        """

    @abstractmethod
    async def occurrence_counts(
        self,
        group_id: str | None,
        since: datetime | None,
        until: datetime | None,
        granularity: Granularity,
    ) -> list[TimeBucket]:
        """Count occurrences per time bucket.

        Args:
            group_id: Restrict to one group, or None for all groups.
            since: Inclusive lower bound (optional).
            until: Inclusive upper bound (optional).
            granularity: Bucket width.

        Returns:
            Buckets in ascending order; empty buckets are omitted.
        """

    @abstractmethod
    async def record_occurrence(self, occurrence: Occurrence) -> Occurrence:
        """Persist an occurrence and increment its group's counter.

        The insert of the occurrence, its context entries and the counter
        update happen in one transaction.

        Raises:
            StoreError: If the owning group no longer exists.
        """

    @abstractmethod
    async def get_occurrence(self, occurrence_id: str) -> Occurrence | None:
        """Retrieve one occurrence with its context entries."""

    @abstractmethod
    async def recent_occurrences(self, group_id: str, limit: int = 10) -> list[Occurrence]:
        """Most recent occurrences of a group, newest first."""

    @abstractmethod
    async def latest_occurrence(self, group_id: str) -> Occurrence | None:
        """The newest occurrence of a group, if any."""

    @abstractmethod
    async def delete_group(self, group_id: str) -> bool:
        """Delete a group with its occurrences and context entries.

        Returns:
            True if the group existed.
        """

    @abstractmethod
    async def cleanup_occurrences(self, before: datetime) -> int:
        """Delete occurrences (and their context) created before a cutoff.

        Returns:
            Number of occurrences deleted.
        """

    @abstractmethod
    async def ping(self) -> bool:
        """Whether the storage backend is reachable and initialized."""

    @abstractmethod
    async def stats(self) -> StoreStats:
        """Summary counts for the store."""

    async def close(self) -> None:
        """Release pooled resources. Default: nothing to release."""


class TraceStorePort(ABC):
    """Port for persisting request traces and computing latency aggregates.

    Percentiles use the native aggregate where the backend has one and an
    ORDER BY ... OFFSET lookup otherwise.
    """

    @abstractmethod
    async def save_trace(
        self, trace: RequestTrace, profile: ProfileBlob | None = None
    ) -> RequestTrace:
        """Persist a trace, its spans and optional profile in one transaction."""

    @abstractmethod
    async def get_trace(self, trace_id: str) -> RequestTrace | None:
        """Retrieve a trace with its spans."""

    @abstractmethod
    async def get_profile(self, trace_id: str) -> Profile | None:
        """Retrieve the profile attached to a trace, if any."""

    @abstractmethod
    async def response_time_series(
        self,
        since: datetime | None,
        granularity: Granularity,
        endpoint: str | None = None,
    ) -> list[ResponseTimeBucket]:
        """Average/min/max duration and count per time bucket."""

    @abstractmethod
    async def throughput_series(
        self, since: datetime | None, granularity: Granularity
    ) -> list[TimeBucket]:
        """Request count per time bucket."""

    @abstractmethod
    async def slowest_endpoints(self, since: datetime, limit: int = 20) -> list[EndpointStats]:
        """Endpoints ordered by average duration, slowest first."""

    @abstractmethod
    async def summary_stats(self, since: datetime) -> SummaryStats:
        """Aggregates across all traces since a point in time."""

    @abstractmethod
    async def cleanup_traces(self, before: datetime) -> int:
        """Delete traces (and profiles) created before a cutoff.

        Returns:
            Number of traces deleted.
        """

    async def close(self) -> None:
        """Release pooled resources. Default: nothing to release."""


class NotifierPort(ABC):
    """Port for delivering an alert about an occurrence to one channel.

    Implementations should report transport failures through the returned
    DeliveryOutcome. The dispatcher still guards against raised exceptions
    so one failing channel never prevents the others from being attempted.
    """

    name: str = "notifier"

    def should_notify(self, group: IssueGroup, occurrence: Occurrence) -> bool:
        """Channel-local filter applied after the global rules.

        Returns:
            True to deliver (default).
        """
        return True

    @abstractmethod
    async def send(self, group: IssueGroup, occurrence: Occurrence) -> DeliveryOutcome:
        """Deliver the alert.

        Args:
            group: Authoritative group state (counter already incremented).
            occurrence: The occurrence that triggered the alert.

        Returns:
            DeliveryOutcome describing success or failure.
        """

    async def close(self) -> None:
        """Release transport resources. Default: nothing to release."""


class MailDeliveryPort(ABC):
    """Port for asynchronous email transport."""

    @abstractmethod
    async def deliver(self, message: EmailMessage) -> None:
        """Queue a message for delivery without waiting on the transport.

        Raises:
            Exception: If the message could not be queued.
        """

    async def close(self) -> None:
        """Wait for queued messages and release resources."""


class IssueTrackerPort(ABC):
    """Port for opening tickets in an external issue tracker."""

    @abstractmethod
    async def create_issue(
        self, group: IssueGroup, occurrence: Occurrence | None
    ) -> IssueResult:
        """Open a ticket describing a group.

        Returns:
            IssueResult; failures are reported in ``error``, never raised.
        """

    async def close(self) -> None:
        """Release transport resources. Default: nothing to release."""


class LocalsCapturePort(ABC):
    """Port for snapshotting local variables at the point of failure."""

    @abstractmethod
    def capture(self, exception: BaseException) -> Mapping[str, Any] | None:
        """Return the raw locals of the innermost application frame.

        Returns:
            Name/value mapping, or None when no frame qualifies.
        """


class RequestPort(ABC):
    """Read-only adapter over a host framework's request object."""

    @property
    @abstractmethod
    def method(self) -> str | None:
        """HTTP verb."""

    @property
    @abstractmethod
    def url(self) -> str | None:
        """Full request URL."""

    @property
    @abstractmethod
    def path(self) -> str | None:
        """URL path without query string."""

    @property
    @abstractmethod
    def params(self) -> Mapping[str, Any]:
        """Merged query/body parameters."""

    @property
    @abstractmethod
    def headers(self) -> Mapping[str, str]:
        """Raw request headers (any case, CGI HTTP_ names accepted)."""

    @property
    @abstractmethod
    def user_agent(self) -> str | None:
        """User-Agent header value."""

    @property
    @abstractmethod
    def remote_ip(self) -> str | None:
        """Client IP address."""

    @property
    def session_id(self) -> str | None:
        """Session identifier if the host has sessions."""
        return None


# ============================================================================
# DRIVING PORTS (External systems call into core)
# ============================================================================


class TrackingPort(ABC):
    """Entry point for exceptions observed by the host application.

    Called by framework integrations, background job wrappers or directly by
    application code.
    """

    @abstractmethod
    async def track(
        self,
        exception: BaseException,
        context: TrackingContext | Mapping[str, Any] | None = None,
    ) -> Occurrence | None:
        """Record an exception and trigger notifications.

        Never raises. Returns None when the exception was filtered out or
        when any internal step failed.
        """


class ManagementPort(ABC):
    """Port for human-initiated issue management actions.

    Called by the CLI or a dashboard to manage issue groups.
    """

    @abstractmethod
    async def resolve_group(self, group_id: str) -> IssueGroup:
        """Mark a group resolved.

        Raises:
            GroupNotFound: If the group does not exist.
        """

    @abstractmethod
    async def unresolve_group(self, group_id: str) -> IssueGroup:
        """Return a group to unresolved.

        Raises:
            GroupNotFound: If the group does not exist.
        """

    @abstractmethod
    async def ignore_group(self, group_id: str) -> IssueGroup:
        """Suppress a group.

        Raises:
            GroupNotFound: If the group does not exist.
        """

    @abstractmethod
    async def get_group_details(self, group_id: str, occurrence_limit: int = 10) -> GroupDetails:
        """Group with its recent occurrences.

        Raises:
            GroupNotFound: If the group does not exist.
        """

    @abstractmethod
    async def list_groups(
        self,
        status: IssueStatus | None = None,
        order: str = "recent",
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[IssueGroup], int]:
        """Page through groups."""

    @abstractmethod
    async def search_groups(self, query: str, limit: int = 50) -> list[IssueGroup]:
        """Prefix search over groups."""

    @abstractmethod
    async def occurrences_over_time(
        self, group_id: str | None = None, period: str = "1d"
    ) -> list[TimeBucket]:
        """Chart data for a named period ("1h", "1d", "1w", "all", ...)."""

    @abstractmethod
    async def occurrences_in_range(
        self, group_id: str | None, start: datetime, end: datetime
    ) -> list[TimeBucket]:
        """Chart data for an explicit range with automatic granularity."""

    @abstractmethod
    async def delete_group(self, group_id: str) -> None:
        """Delete a group and everything recorded under it.

        Raises:
            GroupNotFound: If the group does not exist.
        """

    @abstractmethod
    async def create_issue(self, group_id: str) -> IssueResult:
        """Open an external ticket for a group.

        Raises:
            GroupNotFound: If the group does not exist.
        """

    @abstractmethod
    async def cleanup(self, before: datetime | None = None) -> int:
        """Apply the occurrence retention policy.

        Returns:
            Number of occurrences deleted (0 when retention is disabled).
        """

    @abstractmethod
    async def get_stats(self) -> StoreStats:
        """Summary counts for the store."""
