"""Domain models for the tripwire error tracking system.

All models in this module use only Python standard library types,
ensuring zero external dependencies in the core domain.
"""

import base64
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


# ============================================================================
# Errors
# ============================================================================


class TripwireError(Exception):
    """Base class for errors raised by tripwire components."""


class StoreError(TripwireError):
    """Storage layer failed in a way the caller cannot recover from."""


class GroupNotFound(TripwireError, LookupError):
    """A management operation referenced an unknown issue group."""

    def __init__(self, group_id: str):
        super().__init__(f"Issue group {group_id} not found")
        self.group_id = group_id


# ============================================================================
# Error tracking
# ============================================================================


class IssueStatus(Enum):
    """Lifecycle states for an issue group.

    - UNRESOLVED: default state, and the state a resolved group returns to
      when a new occurrence arrives (auto-reopen)
    - RESOLVED: marked fixed by an operator
    - IGNORED: suppressed by an operator; never reopened automatically
    """

    UNRESOLVED = "unresolved"
    RESOLVED = "resolved"
    IGNORED = "ignored"


@dataclass(frozen=True)
class SourceLocation:
    """Where in the application an exception was raised."""

    file_path: str | None = None
    line_number: int | None = None
    method_name: str | None = None

    @property
    def label(self) -> str:
        parts = [str(p) for p in (self.file_path, self.line_number) if p is not None]
        return ":".join(parts) if parts else "unknown"


@dataclass(frozen=True)
class GroupDraft:
    """Everything needed to create an issue group for a new fingerprint."""

    fingerprint: str
    exception_class: str
    sanitized_message: str
    location: SourceLocation = field(default_factory=SourceLocation)

    def __post_init__(self) -> None:
        if not self.fingerprint:
            raise ValueError("fingerprint must be a non-empty string")


@dataclass
class IssueGroup:
    """A deduplicated error identity.

    Represents a class of errors, not a single occurrence. Tracks lifecycle,
    the occurrence counter and notification bookkeeping.

    Note: This dataclass is intentionally mutable so services can apply
    status transitions before handing the group back to the store.
    """

    id: str
    fingerprint: str
    exception_class: str
    sanitized_message: str
    file_path: str | None
    line_number: int | None
    method_name: str | None
    occurrences_count: int
    first_seen_at: datetime
    last_seen_at: datetime
    status: IssueStatus = IssueStatus.UNRESOLVED
    resolved_at: datetime | None = None
    last_notified_at: datetime | None = None
    # Set by the store when this very lookup moved the group from resolved
    # back to unresolved. Not persisted.
    reopened: bool = field(default=False, compare=False)

    def __post_init__(self) -> None:
        """Validate group invariants on creation or deserialization."""
        if self.occurrences_count < 0:
            raise ValueError(
                f"occurrences_count must be >= 0, got {self.occurrences_count}"
            )
        if self.last_seen_at < self.first_seen_at:
            raise ValueError(
                f"last_seen_at ({self.last_seen_at}) cannot be before "
                f"first_seen_at ({self.first_seen_at})"
            )

    @property
    def recently_reopened(self) -> bool:
        """True when the group came back after being resolved.

        Persisted form: resolved_at is set and the group was seen after it.
        The auto-reopen path clears resolved_at, so the transient ``reopened``
        flag carries the same fact for the remainder of that tracking call.
        """
        if self.reopened:
            return True
        return self.resolved_at is not None and self.last_seen_at > self.resolved_at

    @property
    def location(self) -> SourceLocation:
        return SourceLocation(self.file_path, self.line_number, self.method_name)

    @property
    def location_label(self) -> str:
        return self.location.label

    @property
    def display_name(self) -> str:
        message = self.sanitized_message
        if len(message) > 100:
            message = message[:97] + "..."
        return f"{self.exception_class}: {message}"

    def resolve(self, now: datetime) -> None:
        """Transition group to resolved status."""
        self.status = IssueStatus.RESOLVED
        self.resolved_at = now

    def unresolve(self) -> None:
        """Transition group back to unresolved status."""
        self.status = IssueStatus.UNRESOLVED
        self.resolved_at = None

    def ignore(self) -> None:
        """Transition group to ignored status."""
        if self.status == IssueStatus.IGNORED:
            raise ValueError("Issue group is already ignored")
        self.status = IssueStatus.IGNORED


@dataclass(frozen=True)
class RequestSnapshot:
    """Filtered view of the request that was being served."""

    method: str | None = None
    url: str | None = None
    params: dict[str, Any] | MappingProxyType[str, Any] = field(default_factory=dict)
    headers: dict[str, str] | MappingProxyType[str, str] = field(default_factory=dict)
    user_agent: str | None = None
    ip_address: str | None = None
    session_id: str | None = None

    def __post_init__(self) -> None:
        """Convert mutable dicts to read-only proxies."""
        if isinstance(self.params, dict):
            object.__setattr__(self, "params", MappingProxyType(self.params))
        if isinstance(self.headers, dict):
            object.__setattr__(self, "headers", MappingProxyType(self.headers))


@dataclass(frozen=True)
class Actor:
    """The user on whose behalf the failing code ran."""

    id: str | None
    type: str | None = None

    @property
    def identifier(self) -> str | None:
        if self.id is None:
            return None
        return f"{self.type or 'User'}#{self.id}"


@dataclass(frozen=True)
class HostInfo:
    """Process metadata recorded with every occurrence."""

    environment: str
    hostname: str
    process_id: str


@dataclass(frozen=True)
class ContextEntry:
    """Caller-supplied key/value metadata attached to an occurrence."""

    key: str
    value: str

    def __post_init__(self) -> None:
        if not self.key or not self.key.strip():
            raise ValueError("context key must be a non-empty string")


@dataclass(frozen=True)
class Occurrence:
    """One concrete exception event. Immutable once created."""

    id: str
    group_id: str
    exception_class: str
    message: str
    backtrace: tuple[str, ...]
    created_at: datetime
    environment: str
    hostname: str
    process_id: str
    local_variables: dict[str, Any] | MappingProxyType[str, Any] | None = None
    request: RequestSnapshot | None = None
    actor: Actor | None = None
    context: tuple[ContextEntry, ...] = ()

    def __post_init__(self) -> None:
        """Convert the locals dict to a read-only proxy."""
        if isinstance(self.local_variables, dict):
            object.__setattr__(
                self, "local_variables", MappingProxyType(self.local_variables)
            )

    @property
    def request_url(self) -> str | None:
        return self.request.url if self.request else None

    @property
    def request_method(self) -> str | None:
        return self.request.method if self.request else None

    @property
    def ip_address(self) -> str | None:
        return self.request.ip_address if self.request else None

    @property
    def user_agent(self) -> str | None:
        return self.request.user_agent if self.request else None

    @property
    def user_identifier(self) -> str | None:
        return self.actor.identifier if self.actor else None

    def app_backtrace_lines(self, app_root: str | None) -> list[str]:
        """Frames that belong to the application rather than its dependencies."""
        from .fingerprint import is_app_frame

        return [line for line in self.backtrace if is_app_frame(line, app_root)]


@dataclass(frozen=True)
class NotificationRules:
    """Which tracking events should trigger notifications."""

    on_first_occurrence: bool = True
    on_reopen: bool = True
    on_threshold: tuple[int, ...] = (10, 50, 100, 500, 1000)
    critical_exceptions: tuple[str, ...] = ()
    notify_in_environments: tuple[str, ...] = ("production",)


DEFAULT_IGNORED_EXCEPTIONS: tuple[str, ...] = (
    "KeyboardInterrupt",
    "SystemExit",
    "GeneratorExit",
    "asyncio.exceptions.CancelledError",
)

DEFAULT_IGNORED_USER_AGENTS: tuple[str, ...] = (
    r"bot",
    r"crawler",
    r"spider",
    r"Googlebot",
    r"Bingbot",
    r"Slurp",
)

DEFAULT_SANITIZE_FIELDS: tuple[str, ...] = (
    "password",
    "password_confirmation",
    "token",
    "api_key",
    "secret",
    "access_token",
    "refresh_token",
)


@dataclass(frozen=True)
class TrackingPolicy:
    """Immutable tracking configuration, built once at process start."""

    environment: str = "production"
    app_name: str = "tripwire"
    app_root: str | None = None
    ignored_exceptions: tuple[str, ...] = DEFAULT_IGNORED_EXCEPTIONS
    ignored_user_agents: tuple[str, ...] = DEFAULT_IGNORED_USER_AGENTS
    middleware_ignore_paths: tuple[str, ...] = ("/assets", "/up", "/health")
    notification_cooldown: timedelta | None = timedelta(minutes=5)
    rules: NotificationRules = field(default_factory=NotificationRules)
    backtrace_lines_limit: int = 50
    retention_days: int | None = 90
    filter_parameters: tuple[str, ...] = DEFAULT_SANITIZE_FIELDS

    def __post_init__(self) -> None:
        if self.backtrace_lines_limit <= 0:
            raise ValueError("backtrace_lines_limit must be positive")
        if self.retention_days is not None and self.retention_days <= 0:
            raise ValueError("retention_days must be positive or None")


@dataclass(frozen=True)
class TrackingContext:
    """Per-call input to the tracker.

    ``request`` is a RequestPort adapter, ``user`` any object exposing an
    ``id`` attribute (or an Actor), ``local_variables`` an already
    serialized name/value mapping.
    """

    request: Any = None
    user: Any = None
    custom_data: Mapping[str, Any] = field(default_factory=dict)
    local_variables: Mapping[str, Any] | None = None

    @classmethod
    def coerce(cls, context: "TrackingContext | Mapping[str, Any] | None") -> "TrackingContext":
        if context is None:
            return cls()
        if isinstance(context, TrackingContext):
            return context
        return cls(
            request=context.get("request"),
            user=context.get("user"),
            custom_data=context.get("custom_data") or {},
            local_variables=context.get("local_variables"),
        )


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of handing one notification to one channel."""

    channel: str
    ok: bool
    status_code: int | None = None
    detail: str | None = None


@dataclass(frozen=True)
class IssueResult:
    """Result of creating a ticket in an external issue tracker."""

    success: bool = False
    issue_number: int | None = None
    issue_url: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class StoreStats:
    """Statistics about the issue store."""

    total_groups: int
    by_status: Mapping[str, int]  # status -> count (immutable at runtime)
    total_occurrences: int

    def __post_init__(self) -> None:
        """Convert mutable dicts to immutable proxies."""
        object.__setattr__(self, "by_status", MappingProxyType(dict(self.by_status)))


@dataclass(frozen=True)
class GroupDetails:
    """An issue group with its most recent occurrences.

    WARNING: the contained IssueGroup is mutable and may change after this
    object is created.
    """

    group: IssueGroup
    recent_occurrences: tuple[Occurrence, ...]


# ============================================================================
# Time bucketing
# ============================================================================


class Granularity(Enum):
    """Width of a time bucket used for charting."""

    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"


@dataclass(frozen=True)
class TimeBucket:
    """Count of rows whose timestamp falls in one bucket."""

    bucket: datetime
    count: int


# ============================================================================
# APM
# ============================================================================


@dataclass(frozen=True)
class Span:
    """A timed sub-operation within one sampled request."""

    type: str
    description: str
    start_offset_ms: float
    duration_ms: float
    metadata: dict[str, Any] | MappingProxyType[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Convert metadata dict to read-only proxy."""
        if isinstance(self.metadata, dict):
            object.__setattr__(self, "metadata", MappingProxyType(self.metadata))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "description": self.description,
            "start_offset_ms": self.start_offset_ms,
            "duration_ms": self.duration_ms,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Span":
        return cls(
            type=str(data["type"]),
            description=str(data.get("description", "")),
            start_offset_ms=float(data.get("start_offset_ms", 0.0)),
            duration_ms=float(data.get("duration_ms", 0.0)),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class ProfileBlob:
    """Opaque profiler output captured for one request."""

    data: bytes
    mode: str = "cpu"
    samples: int = 0
    interval_ms: float = 1.0

    def encode(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


@dataclass(frozen=True)
class Profile:
    """A stored profile attached to a request trace."""

    id: str
    request_trace_id: str
    profile_data: str  # base64
    mode: str
    samples: int
    interval_ms: float | None
    created_at: datetime

    def decode(self) -> bytes:
        return base64.b64decode(self.profile_data)


@dataclass(frozen=True)
class RequestSample:
    """Timing payload for one completed request, as reported by the host."""

    endpoint: str
    http_method: str
    path: str | None
    duration_ms: float
    status: int | None = None
    db_runtime_ms: float | None = None
    view_runtime_ms: float | None = None
    db_query_count: int | None = None
    had_exception: bool = False
    spans: tuple[Span, ...] | None = None
    profile: ProfileBlob | None = None


@dataclass(frozen=True)
class RequestTrace:
    """One sampled request's performance snapshot."""

    id: str
    endpoint: str
    http_method: str
    path: str | None
    status: int | None
    duration_ms: float
    db_runtime_ms: float | None
    view_runtime_ms: float | None
    db_query_count: int
    created_at: datetime
    spans: tuple[Span, ...] | None = None
    has_profile: bool = False


@dataclass(frozen=True)
class ApmPolicy:
    """Immutable APM configuration, built once at process start."""

    enabled: bool = False
    sample_rate: float = 1.0
    retention_days: int = 30
    capture_spans: bool = True
    max_spans: int = 500
    ignore_paths: tuple[str, ...] = ("/assets", "/up", "/health")

    def __post_init__(self) -> None:
        if not 0.0 <= self.sample_rate <= 1.0:
            raise ValueError(
                f"sample_rate must be between 0.0 and 1.0, got {self.sample_rate}"
            )
        if self.retention_days <= 0:
            raise ValueError("retention_days must be positive")
        if self.max_spans <= 0:
            raise ValueError("max_spans must be positive")


@dataclass(frozen=True)
class ResponseTimeBucket:
    """Latency aggregates for one time bucket."""

    bucket: datetime
    avg: float | None
    min: float | None
    max: float | None
    count: int


@dataclass(frozen=True)
class EndpointStats:
    """Latency aggregates for one endpoint."""

    endpoint: str
    request_count: int
    avg_duration: float
    avg_db_runtime: float
    avg_query_count: float
    p50_duration: float
    p95_duration: float
    error_count: int


@dataclass(frozen=True)
class SummaryStats:
    """Latency aggregates across all endpoints."""

    total_requests: int
    avg_duration: float
    avg_db_runtime: float
    avg_query_count: float
    error_count: int
    p95_duration: float


def round1(value: float | None) -> float | None:
    """Round an aggregate to one decimal place, passing None through."""
    if value is None:
        return None
    return round(float(value), 1)
