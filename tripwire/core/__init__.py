"""Core domain logic for tripwire.

This package contains zero external dependencies and represents
the pure business logic of the application: grouping exceptions into
issue groups, recording occurrences, deciding on notifications, and
aggregating request timings. All adapters and external integrations are
handled by the adapters package.
"""

from .models import (
    ApmPolicy,
    GroupNotFound,
    IssueGroup,
    IssueStatus,
    NotificationRules,
    Occurrence,
    RequestSample,
    RequestTrace,
    StoreError,
    TrackingContext,
    TrackingPolicy,
    TripwireError,
)

__all__ = [
    "ApmPolicy",
    "GroupNotFound",
    "IssueGroup",
    "IssueStatus",
    "NotificationRules",
    "Occurrence",
    "RequestSample",
    "RequestTrace",
    "StoreError",
    "TrackingContext",
    "TrackingPolicy",
    "TripwireError",
]
