"""Small constructors for domain objects used across the test suite."""

import uuid
from datetime import datetime, timedelta, timezone

from tripwire.core.models import IssueGroup, IssueStatus, Occurrence, RequestSnapshot

BASE_TIME = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_group(
    occurrences_count: int = 1,
    status: IssueStatus = IssueStatus.UNRESOLVED,
    exception_class: str = "ZeroDivisionError",
    message: str = "division by zero",
    last_notified_at: datetime | None = None,
    resolved_at: datetime | None = None,
    last_seen_at: datetime = BASE_TIME,
    reopened: bool = False,
) -> IssueGroup:
    return IssueGroup(
        id=str(uuid.uuid4()),
        fingerprint=uuid.uuid4().hex,
        exception_class=exception_class,
        sanitized_message=message,
        file_path="app/services/billing.py",
        line_number=42,
        method_name="charge",
        occurrences_count=occurrences_count,
        first_seen_at=last_seen_at - timedelta(days=1),
        last_seen_at=last_seen_at,
        status=status,
        resolved_at=resolved_at,
        last_notified_at=last_notified_at,
        reopened=reopened,
    )


def make_occurrence(
    group: IssueGroup,
    environment: str = "production",
    created_at: datetime = BASE_TIME,
    backtrace: tuple[str, ...] = (
        "/srv/app/app/services/billing.py:42:in charge",
        "/srv/app/.venv/lib/python3.12/site-packages/flask/app.py:880:in dispatch",
    ),
    request: RequestSnapshot | None = None,
) -> Occurrence:
    return Occurrence(
        id=str(uuid.uuid4()),
        group_id=group.id,
        exception_class=group.exception_class,
        message=group.sanitized_message,
        backtrace=backtrace,
        created_at=created_at,
        environment=environment,
        hostname="web-1",
        process_id="4242",
        request=request,
    )
