"""Fake/mock implementations of core ports for testing.

These in-memory implementations allow core domain logic to be tested
without external dependencies:

- FakeIssueStorePort: In-memory groups and occurrences
- FakeTraceStorePort: Captured request traces
- FakeNotifier: Captured notifications for assertion
- FakeMailDelivery: Captured email messages
- FakeIssueTracker: Canned issue-creation results
- FakeRequest: Attribute bag implementing RequestPort
"""

from .notification import FakeIssueTracker, FakeMailDelivery, FakeNotifier
from .request import FakeRequest
from .store import FakeIssueStorePort
from .traces import FakeTraceStorePort

__all__ = [
    "FakeIssueStorePort",
    "FakeIssueTracker",
    "FakeMailDelivery",
    "FakeNotifier",
    "FakeRequest",
    "FakeTraceStorePort",
]
