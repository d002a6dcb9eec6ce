"""Scheduler adapters for driving periodic maintenance.

- Daemon (asyncio event loop running retention cleanup on an interval)
"""

from .daemon import RetentionScheduler

__all__ = ["RetentionScheduler"]
