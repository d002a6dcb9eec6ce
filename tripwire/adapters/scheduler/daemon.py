"""Daemon scheduler adapter.

Implements a long-running asyncio loop that applies the error-tracking
and APM retention policies at a configurable interval.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass

from tripwire.core.aggregator import ApmAggregator
from tripwire.core.ports import ManagementPort

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CleanupResult:
    """Rows removed by one cleanup cycle; None where that half failed."""

    occurrences_deleted: int | None
    traces_deleted: int | None

    @property
    def ok(self) -> bool:
        return self.occurrences_deleted is not None and self.traces_deleted is not None


class RetentionScheduler:
    """Asyncio-based daemon scheduler for periodic retention cleanup."""

    def __init__(
        self,
        management: ManagementPort,
        aggregator: ApmAggregator | None = None,
        interval_seconds: float = 3600,
    ):
        """Initialize retention scheduler.

        Args:
            management: Management service whose cleanup enforces error retention.
            aggregator: APM aggregator whose cleanup enforces trace retention.
            interval_seconds: Interval between cleanup cycles in seconds.
        """
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.management = management
        self.aggregator = aggregator
        self.interval_seconds = interval_seconds
        self.running = False
        self._task: asyncio.Task[None] | None = None
        self._failure_count = 0

    async def start(self) -> None:
        """Start the scheduler loop; returns once stopped."""
        if self.running:
            logger.warning("Retention scheduler already running")
            return

        self.running = True
        logger.info(
            f"Starting retention scheduler with {self.interval_seconds}s interval"
        )

        self._setup_signal_handlers()

        self._task = asyncio.current_task()
        try:
            await self._run_loop()
        except asyncio.CancelledError:
            logger.info("Retention scheduler cancelled")
        except Exception as e:
            logger.error(f"Retention scheduler error: {e}", exc_info=True)
        finally:
            self.running = False
            self._task = None
            logger.info("Retention scheduler stopped")

    async def stop(self) -> None:
        """Stop the scheduler loop."""
        if not self.running:
            return

        logger.info("Stopping retention scheduler...")
        self.running = False

        task = self._task
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        try:
            loop = asyncio.get_running_loop()

            def _handle_signal(sig: int) -> None:
                logger.info(f"Received signal {sig}, initiating graceful shutdown...")
                asyncio.create_task(self.stop())

            loop.add_signal_handler(signal.SIGTERM, _handle_signal, signal.SIGTERM)
            loop.add_signal_handler(signal.SIGINT, _handle_signal, signal.SIGINT)
        except NotImplementedError:
            # Signal handlers not available on Windows
            logger.debug("Signal handlers not available on this platform")
        except RuntimeError as e:
            # add_signal_handler only works from the main thread
            logger.warning(f"Failed to set up signal handlers: {e}")

    async def run_cleanup_cycle(self) -> CleanupResult:
        """Run both retention cleanups once; failures are logged, not raised."""
        occurrences = None
        traces = None

        try:
            occurrences = await self.management.cleanup()
        except Exception as e:
            logger.error(f"Error-tracking cleanup failed: {e}", exc_info=True)

        if self.aggregator is None:
            traces = 0
        else:
            try:
                traces = await self.aggregator.cleanup()
            except Exception as e:
                logger.error(f"APM cleanup failed: {e}", exc_info=True)

        return CleanupResult(occurrences_deleted=occurrences, traces_deleted=traces)

    async def _run_loop(self) -> None:
        """Main daemon loop."""
        cycle_number = 0
        loop = asyncio.get_running_loop()

        while self.running:
            cycle_number += 1
            logger.debug(f"Starting cleanup cycle #{cycle_number}")
            start_time = loop.time()

            result = await self.run_cleanup_cycle()
            elapsed = loop.time() - start_time

            if result.ok:
                self._failure_count = 0
                logger.info(
                    f"Cleanup cycle #{cycle_number} completed in {elapsed:.2f}s: "
                    f"{result.occurrences_deleted} occurrences, "
                    f"{result.traces_deleted} traces removed"
                )
            else:
                self._failure_count += 1
                if self._failure_count >= 5:
                    logger.critical(
                        f"Cleanup has failed {self._failure_count} consecutive times. "
                        f"Manual intervention may be required."
                    )

            if self.running:
                await asyncio.sleep(self.interval_seconds)
