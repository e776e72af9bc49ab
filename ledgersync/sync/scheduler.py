"""Background scheduler that drives sync cycles.

Cycles run on a timer, when connectivity returns, when the app regains
focus, and on demand. The driver's cycle guard keeps them from overlapping.
"""

import asyncio
import logging
from typing import Any

from ..store.models import Priority
from .cloud_sync import (
    CloudSyncDriver,
    NetworkQuality,
    SyncResult,
    SyncSettings,
    recommended_settings,
)
from .transport import Credentials

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs the sync driver periodically and on connectivity/focus signals."""

    def __init__(
        self,
        driver: CloudSyncDriver,
        credentials: Credentials,
        interval: float | None = None,
        max_backoff: float = 3600.0,
        quality: NetworkQuality | None = None,
    ):
        """Initialize the scheduler.

        Args:
            driver: Sync driver to run.
            credentials: Credential passed to every cycle.
            interval: Fixed seconds between timer cycles. When None the
                interval follows the recommended settings for the network.
            max_backoff: Upper bound in seconds for the failure back-off.
            quality: Initial network quality signal.
        """
        self.driver = driver
        self.credentials = credentials
        self.max_backoff = max_backoff
        self._fixed_interval = interval
        self._settings = recommended_settings(quality)
        self._consecutive_failures = 0
        self._trigger: Priority | None = None
        self._wake = asyncio.Event()
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._last_result: SyncResult | None = None
        self._apply_settings()

    @property
    def settings(self) -> SyncSettings:
        return self._settings

    @property
    def interval(self) -> float:
        if self._fixed_interval is not None:
            return self._fixed_interval
        return self._settings.interval

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_result(self) -> SyncResult | None:
        return self._last_result

    def _apply_settings(self) -> None:
        self.driver.queue.batch_size = self._settings.batch_size

    def set_network_quality(self, quality: NetworkQuality | None) -> None:
        """Retune interval, batch size and minimum priority for the link."""
        self._settings = recommended_settings(quality)
        self._apply_settings()
        logger.info(
            f"Sync settings: interval={self._settings.interval}s, "
            f"batch={self._settings.batch_size}, "
            f"priority={self._settings.priority.value}"
        )

    def next_wait(self) -> float:
        """Seconds until the next timer cycle, widened after failures."""
        wait_time = self.interval
        if self._consecutive_failures > 0:
            wait_time = min(
                self.interval * (2**self._consecutive_failures),
                self.max_backoff,
            )
        return wait_time

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def _request(self, priority: Priority) -> None:
        if self._trigger is None or priority.rank > self._trigger.rank:
            self._trigger = priority
        self._wake.set()

    def notify_online(self, online: bool) -> None:
        """Connectivity changed. Reconnecting sends high-priority work first."""
        was_online = self.driver.is_online
        self.driver.set_online(online)
        if online and not was_online:
            self._request(Priority.HIGH)

    def notify_focus(self) -> None:
        """The app regained focus."""
        self._request(Priority.MEDIUM)

    async def request_sync(self) -> SyncResult:
        """Run a cycle now, joining one already in flight."""
        return await self._run_cycle(None)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run_cycle(self, trigger: Priority | None) -> SyncResult:
        """One cycle. A trigger pushes its priority band before the full cycle.

        Bands below the recommended priority are held back only on
        constrained links; elsewhere every pending operation is eligible.
        """
        floor = self._settings.priority if self._settings.constrained else None
        if trigger is not None:
            first = trigger
            if floor is not None and floor.rank > first.rank:
                first = floor
            await self.driver.process_queue(self.credentials, min_priority=first)

        result = await self.driver.sync(self.credentials, min_priority=floor)

        if result.success:
            self._consecutive_failures = 0
        else:
            self._consecutive_failures += 1
        self._last_result = result
        return result

    async def _wait(self, timeout: float) -> Priority | None:
        """Sleep until the timer fires or a trigger arrives.

        Returns:
            The trigger priority, or None for a timer tick.
        """
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        self._wake.clear()
        trigger, self._trigger = self._trigger, None
        return trigger

    async def _loop(self) -> None:
        logger.info(f"Starting sync scheduler with {self.interval}s interval")
        trigger: Priority | None = None

        while not self._stop.is_set():
            if self.driver.is_online:
                try:
                    result = await self._run_cycle(trigger)
                    logger.info(
                        f"Sync: success={result.success}, "
                        f"pushed={result.synced_count}, "
                        f"pulled={result.pulled_count}"
                    )
                except Exception as e:
                    self._consecutive_failures += 1
                    logger.error(f"Sync loop error: {e}")
            else:
                logger.debug("Offline, skipping sync cycle")

            wait_time = self.next_wait()
            if self._consecutive_failures > 0:
                logger.debug(f"Backing off sync for {wait_time}s")

            trigger = await self._wait(wait_time)

        logger.info("Sync scheduler stopped")

    def start(self) -> None:
        """Start the background loop."""
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Stop the loop after the cycle in flight, if any, completes."""
        if self._task is None:
            return
        self._stop.set()
        self._wake.set()
        await self._task
        self._task = None

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "interval": self.interval,
            "next_wait": self.next_wait(),
            "consecutive_failures": self._consecutive_failures,
            "settings": self._settings.to_dict(),
            "last_result": self._last_result.to_dict() if self._last_result else None,
        }
