"""
Periodic driver shared by the TTL sweep and the background refresh registry.

One APScheduler interval job, re-armed in place whenever the interval changes.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 10.0
MIN_CHECK_INTERVAL = 0.1


def valid_check_interval(seconds: Any) -> bool:
    """Finite real number of at least MIN_CHECK_INTERVAL seconds."""
    if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
        return False
    return math.isfinite(seconds) and seconds >= MIN_CHECK_INTERVAL


class CheckTimer:
    """
    Rearmable interval timer backed by an AsyncIOScheduler.

    The callback is a coroutine function so APScheduler runs it on the event
    loop instead of in its thread pool executor.

    Example:
        timer = CheckTimer(cache_tick, interval=5)
        timer.start()          # inside a running event loop
        timer.set_interval(1)  # re-arms the running job
        timer.shutdown()
    """

    JOB_ID = "grouped_caching:check"

    def __init__(
        self,
        callback: Callable[[], Awaitable[None]],
        interval: float = DEFAULT_CHECK_INTERVAL,
    ):
        self._callback = callback
        self._interval = DEFAULT_CHECK_INTERVAL
        self._scheduler: AsyncIOScheduler | None = None
        self.set_interval(interval)

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def set_interval(self, seconds: Any) -> bool:
        """
        Change the tick interval. Invalid values are ignored.

        Returns:
            True if the interval was accepted, False if the old one was kept
        """
        if not valid_check_interval(seconds):
            logger.warning(
                f"Ignoring invalid check interval {seconds!r}, keeping {self._interval}s"
            )
            return False

        self._interval = float(seconds)
        if self.running:
            self._arm()
            logger.info(f"Check timer re-armed every {self._interval}s")
        return True

    def _arm(self) -> None:
        assert self._scheduler is not None
        self._scheduler.add_job(
            self._callback,
            trigger=IntervalTrigger(seconds=self._interval),
            id=self.JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )

    def start(self) -> None:
        """Arm the timer on the running event loop."""
        if self.running:
            return
        self._scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        self._arm()
        self._scheduler.start()
        logger.info(f"Check timer started every {self._interval}s")

    def shutdown(self) -> None:
        """Stop the timer. A later start() arms a fresh scheduler."""
        if self._scheduler is not None:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Check timer stopped")
