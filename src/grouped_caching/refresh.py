"""
Background refresh: the proactive refresh registry and the supervisor that
runs refresh loaders as asyncio tasks.

Refreshes are fire-and-forget for the caller but never unobserved: every task
is tracked until it finishes, failures are logged and counted per key, and a
key that keeps failing is suspended instead of being retried forever.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

DEFAULT_MAX_REFRESH_FAILURES = 3

Loader = Callable[..., Any]
ErrorHandler = Callable[[str, Exception], Any]


async def call_loader(loader: Loader, *args: Any) -> Any:
    """Call a sync or async loader and return its (awaited) result."""
    result = loader(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


# ============================================================================
# RefreshRegistry - keys refreshed on every driver tick
# ============================================================================


@dataclass
class BackgroundRefreshTask:
    key: str
    reload_seconds: float
    ttl_seconds: float
    loader: Loader


class RefreshRegistry:
    """Ordered list of background refresh tasks; several may share a key."""

    def __init__(self):
        self._tasks: list[BackgroundRefreshTask] = []

    def register(
        self, key: str, reload_seconds: float, ttl_seconds: float, loader: Loader
    ) -> BackgroundRefreshTask:
        task = BackgroundRefreshTask(key, reload_seconds, ttl_seconds, loader)
        self._tasks.append(task)
        return task

    def unregister(self, key: str) -> int:
        """Remove all tasks for key. Returns the number removed."""
        before = len(self._tasks)
        self._tasks = [task for task in self._tasks if task.key != key]
        return before - len(self._tasks)

    def has(self, key: str) -> bool:
        return any(task.key == key for task in self._tasks)

    def tasks(self) -> list[BackgroundRefreshTask]:
        return list(self._tasks)

    def clear(self) -> None:
        self._tasks = []

    def __len__(self) -> int:
        return len(self._tasks)


# ============================================================================
# RefreshSupervisor - tracked tasks with an error sink
# ============================================================================


class RefreshSupervisor:
    """
    Runs refresh coroutines as tracked asyncio tasks.

    Args:
        max_failures: consecutive failures after which a key is suspended
        on_error: optional ``(key, exc)`` callback for every failure
        on_exhausted: called with the key once it reaches max_failures
    """

    def __init__(
        self,
        max_failures: int = DEFAULT_MAX_REFRESH_FAILURES,
        on_error: ErrorHandler | None = None,
        on_exhausted: Callable[[str], Any] | None = None,
    ):
        self.max_failures = max(1, int(max_failures))
        self.on_error = on_error
        self.on_exhausted = on_exhausted
        self._pending: set[asyncio.Task] = set()
        self._failures: dict[str, int] = {}

    def spawn(self, key: str, refresh: Awaitable[Any]) -> asyncio.Task:
        """Schedule refresh on the running loop. Must be called inside the loop."""
        task = asyncio.get_running_loop().create_task(self._supervise(key, refresh))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _supervise(self, key: str, refresh: Awaitable[Any]) -> None:
        try:
            await refresh
        except Exception as e:
            self.record_failure(key, e)
        else:
            self.reset(key)

    def record_failure(self, key: str, error: Exception) -> None:
        count = self._failures.get(key, 0) + 1
        self._failures[key] = count
        logger.error(
            f"Background refresh failed for {key} ({count}/{self.max_failures}): {error}",
            exc_info=error,
        )

        if self.on_error:
            try:
                self.on_error(key, error)
            except Exception as err:
                logger.error(f"Error handler failed: {err}")

        if count >= self.max_failures:
            logger.warning(
                f"Suspending background refresh for {key} after {count} failures"
            )
            if self.on_exhausted:
                self.on_exhausted(key)

    def failures(self, key: str) -> int:
        return self._failures.get(key, 0)

    def is_suspended(self, key: str) -> bool:
        return self._failures.get(key, 0) >= self.max_failures

    def reset(self, key: str) -> None:
        self._failures.pop(key, None)

    def clear(self) -> None:
        self._failures.clear()

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait until no refresh task is pending, including ones spawned meanwhile."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
