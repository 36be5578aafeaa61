"""
Per-folder polling with exponential backoff.

State machine:
    IDLE -> SCANNING -> IDLE              on success
    IDLE -> SCANNING -> BACKOFF -> IDLE   on failure
    any  -> STOPPED                       on stop() or access denied

The next scan is armed only after the previous one returned, so scans of one
folder never overlap. Cancellation is synchronous: the pending timer is
released immediately, and an in-flight scan is left to finish and discarded.
"""

import asyncio
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from .config import BackoffConfig
from .errors import AccessDeniedError
from .models import MonitoredFolder


class SchedulerState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    BACKOFF = "backoff"
    STOPPED = "stopped"


def compute_backoff_interval(
    base_interval_ms: float,
    consecutive_errors: int,
    error_threshold: int = 3,
    multiplier: float = 1.5,
    max_interval_ms: float = 300000,
) -> float:
    """
    Poll interval after ``consecutive_errors`` failures in a row.

    No penalty up to the threshold; beyond it the base interval grows by
    ``multiplier`` per extra failure, capped at ``max_interval_ms``.
    """
    if consecutive_errors <= error_threshold:
        return base_interval_ms
    return min(base_interval_ms * multiplier ** (consecutive_errors - error_threshold), max_interval_ms)


class RepeatingTask:
    """
    Cancellable repeating task.

    ``run`` is awaited on each tick and returns the delay in seconds before
    the next tick, or ``None`` to finish. ``cancel()`` is synchronous.
    """

    def __init__(self, run: Callable[[], Awaitable[Optional[float]]], name: str = "task"):
        self._run = run
        self.name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def pending(self) -> bool:
        """True while a tick is armed or running."""
        return self._timer is not None or (self._task is not None and not self._task.done())

    def start(self, delay: float = 0.0) -> None:
        self._loop = asyncio.get_running_loop()
        self._cancelled = False
        self._arm(delay)

    def cancel(self) -> None:
        self._cancelled = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def wait_idle(self) -> None:
        """Wait for an in-flight tick to finish (used for orderly shutdown)."""
        task = self._task
        if task is not None and not task.done():
            await asyncio.shield(task)

    def _arm(self, delay: float) -> None:
        self._timer = self._loop.call_later(max(delay, 0.0), self._fire)

    def _fire(self) -> None:
        self._timer = None
        if self._cancelled:
            return
        self._task = self._loop.create_task(self._iterate(), name=self.name)

    async def _iterate(self) -> None:
        try:
            next_delay = await self._run()
        except Exception:
            logger.exception(f"Repeating task {self.name} crashed, not rescheduling")
            return
        if not self._cancelled and next_delay is not None:
            self._arm(next_delay)


ScanCallable = Callable[[MonitoredFolder], Awaitable[Any]]
ErrorCallback = Callable[[MonitoredFolder, BaseException], Any]


class PollingScheduler:
    """Drives periodic scans of one monitored folder."""

    def __init__(
        self,
        folder: MonitoredFolder,
        scan: ScanCallable,
        on_error: Optional[ErrorCallback] = None,
        on_success: Optional[Callable[[MonitoredFolder], Any]] = None,
        backoff: Optional[BackoffConfig] = None,
    ):
        self.folder = folder
        self._scan = scan
        self._on_error = on_error
        self._on_success = on_success
        self.backoff = backoff or BackoffConfig()
        self.state = SchedulerState.STOPPED
        self.current_interval_ms: float = folder.poll_interval_ms
        self._task: Optional[RepeatingTask] = None
        self._generation = 0

    @property
    def running(self) -> bool:
        return self._task is not None and self.state is not SchedulerState.STOPPED

    def start(self) -> None:
        """Begin polling; the first scan runs immediately."""
        if self.running:
            return
        self._generation += 1
        self.folder.is_active = True
        self.state = SchedulerState.IDLE
        self.current_interval_ms = self.folder.poll_interval_ms
        self._task = RepeatingTask(self._tick, name=f"poll:{self.folder.id}")
        self._task.start(0.0)
        logger.info(f"Polling {self.folder.display_path} every {self.current_interval_ms:.0f}ms")

    def stop(self) -> None:
        """Cancel the timer; an in-flight scan finishes and is discarded."""
        self._generation += 1
        if self._task is not None:
            self._task.cancel()
        self.state = SchedulerState.STOPPED
        self.folder.is_active = False
        logger.info(f"Stopped polling {self.folder.display_path}")

    async def wait_idle(self) -> None:
        if self._task is not None:
            await self._task.wait_idle()

    async def _tick(self) -> Optional[float]:
        generation = self._generation
        if self.state is SchedulerState.STOPPED:
            return None

        self.state = SchedulerState.SCANNING
        try:
            await self._scan(self.folder)
        except AccessDeniedError as e:
            if generation != self._generation:
                return None
            self._record_failure(e)
            logger.error(f"Access denied for {self.folder.display_path}, deactivating: {e}")
            self.stop()
            await self._notify_error(e)
            return None
        except Exception as e:
            if generation != self._generation:
                logger.debug(f"Discarding failed scan of stopped folder {self.folder.id}: {e}")
                return None
            self._record_failure(e)
            self.state = SchedulerState.BACKOFF
            self.current_interval_ms = compute_backoff_interval(
                self.folder.poll_interval_ms,
                self.folder.consecutive_errors,
                self.backoff.error_threshold,
                self.backoff.multiplier,
                self.backoff.max_interval_ms,
            )
            logger.warning(
                f"Scan of {self.folder.display_path} failed "
                f"({self.folder.consecutive_errors} in a row), next try in "
                f"{self.current_interval_ms:.0f}ms: {e}"
            )
            await self._notify_error(e)
            if generation != self._generation:
                return None
            self.state = SchedulerState.IDLE
            return self.current_interval_ms / 1000.0

        if generation != self._generation:
            logger.debug(f"Discarding scan result of stopped folder {self.folder.id}")
            return None

        self.folder.consecutive_errors = 0
        self.folder.last_error = None
        self.folder.last_scan_time = datetime.utcnow()
        self.state = SchedulerState.IDLE
        self.current_interval_ms = self.folder.poll_interval_ms
        if self._on_success is not None:
            try:
                result = self._on_success(self.folder)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Scan success callback failed: {e}")
        return self.current_interval_ms / 1000.0

    def _record_failure(self, error: BaseException) -> None:
        self.folder.consecutive_errors += 1
        self.folder.last_error = str(error)

    async def _notify_error(self, error: BaseException) -> None:
        if self._on_error is None:
            return
        try:
            result = self._on_error(self.folder, error)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"Scan error callback failed: {e}")
