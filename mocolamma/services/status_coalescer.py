"""
Rate-limited publication of pull status updates.

Pull progress lines can arrive many times per second. The coalescer keeps only
the latest values and commits them to observers at a fixed interval.
"""

import asyncio
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from mocolamma.core.config import settings
from mocolamma.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class StatusUpdate:
    """Values committed in one tick. A None status keeps the visible status."""

    status: str | None
    total: int
    completed: int
    progress: float


class StatusCoalescer:
    """
    Coalesces pending status updates and commits them once per interval.

    The periodic timer is an asyncio task created on the first submitted update
    and cancelled by stop(). tick() and flush() can also be driven directly.
    """

    def __init__(
        self,
        on_commit: Callable[[StatusUpdate], None],
        interval: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the coalescer.

        Args:
            on_commit: Receives each committed update
            interval: Commit interval in seconds
                (defaults to settings.pull_status_update_interval)
            clock: Monotonic time source
        """
        self.interval = interval or settings.pull_status_update_interval
        self._on_commit = on_commit
        self._clock = clock
        self._timer: asyncio.Task | None = None
        self.reset()

    def reset(self) -> None:
        self.pending_status: str | None = None
        self.pending_total = 0
        self.pending_completed = 0
        self.pending_progress = 0.0
        self.last_commit_time = -math.inf
        self._dirty = False

    @property
    def timer_active(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def has_pending(self) -> bool:
        return self._dirty

    def submit(
        self,
        status: str | None = None,
        total: int | None = None,
        completed: int | None = None,
        progress: float | None = None,
    ) -> None:
        """Record the latest values and make sure the timer is running."""
        if status is not None:
            self.pending_status = status
        if total is not None:
            self.pending_total = total
        if completed is not None:
            self.pending_completed = completed
        if progress is not None:
            self.pending_progress = progress
        self._dirty = True
        self._ensure_timer()

    def tick(self, now: float | None = None) -> bool:
        """
        Commit pending values if the interval has elapsed since the last commit.

        Returns:
            bool: True if an update was committed
        """
        now = self._clock() if now is None else now
        if not self._dirty or now - self.last_commit_time < self.interval:
            return False
        self._commit(now)
        return True

    def flush(self) -> bool:
        """Commit pending values immediately, ignoring the interval."""
        if not self._dirty:
            return False
        self._commit(self._clock())
        return True

    def stop(self) -> None:
        """Tear down the periodic timer."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _commit(self, now: float) -> None:
        update = StatusUpdate(
            status=self.pending_status,
            total=self.pending_total,
            completed=self.pending_completed,
            progress=self.pending_progress,
        )
        self.pending_status = None
        self.last_commit_time = now
        self._dirty = False
        self._on_commit(update)

    def _ensure_timer(self) -> None:
        if self.timer_active:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop: updates are committed by explicit tick()/flush()
            return
        self._timer = loop.create_task(self._run())

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval)
                self.tick()
        except asyncio.CancelledError:
            logger.debug("Pull status timer stopped")
            raise
