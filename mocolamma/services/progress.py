"""
Download progress, transfer speed and ETA tracking for model pulls.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass

from mocolamma.core.config import settings


@dataclass(frozen=True)
class ProgressSnapshot:
    """Values computed by the tracker after an update."""

    total: int
    completed: int
    progress: float
    speed_bytes_per_sec: float
    eta_seconds: float


class ProgressTracker:
    """
    Tracks completed/total bytes and derives progress, speed and ETA.

    Speed is only sampled over windows of at least `sample_interval` seconds.
    The first update records the baseline; a decrease in completed bytes (a new
    layer starting over) never yields a negative speed.
    """

    def __init__(
        self,
        sample_interval: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the tracker.

        Args:
            sample_interval: Minimum sampling window in seconds
                (defaults to settings.speed_sample_interval)
            clock: Monotonic time source
        """
        self.sample_interval = sample_interval or settings.speed_sample_interval
        self._clock = clock
        self.reset()

    def reset(self) -> None:
        self.total = 0
        self.completed = 0
        self.progress = 0.0
        self.speed_bytes_per_sec = 0.0
        self.eta_seconds = 0.0
        self.last_sample_time: float | None = None
        self.last_sample_completed = 0

    def update(
        self,
        completed: int | None = None,
        total: int | None = None,
        now: float | None = None,
    ) -> ProgressSnapshot:
        """
        Record a progress report.

        Absent values keep their previous value, as pull responses only carry
        byte counts while a layer is downloading.

        Args:
            completed: Completed bytes
            total: Total bytes (0 means unknown)
            now: Sample time (defaults to the tracker's clock)

        Returns:
            ProgressSnapshot: The updated values
        """
        if total is not None:
            self.total = total
        if completed is not None:
            self.completed = completed

        if self.total > 0:
            self.progress = min(max(0.0, self.completed / self.total), 1.0)
        else:
            self.progress = 0.0

        now = self._clock() if now is None else now
        if self.last_sample_time is None:
            self.last_sample_time = now
            self.last_sample_completed = self.completed
        else:
            elapsed = now - self.last_sample_time
            if elapsed >= self.sample_interval:
                delta = self.completed - self.last_sample_completed
                if delta >= 0:
                    speed = delta / elapsed
                    self.speed_bytes_per_sec = speed
                    if self.total > 0 and speed > 0:
                        self.eta_seconds = max(self.total - self.completed, 0) / speed
                self.last_sample_time = now
                self.last_sample_completed = self.completed

        return self.snapshot()

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            total=self.total,
            completed=self.completed,
            progress=self.progress,
            speed_bytes_per_sec=self.speed_bytes_per_sec,
            eta_seconds=self.eta_seconds,
        )
