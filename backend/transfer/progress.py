"""Throttled progress reporting with a smoothed speed estimate."""

import time

from config import PROGRESS_INTERVAL, SPEED_SMOOTHING
from transfer.models import ProgressUpdate


class ProgressMeter:
    """
    Turns a stream of byte counts into at most one ProgressUpdate per
    ``interval`` seconds.

    Speed is an exponential moving average of the instantaneous rate
    between reports, which hides the burstiness of chunked sends.
    """

    def __init__(
        self,
        total: int,
        interval: float = PROGRESS_INTERVAL,
        smoothing: float = SPEED_SMOOTHING,
    ):
        self.total = total
        self._interval = interval
        self._smoothing = smoothing
        self._start = time.monotonic()
        self._last_time = self._start
        self._last_bytes = 0
        self._speed: float | None = None

    @property
    def speed(self) -> float:
        return self._speed or 0.0

    def update(self, processed: int) -> ProgressUpdate | None:
        """Record ``processed`` bytes; return an update if one is due."""
        now = time.monotonic()
        if now - self._last_time < self._interval and processed < self.total:
            return None

        elapsed = now - self._last_time
        if elapsed > 0:
            instant = (processed - self._last_bytes) / elapsed
            if self._speed is None:
                self._speed = instant
            else:
                self._speed = (
                    self._speed * self._smoothing
                    + instant * (1 - self._smoothing)
                )

        self._last_time = now
        self._last_bytes = processed
        return self._snapshot(processed)

    def finish(self) -> ProgressUpdate:
        return self._snapshot(self.total)

    def _snapshot(self, processed: int) -> ProgressUpdate:
        speed = self.speed
        remaining = max(self.total - processed, 0)
        return ProgressUpdate(
            transferred_bytes=processed,
            total=self.total,
            percent=(
                min(100.0, round(processed / self.total * 100, 1))
                if self.total > 0
                else 100.0
            ),
            speed_bps=speed,
            eta_seconds=remaining / speed if speed > 0 else 0.0,
        )
