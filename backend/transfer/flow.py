"""Backpressure and pacing for outbound chunks."""

import asyncio
import logging
import time

from config import BACKPRESSURE_POLL, BUFFER_HIGH_WATER, SPEED_LIMIT, YIELD_INTERVAL

logger = logging.getLogger(__name__)


class FlowController:
    """
    Decides when the sender may push its next chunk.

    wait_ready() suspends while the channel holds more than ``high_water``
    buffered bytes. pace() enforces the optional rate cap and otherwise
    yields to the event loop every ``yield_interval`` bytes.
    """

    def __init__(
        self,
        channel,
        high_water: int = BUFFER_HIGH_WATER,
        rate_limit: float = SPEED_LIMIT,
        yield_interval: int = YIELD_INTERVAL,
        poll_interval: float = BACKPRESSURE_POLL,
    ) -> None:
        self._channel = channel
        self.high_water = high_water
        self.rate_limit = rate_limit
        self._yield_interval = yield_interval
        self._poll_interval = poll_interval
        self._start = time.monotonic()
        self._last_yield = 0
        self.waits = 0

    def start(self) -> None:
        """Reset the clock used by the rate cap."""
        self._start = time.monotonic()
        self._last_yield = 0

    def saturated(self) -> bool:
        return self._channel.buffered_bytes() > self.high_water

    async def wait_ready(self, cancelled=lambda: False) -> None:
        """Suspend until the channel drains below the high-water mark."""
        if not self.saturated():
            return
        self.waits += 1
        logger.debug(f"Channel to {self._channel.peer_id} over high water, waiting")
        while self.saturated():
            if cancelled() or self._channel.closed:
                return
            await asyncio.sleep(self._poll_interval)

    async def pace(self, bytes_sent: int) -> None:
        """Called after each chunk with the running total of bytes sent."""
        if self.rate_limit and self.rate_limit > 0:
            expected = bytes_sent / self.rate_limit
            actual = time.monotonic() - self._start
            if expected > actual:
                await asyncio.sleep(expected - actual)
                self._last_yield = bytes_sent
                return

        if self._yield_interval and bytes_sent - self._last_yield >= self._yield_interval:
            self._last_yield = bytes_sent
            await asyncio.sleep(0)
