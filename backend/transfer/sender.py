"""
Sender session: streams one file to one peer over one channel.

START -> DATA* -> END. Chunks are framed with a sequence index when the
channel does not guarantee ordering. The next chunk is read from disk
while the current one is being sent.
"""

import asyncio
import logging
import time

from config import SEND_RETRY_DELAY
from transfer.errors import ChannelError
from transfer.flow import FlowController
from transfer.framing import encode_data, encode_end, encode_start
from transfer.models import SessionState, StartMeta
from transfer.progress import ProgressMeter

logger = logging.getLogger(__name__)


class SenderSession:
    """One outbound transfer. Mutated only by its own run() loop and cancel()."""

    def __init__(
        self,
        target_id: str,
        file_path: str,
        channel,
        *,
        transfer_id: str,
        file_name: str,
        total: int,
        chunk_size: int,
        mime_type: str = "application/octet-stream",
        flow: FlowController | None = None,
        progress_callback=None,
        retry_delay: float = SEND_RETRY_DELAY,
    ) -> None:
        self.target_id = target_id
        self.file_path = file_path
        self.channel = channel
        self.transfer_id = transfer_id
        self.file_name = file_name
        self.mime_type = mime_type
        self.total = total
        self.chunk_size = chunk_size
        self.flow = flow or FlowController(channel)
        self._progress_callback = progress_callback  # async fn(session, ProgressUpdate)
        self._retry_delay = retry_delay

        self.offset = 0
        self.frames_sent = 0
        self.start_time: float | None = None
        self.state = SessionState.IDLE
        self.cancelled = False
        self.error: str | None = None

    @property
    def sequenced(self) -> bool:
        return not self.channel.ordered

    def cancel(self, reason: str = "cancelled") -> None:
        """Ask the loop to stop at its next iteration."""
        if not self.cancelled:
            self.cancelled = True
            self.error = reason

    async def run(self) -> SessionState:
        """Stream the file. Returns the terminal state."""
        if self.state != SessionState.IDLE:
            raise RuntimeError(f"Session already {self.state.value}")

        self.state = SessionState.STREAMING
        self.start_time = time.monotonic()
        self.flow.start()
        meter = ProgressMeter(self.total)

        try:
            await self._send(encode_start(StartMeta(
                transfer_id=self.transfer_id,
                file_name=self.file_name,
                file_size=self.total,
                mime_type=self.mime_type,
                chunk_size=self.chunk_size,
                sequenced=self.sequenced,
            )))
            chunks = await self._stream(meter)
            if self.cancelled:
                return self._abort()
            await self._send(encode_end(chunks=chunks, total=self.total))
        except (ChannelError, OSError) as e:
            logger.error(f"Send error for {self.file_name} to {self.target_id}: {e}")
            self.error = self.error or str(e)
            self.cancelled = True
            return self._abort()

        self.state = SessionState.COMPLETED
        await self._report(meter.finish())
        elapsed = time.monotonic() - self.start_time
        logger.info(
            f"Sent '{self.file_name}' ({self.total} bytes) to {self.target_id} "
            f"in {elapsed:.2f}s over {self.channel.kind.value}"
        )
        return self.state

    async def _stream(self, meter: ProgressMeter) -> int:
        """Send all data frames. Returns the number of chunks sent."""
        seq = 0
        if self.total == 0:
            return seq

        with open(self.file_path, "rb") as f:
            next_read = asyncio.ensure_future(asyncio.to_thread(f.read, self.chunk_size))
            try:
                while self.offset < self.total:
                    if self.cancelled:
                        break

                    await self.flow.wait_ready(lambda: self.cancelled)
                    if self.cancelled:
                        break

                    chunk = await next_read
                    next_read = None
                    if not chunk:
                        raise ChannelError(
                            f"Source ended at {self.offset} of {self.total} bytes"
                        )
                    chunk = chunk[: self.total - self.offset]

                    # Read ahead while this chunk goes out
                    if self.offset + len(chunk) < self.total:
                        next_read = asyncio.ensure_future(
                            asyncio.to_thread(f.read, self.chunk_size)
                        )

                    await self._send(encode_data(chunk, seq if self.sequenced else None))
                    seq += 1
                    self.offset += len(chunk)

                    update = meter.update(self.offset)
                    if update is not None:
                        await self._report(update)

                    await self.flow.pace(self.offset)
            finally:
                # The file must not close under a pending worker-thread read
                if next_read is not None:
                    try:
                        await next_read
                    except OSError:
                        pass
        return seq

    async def _send(self, frame: bytes) -> None:
        """Send one frame, retrying once after a short delay if refused."""
        if self.channel.send(frame):
            self.frames_sent += 1
            return
        logger.debug(f"Channel to {self.target_id} refused a frame, retrying")
        await asyncio.sleep(self._retry_delay)
        if self.channel.send(frame):
            self.frames_sent += 1
            return
        raise ChannelError(f"Channel to {self.target_id} refused a frame twice")

    async def _report(self, update) -> None:
        if self._progress_callback:
            await self._progress_callback(self, update)

    def _abort(self) -> SessionState:
        self.state = SessionState.ABORTED
        logger.info(
            f"Send of '{self.file_name}' to {self.target_id} aborted at "
            f"{self.offset}/{self.total}: {self.error}"
        )
        return self.state
