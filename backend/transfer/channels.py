"""
Channel adapters.

A Channel is the engine's view of one duplex message pipe to one peer.
Two variants exist:

- StreamChannel: a direct TCP connection between the two agents.
- RelayChannel: a virtual pipe multiplexed over the signaling WebSocket
  and forwarded by the hub.

Both expose the same contract: send() may refuse a frame when the
outbound buffer is saturated, buffered_bytes() reports that buffer, and
received frames are handed to async callbacks strictly in arrival order.
"""

import asyncio
import logging
import struct
from abc import ABC, abstractmethod

from config import SEND_BUFFER_LIMIT
from transfer.errors import ChannelError
from transfer.models import ChannelKind

logger = logging.getLogger(__name__)


class Channel(ABC):
    """Base adapter: callback registry, inbound queue, idempotent close."""

    kind: ChannelKind
    ordered: bool = True

    def __init__(self, peer_id: str) -> None:
        self.peer_id = peer_id
        self._data_callbacks: list = []  # async fn(channel, frame: bytes)
        self._closed_callbacks: list = []  # async fn(channel)
        self._inbox: asyncio.Queue[bytes] = asyncio.Queue()
        self._dispatch_task: asyncio.Task | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def on_data(self, callback) -> None:
        """Register callback: async fn(channel, frame)."""
        self._data_callbacks.append(callback)
        if self._dispatch_task is None and not self._closed:
            self._dispatch_task = asyncio.create_task(self._dispatch_loop())

    def on_closed(self, callback) -> None:
        """Register callback: async fn(channel)."""
        self._closed_callbacks.append(callback)

    @abstractmethod
    def send(self, frame: bytes) -> bool:
        """Queue a frame. Returns False if the channel is saturated."""

    @abstractmethod
    def buffered_bytes(self) -> int:
        """Bytes accepted by send() but not yet handed to the network."""

    def deliver(self, frame: bytes) -> None:
        """Called by the transport for every received frame."""
        if not self._closed:
            self._inbox.put_nowait(frame)

    async def _dispatch_loop(self) -> None:
        while not self._closed:
            frame = await self._inbox.get()
            try:
                for cb in list(self._data_callbacks):
                    try:
                        await cb(self, frame)
                    except Exception as e:
                        logger.error(f"Channel data callback error: {e}", exc_info=True)
            finally:
                self._inbox.task_done()

    async def _drain(self) -> None:
        """Wait until every delivered frame has been dispatched."""
        if self._dispatch_task is not None and not self._dispatch_task.done():
            await self._inbox.join()

    async def close(self) -> None:
        """Close the channel. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True

        try:
            await self._close_transport()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Error closing {self.kind.value} channel to {self.peer_id}: {e}")

        task = self._dispatch_task
        if task and task is not asyncio.current_task():
            task.cancel()

        for cb in list(self._closed_callbacks):
            try:
                await cb(self)
            except Exception as e:
                logger.error(f"Channel close callback error: {e}")

    async def _close_transport(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"<{type(self).__name__} peer={self.peer_id} closed={self._closed}>"


# --- Direct TCP link ---

HEADER_FORMAT = "!BI"  # 1-byte type + 4-byte length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)


class LinkMessage:
    HELLO = 0x01
    HELLO_ACK = 0x02
    FRAME = 0x03


async def send_message(
    writer: asyncio.StreamWriter, msg_type: int, payload: bytes = b""
) -> None:
    """Send a type-length-payload message."""
    header = struct.pack(HEADER_FORMAT, msg_type, len(payload))
    writer.write(header + payload)
    await writer.drain()


async def recv_message(
    reader: asyncio.StreamReader,
) -> tuple[int, bytes]:
    """Receive a type-length-payload message. Returns (type, payload)."""
    header = await reader.readexactly(HEADER_SIZE)
    msg_type, length = struct.unpack(HEADER_FORMAT, header)
    payload = b""
    if length > 0:
        payload = await reader.readexactly(length)
    return msg_type, payload


class StreamChannel(Channel):
    """Direct channel over an established TCP connection."""

    kind = ChannelKind.DIRECT
    ordered = True

    def __init__(
        self,
        peer_id: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        send_limit: int = SEND_BUFFER_LIMIT,
    ) -> None:
        super().__init__(peer_id)
        self._reader = reader
        self._writer = writer
        self._send_limit = send_limit
        self._read_task: asyncio.Task | None = None

    def start(self) -> None:
        """Begin reading frames from the connection."""
        if self._read_task is None:
            self._read_task = asyncio.create_task(self._read_loop())

    def send(self, frame: bytes) -> bool:
        if self._closed or self._writer.is_closing():
            raise ChannelError(f"Direct channel to {self.peer_id} is closed")
        if self.buffered_bytes() > self._send_limit:
            return False
        self._writer.write(struct.pack(HEADER_FORMAT, LinkMessage.FRAME, len(frame)))
        self._writer.write(frame)
        return True

    def buffered_bytes(self) -> int:
        return self._writer.transport.get_write_buffer_size()

    async def _read_loop(self) -> None:
        try:
            while True:
                msg_type, payload = await recv_message(self._reader)
                if msg_type == LinkMessage.FRAME:
                    self.deliver(payload)
                else:
                    logger.debug(f"Ignoring link message {msg_type:#x} from {self.peer_id}")
        except (asyncio.IncompleteReadError, ConnectionError) as e:
            logger.info(f"Direct channel to {self.peer_id} closed by peer: {e!r}")
        # Frames received before EOF (END included) still reach the callbacks
        await self._drain()
        await self.close()

    async def _close_transport(self) -> None:
        task = self._read_task
        if task and task is not asyncio.current_task():
            task.cancel()
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            pass


# --- Relay through the signaling hub ---

class RelayChannel(Channel):
    """
    Virtual channel to one peer over the shared signaling connection.

    ``link`` is the object owning the WebSocket; it must provide
    ``send_relay(peer_id, frame) -> bool``, ``relay_backlog() -> int`` and
    ``release_relay(peer_id, channel)``.
    """

    kind = ChannelKind.RELAY
    ordered = True

    def __init__(self, peer_id: str, link) -> None:
        super().__init__(peer_id)
        self._link = link

    def send(self, frame: bytes) -> bool:
        if self._closed:
            raise ChannelError(f"Relay channel to {self.peer_id} is closed")
        return self._link.send_relay(self.peer_id, frame)

    def buffered_bytes(self) -> int:
        return self._link.relay_backlog()

    async def _close_transport(self) -> None:
        self._link.release_relay(self.peer_id, self)
