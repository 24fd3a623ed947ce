"""
Direct channel establishment.

Each agent listens on a random TCP port. A sender that wants a direct
channel asks the receiver (over signaling) for a descriptor; the receiver
answers with its host, port and a one-time token. The sender connects,
presents the token in a HELLO message and gets a HELLO_ACK back. Any
connection that does not present a live token is dropped.
"""

import asyncio
import json
import logging
import random
import secrets
import socket

from config import DIRECT_HOST, DIRECT_PORT_MAX, DIRECT_PORT_MIN
from transfer.channels import LinkMessage, StreamChannel, recv_message, send_message
from transfer.errors import ChannelError

logger = logging.getLogger(__name__)

HANDSHAKE_TIMEOUT = 5.0  # seconds


def local_address() -> str:
    """Best guess at the LAN address other agents can reach us on."""
    try:
        host_name = socket.gethostname()
        _, _, ips = socket.gethostbyname_ex(host_name)
        for ip in ips:
            if not ip.startswith("127."):
                return ip
    except OSError as e:
        logger.debug(f"Error resolving local IPs: {e}")
    return "127.0.0.1"


class DirectEndpoint:
    """TCP listener plus the HELLO handshake on both sides."""

    def __init__(
        self,
        advertise_host: str | None = DIRECT_HOST,
        port_range: tuple[int, int] = (DIRECT_PORT_MIN, DIRECT_PORT_MAX),
    ) -> None:
        self._advertise_host = advertise_host
        self._port_range = port_range
        self._server: asyncio.Server | None = None
        self._port = 0
        # token -> (peer_id, on_open)
        self._expected: dict[str, tuple[str, object]] = {}

    @property
    def port(self) -> int:
        return self._port

    async def start(self) -> None:
        """Start the listener on a random port."""
        low, high = self._port_range
        port = random.randint(low, high)

        # Try a few ports if the first one is busy
        for attempt in range(10):
            try:
                self._server = await asyncio.start_server(
                    self._handle_incoming_connection,
                    "0.0.0.0",
                    port,
                )
                self._port = port
                if not self._advertise_host:
                    self._advertise_host = local_address()
                logger.info(f"Direct listener on {self._advertise_host}:{port}")
                return
            except OSError:
                port = random.randint(low, high)

        raise RuntimeError("Could not bind to any direct transfer port")

    async def stop(self) -> None:
        self._expected.clear()
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        logger.info("Direct listener stopped")

    def expect(self, peer_id: str, on_open) -> dict:
        """
        Allow ``peer_id`` to connect once. ``on_open`` is an
        async fn(channel) called with the established StreamChannel.
        Returns the descriptor to send to the peer.
        """
        if self._server is None:
            raise ChannelError("Direct listener is not running")
        self.forget(peer_id)
        token = secrets.token_hex(16)
        self._expected[token] = (peer_id, on_open)
        return {"host": self._advertise_host, "port": self._port, "token": token}

    def forget(self, peer_id: str) -> None:
        """Drop any outstanding expectation for ``peer_id``."""
        for token, (pid, _) in list(self._expected.items()):
            if pid == peer_id:
                del self._expected[token]

    async def connect(self, peer_id: str, descriptor: dict) -> StreamChannel:
        """Open a direct channel to ``peer_id`` using its descriptor."""
        try:
            host = descriptor["host"]
            port = int(descriptor["port"])
            token = descriptor["token"]
        except (KeyError, TypeError, ValueError) as e:
            raise ChannelError(f"Bad direct descriptor from {peer_id}: {e}") from e

        writer = None
        try:
            reader, writer = await asyncio.open_connection(host, port)
            hello = json.dumps({"token": token}).encode("utf-8")
            await send_message(writer, LinkMessage.HELLO, hello)
            msg_type, _ = await asyncio.wait_for(
                recv_message(reader), timeout=HANDSHAKE_TIMEOUT
            )
            if msg_type != LinkMessage.HELLO_ACK:
                raise ChannelError(f"Expected HELLO_ACK, got {msg_type:#x}")
        except (OSError, asyncio.IncompleteReadError, asyncio.TimeoutError) as e:
            if writer:
                writer.close()
            raise ChannelError(f"Direct connection to {peer_id} failed: {e!r}") from e
        except BaseException:
            if writer:
                writer.close()
            raise

        channel = StreamChannel(peer_id, reader, writer)
        channel.start()
        logger.info(f"Direct channel to {peer_id} open ({host}:{port})")
        return channel

    async def _handle_incoming_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Validate a HELLO and hand the connection over as a channel."""
        peer_addr = writer.get_extra_info("peername")
        try:
            msg_type, payload = await asyncio.wait_for(
                recv_message(reader), timeout=HANDSHAKE_TIMEOUT
            )
            if msg_type != LinkMessage.HELLO:
                raise ChannelError(f"Expected HELLO, got {msg_type:#x}")
            token = json.loads(payload.decode("utf-8")).get("token", "")
            expected = self._expected.pop(token, None)
            if expected is None:
                raise ChannelError("Unknown or reused token")
            await send_message(writer, LinkMessage.HELLO_ACK)
        except (ChannelError, OSError, ValueError, AttributeError,
                asyncio.IncompleteReadError, asyncio.TimeoutError) as e:
            logger.warning(f"Rejected direct connection from {peer_addr}: {e}")
            writer.close()
            return

        peer_id, on_open = expected
        channel = StreamChannel(peer_id, reader, writer)
        channel.start()
        logger.info(f"Direct channel from {peer_id} accepted ({peer_addr})")
        try:
            await on_open(channel)
        except Exception as e:
            logger.error(f"Direct channel open callback error: {e}", exc_info=True)
            await channel.close()
