"""
Signaling client.

Keeps one WebSocket open to the hub, reconnecting after failures, and
exposes presence, the offer/accept/reject handshake, opaque signal
messages and per-peer relay channels. Everything outbound goes through a
single ordered queue, so an ``accept`` always reaches the peer before
the first relayed frame that follows it.
"""

import asyncio
import json
import logging

import websockets
from pydantic import ValidationError

from config import DEVICE_NAME, DEVICE_TYPE, RECONNECT_DELAY, SEND_BUFFER_LIMIT, SIGNAL_URL
from signaling.models import Peer, SignalType, pack_relay, unpack_relay
from transfer.channels import RelayChannel
from transfer.errors import ChannelError
from transfer.models import TransferOffer

logger = logging.getLogger(__name__)


class SignalingClient:
    """Connection to the signaling hub, as seen by the transfer coordinator."""

    def __init__(
        self,
        url: str = SIGNAL_URL,
        device_name: str = DEVICE_NAME,
        device_type: str = DEVICE_TYPE,
        backlog_limit: int = SEND_BUFFER_LIMIT,
    ) -> None:
        self._url = url
        self._device_name = device_name
        self._device_type = device_type
        self._backlog_limit = backlog_limit
        self._peer_id: str | None = None
        self._peers: dict[str, Peer] = {}
        self._callbacks: dict[str, list] = {}
        self._relays: dict[str, RelayChannel] = {}
        self._ws = None
        self._outbox: asyncio.Queue | None = None
        self._backlog = 0
        self._task: asyncio.Task | None = None
        self._connected = asyncio.Event()

    @property
    def peer_id(self) -> str | None:
        return self._peer_id

    @property
    def peers(self) -> dict[str, Peer]:
        return dict(self._peers)

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    @property
    def device_name(self) -> str:
        return self._device_name

    @device_name.setter
    def device_name(self, name: str) -> None:
        self._device_name = name
        if self._ws is not None:
            self._register()

    def on(self, event: str, callback) -> None:
        """
        Register an async callback. Events and arguments:

        peers_changed(peers: list[Peer]), offer(offer: TransferOffer),
        offer_accepted(peer_id, transfer_id),
        offer_rejected(peer_id, reason, transfer_id),
        signal(peer_id, payload: dict)

        ``transfer_id`` names the offer being answered, or is None when
        the peer did not say.
        """
        self._callbacks.setdefault(event, []).append(callback)

    async def _fire(self, event: str, *args) -> None:
        for cb in self._callbacks.get(event, []):
            try:
                await cb(*args)
            except Exception as e:
                logger.error(f"Signaling callback error ({event}): {e}", exc_info=True)

    # --- Lifecycle ---

    async def start(self) -> None:
        """Connect in the background; reconnects until stop()."""
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._on_disconnected()
        logger.info("Signaling client stopped")

    async def wait_connected(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self._connected.wait(), timeout)

    async def _run(self) -> None:
        while True:
            try:
                async with websockets.connect(self._url, max_size=None) as ws:
                    await self._session(ws)
            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
                logger.warning(f"Signaling connection to {self._url} failed: {e}")
            await self._on_disconnected()
            await asyncio.sleep(RECONNECT_DELAY)

    async def _session(self, ws) -> None:
        self._ws = ws
        self._outbox = asyncio.Queue()
        self._backlog = 0
        pump = asyncio.create_task(self._pump(ws, self._outbox))
        try:
            self._register()
            async for message in ws:
                if isinstance(message, bytes):
                    self._on_relay(message)
                else:
                    await self._on_text(message)
        finally:
            pump.cancel()
            self._ws = None

    async def _pump(self, ws, outbox: asyncio.Queue) -> None:
        while True:
            item = await outbox.get()
            try:
                await ws.send(item)
            except websockets.exceptions.ConnectionClosed:
                return
            if isinstance(item, bytes):
                self._backlog -= len(item)

    async def _on_disconnected(self) -> None:
        self._ws = None
        self._outbox = None
        self._backlog = 0
        self._peer_id = None
        self._connected.clear()
        for channel in list(self._relays.values()):
            await channel.close()
        self._relays.clear()
        if self._peers:
            logger.info("Lost signaling connection; all peers gone")
            self._peers = {}
            await self._fire("peers_changed", [])

    # --- Inbound ---

    async def _on_text(self, text: str) -> None:
        try:
            data = json.loads(text)
            msg_type = data["type"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring malformed hub message: {e}")
            return

        try:
            if msg_type == SignalType.WELCOME:
                self._peer_id = data["peer_id"]
                self._connected.set()
                logger.info(f"Connected to hub as {self._peer_id}")
            elif msg_type == SignalType.PEERS:
                self._peers = {p["peer_id"]: Peer(**p) for p in data["peers"]}
                await self._fire("peers_changed", list(self._peers.values()))
            elif msg_type == SignalType.OFFER:
                await self._fire("offer", TransferOffer(**data["offer"]))
            elif msg_type == SignalType.ACCEPT:
                await self._fire("offer_accepted", data["sender_id"], data.get("transfer_id"))
            elif msg_type == SignalType.REJECT:
                await self._fire(
                    "offer_rejected",
                    data["sender_id"],
                    data.get("reason", "rejected"),
                    data.get("transfer_id"),
                )
            elif msg_type == SignalType.SIGNAL:
                await self._fire("signal", data["sender_id"], data.get("payload") or {})
            else:
                logger.debug(f"Unknown hub message type {msg_type!r}")
        except (KeyError, TypeError, ValidationError) as e:
            logger.warning(f"Ignoring bad {msg_type} message from hub: {e}")

    def _on_relay(self, data: bytes) -> None:
        try:
            sender_id, frame = unpack_relay(data)
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning(f"Bad relay message from hub: {e}")
            return
        channel = self._relays.get(sender_id)
        if channel is None:
            logger.debug(f"Dropping relay frame from {sender_id}: no open channel")
            return
        channel.deliver(frame)

    # --- Outbound ---

    def _post(self, item: str | bytes) -> None:
        if self._outbox is None:
            raise ChannelError("Not connected to signaling hub")
        self._outbox.put_nowait(item)

    def _post_json(self, data: dict) -> None:
        self._post(json.dumps(data))

    def _register(self) -> None:
        self._post_json({
            "type": SignalType.REGISTER,
            "name": self._device_name,
            "device_type": self._device_type,
        })

    async def send_offer(self, offer: TransferOffer) -> None:
        self._post_json({
            "type": SignalType.OFFER,
            "target_id": offer.target_id,
            "offer": offer.model_dump(mode="json"),
        })

    async def send_accept(self, sender_id: str, transfer_id: str | None = None) -> None:
        self._post_json({
            "type": SignalType.ACCEPT,
            "target_id": sender_id,
            "transfer_id": transfer_id,
        })

    async def send_reject(
        self, sender_id: str, reason: str, transfer_id: str | None = None
    ) -> None:
        self._post_json({
            "type": SignalType.REJECT,
            "target_id": sender_id,
            "reason": reason,
            "transfer_id": transfer_id,
        })

    async def send_signal(self, target_id: str, payload: dict) -> None:
        self._post_json({"type": SignalType.SIGNAL, "target_id": target_id, "payload": payload})

    # --- Relay link (used by RelayChannel) ---

    def relay_channel(self, peer_id: str) -> RelayChannel:
        """Return the open relay channel to ``peer_id``, creating it if needed."""
        channel = self._relays.get(peer_id)
        if channel is None or channel.closed:
            channel = RelayChannel(peer_id, self)
            self._relays[peer_id] = channel
        return channel

    def send_relay(self, peer_id: str, frame: bytes) -> bool:
        if self._outbox is None:
            raise ChannelError("Not connected to signaling hub")
        if self._backlog > self._backlog_limit:
            return False
        data = pack_relay(peer_id, frame)
        self._backlog += len(data)
        self._outbox.put_nowait(data)
        return True

    def relay_backlog(self) -> int:
        backlog = self._backlog
        ws = self._ws
        if ws is not None and ws.transport is not None:
            backlog += ws.transport.get_write_buffer_size()
        return backlog

    def release_relay(self, peer_id: str, channel: RelayChannel) -> None:
        if self._relays.get(peer_id) is channel:
            del self._relays[peer_id]
