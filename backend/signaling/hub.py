"""
Signaling and relay hub.

Every agent keeps one WebSocket open to the hub. The hub assigns each
connection a fresh peer id, keeps the device list, routes JSON messages
addressed with ``target_id`` (stamping ``sender_id``) and forwards binary
relay frames between peers.
"""

import asyncio
import json
import logging
import uuid

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from signaling.models import Peer, RegisterMessage, SignalType, pack_relay, unpack_relay

logger = logging.getLogger(__name__)

ROUTED_TYPES = (SignalType.OFFER, SignalType.ACCEPT, SignalType.REJECT, SignalType.SIGNAL)


class SignalingHub:
    """Tracks connected devices and routes messages between them."""

    def __init__(self) -> None:
        self._sockets: dict[str, WebSocket] = {}
        self._send_locks: dict[str, asyncio.Lock] = {}
        self._peers: dict[str, Peer] = {}  # registered devices only

    def get_peers(self) -> list[Peer]:
        return list(self._peers.values())

    async def serve(self, websocket: WebSocket) -> None:
        """Run one client connection until it disconnects."""
        await websocket.accept()
        peer_id = uuid.uuid4().hex
        address = websocket.client.host if websocket.client else ""
        self._sockets[peer_id] = websocket
        self._send_locks[peer_id] = asyncio.Lock()
        logger.info(f"Device connected: {peer_id} ({address})")

        try:
            await self._send_json(peer_id, {"type": SignalType.WELCOME, "peer_id": peer_id})
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                if message.get("bytes") is not None:
                    await self._relay(peer_id, message["bytes"])
                elif message.get("text") is not None:
                    await self._handle_text(peer_id, address, message["text"])
        except WebSocketDisconnect:
            pass
        finally:
            self._sockets.pop(peer_id, None)
            self._send_locks.pop(peer_id, None)
            was_registered = self._peers.pop(peer_id, None) is not None
            logger.info(f"Device disconnected: {peer_id}")
            if was_registered:
                await self._broadcast_peers()

    async def _handle_text(self, peer_id: str, address: str, text: str) -> None:
        try:
            data = json.loads(text)
            msg_type = data["type"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring malformed message from {peer_id}: {e}")
            return

        if msg_type == SignalType.REGISTER:
            try:
                reg = RegisterMessage(**{k: v for k, v in data.items() if k != "type"})
            except ValidationError as e:
                logger.warning(f"Bad register from {peer_id}: {e}")
                return
            self._peers[peer_id] = Peer(
                peer_id=peer_id,
                name=reg.name,
                device_type=reg.device_type,
                address=address,
            )
            logger.info(f"Registered {reg.name} as {peer_id}")
            await self._broadcast_peers()
        elif msg_type in ROUTED_TYPES:
            await self._route(peer_id, msg_type, data)
        else:
            logger.debug(f"Unknown message type {msg_type!r} from {peer_id}")

    async def _route(self, sender_id: str, msg_type: str, data: dict) -> None:
        target_id = data.pop("target_id", None)
        data["sender_id"] = sender_id

        transfer_id = None
        if msg_type == SignalType.OFFER and isinstance(data.get("offer"), dict):
            sender = self._peers.get(sender_id)
            data["offer"]["sender_id"] = sender_id
            data["offer"]["sender_name"] = sender.name if sender else "Unknown"
            transfer_id = data["offer"].get("transfer_id")

        if target_id not in self._peers:
            logger.info(f"{msg_type} from {sender_id} to unknown target {target_id}")
            if msg_type == SignalType.OFFER:
                await self._send_json(sender_id, {
                    "type": SignalType.REJECT,
                    "sender_id": target_id,
                    "reason": "target not found",
                    "transfer_id": transfer_id,
                })
            return

        await self._send_json(target_id, data)

    async def _relay(self, sender_id: str, data: bytes) -> None:
        try:
            target_id, frame = unpack_relay(data)
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning(f"Bad relay message from {sender_id}: {e}")
            return
        if target_id not in self._sockets:
            logger.debug(f"Dropping relay frame from {sender_id} to unknown {target_id}")
            return
        await self._send(target_id, pack_relay(sender_id, frame))

    async def _broadcast_peers(self) -> None:
        for peer_id in list(self._peers):
            peers = [
                p.model_dump() for pid, p in self._peers.items() if pid != peer_id
            ]
            await self._send_json(peer_id, {"type": SignalType.PEERS, "peers": peers})

    async def _send_json(self, peer_id: str, data: dict) -> None:
        await self._send(peer_id, json.dumps(data))

    async def _send(self, peer_id: str, message: str | bytes) -> None:
        ws = self._sockets.get(peer_id)
        lock = self._send_locks.get(peer_id)
        if ws is None or lock is None:
            return
        try:
            async with lock:
                if isinstance(message, bytes):
                    await ws.send_bytes(message)
                else:
                    await ws.send_text(message)
        except (WebSocketDisconnect, RuntimeError, ConnectionError) as e:
            logger.debug(f"Send to {peer_id} failed: {e}")
