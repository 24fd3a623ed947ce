"""Shared pytest fixtures and in-memory fakes."""

import asyncio
import logging
import os

import pytest

from signaling.models import Peer
from transfer.channels import Channel, RelayChannel
from transfer.coordinator import TransferCoordinator
from transfer.errors import ChannelError
from transfer.framing import decode
from transfer.models import ChannelKind

logger = logging.getLogger(__name__)

class RecordingChannel(Channel):
    """Channel that keeps every frame it is given instead of sending it."""

    kind = ChannelKind.DIRECT

    def __init__(self, peer_id="peer-b", ordered=True, refuse=0, on_send=None):
        super().__init__(peer_id)
        self.ordered = ordered
        self.frames: list[bytes] = []
        self.refuse = refuse  # send() calls to refuse; -1 refuses forever
        self.on_send = on_send
        self.attempts = 0

    def send(self, frame):
        if self._closed:
            raise ChannelError("closed")
        self.attempts += 1
        if self.refuse:
            if self.refuse > 0:
                self.refuse -= 1
            return False
        self.frames.append(frame)
        if self.on_send:
            self.on_send(self, frame)
        return True

    def buffered_bytes(self):
        return 0

    def decoded(self):
        return [decode(f) for f in self.frames]


class DrainingChannel(RecordingChannel):
    """
    Channel with a simulated outbound buffer: send() adds the frame size,
    every buffered_bytes() poll drains ``drain_step`` bytes.
    """

    def __init__(self, drain_step, **kwargs):
        super().__init__(**kwargs)
        self.drain_step = drain_step
        self.buffered = 0
        self.peak = 0

    def send(self, frame):
        accepted = super().send(frame)
        if accepted:
            self.buffered += len(frame)
            self.peak = max(self.peak, self.buffered)
        return accepted

    def buffered_bytes(self):
        self.buffered = max(0, self.buffered - self.drain_step)
        return self.buffered


class EventLog:
    """Collects coordinator events; usable as an on_event callback."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []
        self._changed = asyncio.Event()
        self.handlers = {}

    async def __call__(self, event, data):
        self.events.append((event, data))
        self._changed.set()
        handler = self.handlers.get(event)
        if handler:
            await handler(data)

    def names(self):
        return [e for e, _ in self.events]

    def count(self, name):
        return self.names().count(name)

    def all(self, name):
        return [d for e, d in self.events if e == name]

    async def wait_for(self, name, timeout=5.0):
        async def _wait():
            while True:
                for event, data in self.events:
                    if event == name:
                        return data
                self._changed.clear()
                await self._changed.wait()

        return await asyncio.wait_for(_wait(), timeout)


class FakeSignaling:
    """In-process stand-in for SignalingClient, joined to a FakeHub."""

    def __init__(self, hub, peer_id, name):
        self.hub = hub
        self.peer_id = peer_id
        self.device_name = name
        self.connected = True
        self._callbacks = {}
        self._relays = {}
        self._inbox = asyncio.Queue()
        self._pump = asyncio.create_task(self._run())

    @property
    def peers(self):
        if not self.connected:
            return {}
        return {
            pid: Peer(peer_id=pid, name=member.device_name)
            for pid, member in self.hub.members.items()
            if pid != self.peer_id
        }

    def on(self, event, callback):
        self._callbacks.setdefault(event, []).append(callback)

    def post(self, kind, *args):
        self._inbox.put_nowait((kind, args))

    async def _run(self):
        while True:
            kind, args = await self._inbox.get()
            if kind == "relay":
                sender_id, frame = args
                channel = self._relays.get(sender_id)
                if channel is not None:
                    channel.deliver(frame)
                continue
            for cb in list(self._callbacks.get(kind, [])):
                try:
                    await cb(*args)
                except Exception as e:
                    logger.error(f"Fake signaling callback error ({kind}): {e}", exc_info=True)

    async def send_offer(self, offer):
        self._check()
        offer = offer.model_copy(
            update={"sender_id": self.peer_id, "sender_name": self.device_name}
        )
        if offer.target_id not in self.hub.members:
            self.post("offer_rejected", offer.target_id, "target not found", offer.transfer_id)
            return
        self.hub.members[offer.target_id].post("offer", offer)

    async def send_accept(self, sender_id, transfer_id=None):
        self._check()
        self.hub.route(self.peer_id, sender_id, "offer_accepted", transfer_id)

    async def send_reject(self, sender_id, reason, transfer_id=None):
        self._check()
        self.hub.route(self.peer_id, sender_id, "offer_rejected", reason, transfer_id)

    async def send_signal(self, target_id, payload):
        self._check()
        self.hub.signals.append((self.peer_id, target_id, payload.get("kind")))
        self.hub.route(self.peer_id, target_id, "signal", payload)

    def _check(self):
        if not self.connected:
            raise ChannelError("Not connected to signaling hub")

    # --- Relay link ---

    def relay_channel(self, peer_id):
        channel = self._relays.get(peer_id)
        if channel is None or channel.closed:
            channel = RelayChannel(peer_id, self)
            if self.hub.unordered:
                channel.ordered = False
            self._relays[peer_id] = channel
        return channel

    def send_relay(self, peer_id, frame):
        self._check()
        target = self.hub.members.get(peer_id)
        if target is not None:
            target.post("relay", self.peer_id, frame)
        return True

    def relay_backlog(self):
        return 0

    def release_relay(self, peer_id, channel):
        if self._relays.get(peer_id) is channel:
            del self._relays[peer_id]


class FakeHub:
    """Routes signaling messages and relay frames between FakeSignaling agents."""

    def __init__(self, unordered=False):
        self.unordered = unordered
        self.members: dict[str, FakeSignaling] = {}
        self.coordinators: list[TransferCoordinator] = []
        self.signals: list[tuple] = []
        self._agents: list[FakeSignaling] = []

    def join(self, peer_id, name=None):
        signaling = FakeSignaling(self, peer_id, name or peer_id)
        self.members[peer_id] = signaling
        self._agents.append(signaling)
        self._announce()
        return signaling

    def leave(self, peer_id):
        signaling = self.members.pop(peer_id)
        signaling.connected = False
        signaling.post("peers_changed", [])
        self._announce()

    def route(self, sender_id, target_id, kind, *args):
        target = self.members.get(target_id)
        if target is not None:
            target.post(kind, sender_id, *args)

    def _announce(self):
        for member in self.members.values():
            member.post("peers_changed", list(member.peers.values()))

    async def shutdown(self):
        for coordinator in self.coordinators:
            await coordinator.stop()
        for agent in self._agents:
            agent._pump.cancel()
        await asyncio.gather(*(a._pump for a in self._agents), return_exceptions=True)


class HangingDirect:
    """Direct endpoint whose connect() never completes."""

    def expect(self, peer_id, on_open):
        return {"host": "192.0.2.1", "port": 9, "token": "unused"}

    def forget(self, peer_id):
        pass

    async def connect(self, peer_id, descriptor):
        await asyncio.sleep(3600)


@pytest.fixture
def make_file(tmp_path):
    """
    Factory for source files with random content.

    Returns:
        fn(size, name="source.bin") -> (path, bytes)
    """
    def _make(size, name="source.bin"):
        data = os.urandom(size)
        path = tmp_path / name
        path.write_bytes(data)
        return str(path), data

    return _make


@pytest.fixture
def hub():
    """Fake signaling hub with relay forwarding."""
    return FakeHub()


@pytest.fixture
def unordered_hub():
    """Fake hub whose relay channels declare unordered delivery."""
    return FakeHub(unordered=True)


@pytest.fixture
def make_agent(tmp_path):
    """
    Factory wiring a TransferCoordinator to a FakeHub.

    Returns:
        async fn(hub, peer_id, **coordinator_kwargs)
            -> (coordinator, signaling, EventLog)
    """
    async def _make(hub, peer_id, **kwargs):
        signaling = hub.join(peer_id)
        kwargs.setdefault("save_dir", str(tmp_path / f"inbox-{peer_id}"))
        kwargs.setdefault("relay_chunk_size", 4096)
        kwargs.setdefault("direct_chunk_size", 4096)
        coordinator = TransferCoordinator(signaling, **kwargs)
        log = EventLog()
        coordinator.on_event(log)
        await coordinator.start()
        hub.coordinators.append(coordinator)
        # let the join announcement reach everyone
        await asyncio.sleep(0.01)
        return coordinator, signaling, log

    return _make


@pytest.fixture
def recording_channel():
    """Factory for RecordingChannel."""
    return RecordingChannel


@pytest.fixture
def draining_channel():
    """Factory for DrainingChannel."""
    return DrainingChannel


@pytest.fixture
def event_log_factory():
    """Factory for EventLog."""
    return EventLog


@pytest.fixture
def hanging_direct():
    return HangingDirect()
