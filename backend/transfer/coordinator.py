"""
Transfer Coordinator: owns every transfer on this agent.

Keeps one PeerSlot per remote peer that is busy with us, drives the
offer/accept handshake over signaling, picks the channel for each
transfer (direct first, relay as fallback), binds Sender/Receiver
sessions to it and turns their outcomes into UI events. Only the
coordinator inserts into or removes from the slot table.
"""

import asyncio
import logging
import mimetypes
import os
import time
import uuid
from dataclasses import dataclass

from config import (
    BUFFER_HIGH_WATER,
    CONSOLIDATE_THRESHOLD,
    DEFAULT_SAVE_DIR,
    DIRECT_CHUNK_SIZE,
    DIRECT_CONNECT_TIMEOUT,
    OFFER_TIMEOUT,
    RECEIVE_STALL_TIMEOUT,
    RELAY_CHUNK_SIZE,
    SPEED_LIMIT,
)
from transfer.channels import Channel
from transfer.errors import (
    ChannelError,
    OfferError,
    PeerLossError,
    ProtocolError,
    TransferError,
    UserError,
)
from transfer.flow import FlowController
from transfer.framing import FrameType, decode, encode_cancel
from transfer.models import (
    BusyState,
    ChannelKind,
    SessionState,
    TransferDirection,
    TransferInfo,
    TransferOffer,
    TransferState,
)
from transfer.receiver import ReceiverSession
from transfer.sender import SenderSession

logger = logging.getLogger(__name__)


@dataclass
class PeerSlot:
    """Everything the coordinator tracks for one busy peer pair."""
    peer_id: str
    state: BusyState
    info: TransferInfo
    offer: TransferOffer
    file_path: str | None = None
    sender: SenderSession | None = None
    receiver: ReceiverSession | None = None
    relay: Channel | None = None
    direct: Channel | None = None
    carrier: Channel | None = None  # channel the incoming file arrives on
    reply: asyncio.Future | None = None  # (accepted, reason)
    direct_answer: asyncio.Future | None = None
    task: asyncio.Task | None = None
    notified: bool = False  # peer already knows this transfer is over
    finished: bool = False


class TransferCoordinator:
    """Per-peer busy state machine and transfer orchestration."""

    def __init__(
        self,
        signaling,
        direct=None,
        *,
        save_dir: str = DEFAULT_SAVE_DIR,
        direct_chunk_size: int = DIRECT_CHUNK_SIZE,
        relay_chunk_size: int = RELAY_CHUNK_SIZE,
        high_water: int = BUFFER_HIGH_WATER,
        speed_limit: float = SPEED_LIMIT,
        offer_timeout: float = OFFER_TIMEOUT,
        direct_timeout: float = DIRECT_CONNECT_TIMEOUT,
        stall_timeout: float = RECEIVE_STALL_TIMEOUT,
        consolidate_threshold: int = CONSOLIDATE_THRESHOLD,
    ) -> None:
        self._signaling = signaling
        self._direct = direct
        self._slots: dict[str, PeerSlot] = {}
        self._transfers: dict[str, TransferInfo] = {}
        self._event_callbacks: list = []  # async fn(event_type, data)
        self._save_dir = save_dir
        self._direct_chunk_size = direct_chunk_size
        self._relay_chunk_size = relay_chunk_size
        self._high_water = high_water
        self._speed_limit = speed_limit
        self._offer_timeout = offer_timeout
        self._direct_timeout = direct_timeout
        self._stall_timeout = stall_timeout
        self._consolidate_threshold = consolidate_threshold

    # --- Settings ---

    @property
    def save_dir(self) -> str:
        return self._save_dir

    @save_dir.setter
    def save_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)
        self._save_dir = path

    @property
    def speed_limit(self) -> float:
        return self._speed_limit

    @speed_limit.setter
    def speed_limit(self, limit: float) -> None:
        self._speed_limit = max(0, limit)
        for slot in self._slots.values():
            if slot.sender:
                slot.sender.flow.rate_limit = self._speed_limit

    # --- Events ---

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all registered callbacks, in registration order."""
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    def _event(self, slot: PeerSlot, **extra) -> dict:
        data = {
            "peer_id": slot.peer_id,
            "transfer_id": slot.info.transfer_id,
            "file_name": slot.info.file_name,
            "direction": slot.info.direction.value,
        }
        data.update(extra)
        return data

    async def _set_state(self, slot: PeerSlot, state: TransferState) -> None:
        slot.info.state = state
        await self._emit("transfer_state", slot.info.model_dump(mode="json"))

    # --- Lifecycle ---

    async def start(self) -> None:
        """Subscribe to the signaling collaborator."""
        os.makedirs(self._save_dir, exist_ok=True)
        self._signaling.on("peers_changed", self._on_peers_changed)
        self._signaling.on("offer", self._on_offer)
        self._signaling.on("offer_accepted", self._on_offer_accepted)
        self._signaling.on("offer_rejected", self._on_offer_rejected)
        self._signaling.on("signal", self._on_signal)
        logger.info("Transfer coordinator started")

    async def stop(self) -> None:
        """Abandon every transfer."""
        tasks = []
        for slot in list(self._slots.values()):
            if slot.sender:
                slot.sender.cancel("shutting down")
            if slot.receiver:
                await slot.receiver.abort("shutting down")
            if slot.task and not slot.task.done():
                slot.task.cancel()
                tasks.append(slot.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Transfer coordinator stopped")

    def state_of(self, peer_id: str) -> BusyState:
        slot = self._slots.get(peer_id)
        return slot.state if slot else BusyState.IDLE

    def get_transfers(self) -> list[TransferInfo]:
        """Return all transfers seen by this agent."""
        return list(self._transfers.values())

    # --- Slot table ---

    def _insert(self, slot: PeerSlot) -> None:
        self._slots[slot.peer_id] = slot
        self._transfers[slot.info.transfer_id] = slot.info
        slot.relay = self._signaling.relay_channel(slot.peer_id)
        slot.relay.on_data(self._on_frame)
        slot.relay.on_closed(self._on_channel_closed)
        logger.debug(f"Pair with {slot.peer_id} -> {slot.state.value}")

    async def _close_channels(self, slot: PeerSlot) -> None:
        if self._direct is not None:
            self._direct.forget(slot.peer_id)
        for channel in (slot.direct, slot.relay):
            if channel is not None:
                await channel.close()

    async def _finish(
        self,
        slot: PeerSlot,
        event: str | None,
        reason: str | None = None,
        state: TransferState | None = None,
        **extra,
    ) -> None:
        """
        Terminal transition for a slot. Runs once per transfer: the pair
        goes back to Idle and exactly one terminal event is emitted.
        """
        if slot.finished:
            return
        slot.finished = True
        await self._close_channels(slot)
        if self._slots.get(slot.peer_id) is slot:
            del self._slots[slot.peer_id]
        slot.state = BusyState.IDLE
        logger.debug(f"Pair with {slot.peer_id} -> idle")

        info = slot.info
        if state is None:
            state = {
                "transfer_complete": TransferState.COMPLETED,
                "file_received": TransferState.COMPLETED,
                "transfer_rejected": TransferState.REJECTED,
            }.get(event, TransferState.FAILED)
        if state == TransferState.COMPLETED:
            info.progress_percent = 100.0
            info.transferred_bytes = info.file_size
        info.speed_bps = 0
        info.eta_seconds = 0
        info.error_message = reason
        await self._set_state(slot, state)

        if event is not None:
            data = self._event(slot, **extra)
            if reason is not None:
                data["reason"] = reason
            await self._emit(event, data)

    def _notify_peer(self, slot: PeerSlot, reason: str) -> None:
        """Send the peer one CANCEL for this transfer over the relay channel."""
        if slot.notified or slot.finished:
            return
        slot.notified = True
        if slot.relay is None or slot.relay.closed:
            return
        try:
            if not slot.relay.send(encode_cancel(reason, slot.info.transfer_id)):
                logger.warning(f"Relay to {slot.peer_id} full; cancel not sent")
        except ChannelError as e:
            logger.debug(f"Could not notify {slot.peer_id} of cancel: {e}")

    async def _abort(self, slot: PeerSlot, reason: str, notify: bool = False,
                     state: TransferState = TransferState.FAILED) -> None:
        """Tear down a slot in any state, optionally telling the peer."""
        if slot.finished:
            return
        # Finished sessions are reported by their own task
        for session in (slot.sender, slot.receiver):
            if session is not None and session.state == SessionState.COMPLETED:
                return
        if notify:
            self._notify_peer(slot, reason)

        if slot.sender:
            slot.sender.cancel(reason)
        if slot.receiver:
            await slot.receiver.abort(reason)
        if slot.reply and not slot.reply.done():
            slot.reply.cancel()

        await self._finish(slot, "transfer_error", reason, state=state)

        # A task still waiting on the handshake or channel setup has
        # nothing cooperative to check; sessions stop on their own.
        task = slot.task
        if (task and not task.done() and task is not asyncio.current_task()
                and slot.sender is None and slot.receiver is None):
            task.cancel()

    # --- Outgoing ---

    async def offer(
        self, target_id: str, file_path: str, mime_type: str | None = None
    ) -> TransferInfo:
        """Offer a file to a peer. Raises UserError/OfferError synchronously."""
        if not target_id:
            raise UserError("No target selected")
        if not file_path or not os.path.isfile(file_path):
            raise UserError("No file selected")
        if target_id in self._slots:
            raise UserError(f"Already busy with {target_id}")
        peer = self._signaling.peers.get(target_id)
        if peer is None:
            raise OfferError("Target not found")

        file_name = os.path.basename(file_path)
        offer = TransferOffer(
            transfer_id=str(uuid.uuid4()),
            file_name=file_name,
            file_size=os.path.getsize(file_path),
            mime_type=(
                mime_type
                or mimetypes.guess_type(file_name)[0]
                or "application/octet-stream"
            ),
            sender_id=self._signaling.peer_id or "",
            target_id=target_id,
        )
        info = TransferInfo(
            transfer_id=offer.transfer_id,
            file_name=offer.file_name,
            file_size=offer.file_size,
            mime_type=offer.mime_type,
            direction=TransferDirection.SENDING,
            peer_id=target_id,
            peer_name=peer.name,
            state=TransferState.AWAITING_ACCEPTANCE,
        )
        slot = PeerSlot(
            peer_id=target_id,
            state=BusyState.OFFER_OUTGOING,
            info=info,
            offer=offer,
            file_path=file_path,
            reply=asyncio.get_running_loop().create_future(),
        )
        self._insert(slot)

        await self._emit("transfer_pending", self._event(slot, file_size=offer.file_size))
        await self._set_state(slot, TransferState.AWAITING_ACCEPTANCE)
        if not slot.finished:
            slot.task = asyncio.create_task(self._run_outgoing(slot))
        return info

    async def offer_many(self, target_ids: list[str], file_path: str) -> list[TransferInfo]:
        """Offer one file to several peers; one independent transfer each."""
        if not target_ids:
            raise UserError("No target selected")
        infos = []
        last_error: TransferError | None = None
        for target_id in dict.fromkeys(target_ids):
            try:
                infos.append(await self.offer(target_id, file_path))
            except UserError as e:
                if not os.path.isfile(file_path):
                    raise
                logger.warning(f"Skipping {target_id}: {e}")
                last_error = e
            except OfferError as e:
                logger.warning(f"Skipping {target_id}: {e}")
                last_error = e
        if not infos and last_error is not None:
            raise last_error
        return infos

    async def _run_outgoing(self, slot: PeerSlot) -> None:
        peer_id = slot.peer_id
        try:
            await self._signaling.send_offer(slot.offer)
            logger.info(f"Offered '{slot.offer.file_name}' ({slot.offer.file_size} bytes) to {peer_id}")

            try:
                accepted, reason = await asyncio.wait_for(slot.reply, timeout=self._offer_timeout)
            except asyncio.TimeoutError:
                accepted, reason = False, "no response"
                # The peer may still be holding the offer
                self._notify_peer(slot, reason)

            if not accepted:
                logger.info(f"Offer to {peer_id} rejected: {reason}")
                await self._finish(slot, "transfer_rejected", reason)
                return

            slot.state = BusyState.ACTIVE
            await self._set_state(slot, TransferState.CONNECTING)
            channel = await self._select_channel(slot)
            if slot.finished:
                return

            chunk_size = (
                self._direct_chunk_size
                if channel.kind == ChannelKind.DIRECT
                else self._relay_chunk_size
            )
            session = SenderSession(
                peer_id,
                slot.file_path,
                channel,
                transfer_id=slot.offer.transfer_id,
                file_name=slot.offer.file_name,
                total=slot.offer.file_size,
                chunk_size=chunk_size,
                mime_type=slot.offer.mime_type,
                flow=FlowController(
                    channel, high_water=self._high_water, rate_limit=self._speed_limit
                ),
                progress_callback=self._on_send_progress,
            )
            slot.sender = session
            slot.info.channel = channel.kind
            await self._set_state(slot, TransferState.TRANSFERRING)
            await self._emit("transfer_started", self._event(
                slot, total=slot.offer.file_size, channel=channel.kind.value,
            ))

            result = await session.run()
            if result == SessionState.COMPLETED:
                await self._finish(slot, "transfer_complete")
            else:
                reason = session.error or "aborted"
                self._notify_peer(slot, reason)
                await self._finish(slot, "transfer_error", reason)

        except asyncio.CancelledError:
            self._notify_peer(slot, "cancelled")
            await self._finish(slot, "transfer_error", "cancelled", state=TransferState.CANCELLED)
        except TransferError as e:
            logger.error(f"Send to {peer_id} failed: {e}")
            self._notify_peer(slot, e.reason)
            await self._finish(slot, "transfer_error", e.reason)
        except Exception as e:
            logger.error(f"Send to {peer_id} failed: {e}", exc_info=True)
            self._notify_peer(slot, str(e))
            await self._finish(slot, "transfer_error", str(e))
        finally:
            await self._close_channels(slot)

    async def _select_channel(self, slot: PeerSlot) -> Channel:
        """Prefer a direct channel; fall back to relay on timeout or failure."""
        if self._direct is None:
            return slot.relay
        try:
            return await asyncio.wait_for(self._open_direct(slot), timeout=self._direct_timeout)
        except (asyncio.TimeoutError, ChannelError) as e:
            logger.info(f"Direct channel to {slot.peer_id} unavailable ({e!r}); using relay")
            return slot.relay

    async def _open_direct(self, slot: PeerSlot) -> Channel:
        slot.direct_answer = asyncio.get_running_loop().create_future()
        await self._signaling.send_signal(slot.peer_id, {"kind": "direct-request"})
        answer = await slot.direct_answer
        if answer.get("kind") != "direct-answer":
            raise ChannelError("Peer refused a direct channel")
        channel = await self._direct.connect(slot.peer_id, answer)
        await self._attach_direct(slot, channel)
        if channel.closed:
            raise ChannelError("Direct channel closed during setup")
        return channel

    async def _attach_direct(self, slot: PeerSlot, channel: Channel) -> None:
        if slot.finished or self._slots.get(slot.peer_id) is not slot:
            await channel.close()
            return
        slot.direct = channel
        channel.on_data(self._on_frame)
        channel.on_closed(self._on_channel_closed)

    async def _on_send_progress(self, session: SenderSession, update) -> None:
        slot = self._slots.get(session.target_id)
        if slot is None or slot.sender is not session:
            return
        self._apply_progress(slot.info, update)
        await self._emit("transfer_progress", self._event(
            slot,
            percent=update.percent,
            speed=update.speed_bps,
            eta=update.eta_seconds,
            transferred=update.transferred_bytes,
            total=update.total,
        ))

    # --- Incoming ---

    async def _on_offer(self, offer: TransferOffer) -> None:
        sender_id = offer.sender_id
        busy = sender_id in self._slots or any(
            s.state == BusyState.OFFER_INCOMING for s in self._slots.values()
        )
        if busy:
            logger.info(f"Rejecting offer of '{offer.file_name}' from {sender_id}: busy")
            try:
                await self._signaling.send_reject(sender_id, "busy", offer.transfer_id)
            except ChannelError as e:
                logger.warning(f"Could not send busy reply to {sender_id}: {e}")
            return

        info = TransferInfo(
            transfer_id=offer.transfer_id,
            file_name=offer.file_name,
            file_size=offer.file_size,
            mime_type=offer.mime_type,
            direction=TransferDirection.RECEIVING,
            peer_id=sender_id,
            peer_name=offer.sender_name,
            state=TransferState.AWAITING_ACCEPTANCE,
        )
        slot = PeerSlot(
            peer_id=sender_id,
            state=BusyState.OFFER_INCOMING,
            info=info,
            offer=offer,
            reply=asyncio.get_running_loop().create_future(),
        )
        self._insert(slot)
        logger.info(f"Offer of '{offer.file_name}' ({offer.file_size} bytes) from {sender_id}")

        await self._emit("incoming_file", self._event(
            slot,
            sender_name=offer.sender_name,
            file_size=offer.file_size,
            mime_type=offer.mime_type,
        ))
        await self._set_state(slot, TransferState.AWAITING_ACCEPTANCE)
        if not slot.finished:
            slot.task = asyncio.create_task(self._run_incoming(slot))

    async def respond(self, sender_id: str, accept: bool) -> None:
        """Accept or reject the pending offer from ``sender_id``."""
        slot = self._slots.get(sender_id)
        if slot is None or slot.state != BusyState.OFFER_INCOMING:
            raise UserError(f"No pending offer from {sender_id}")
        if not slot.reply.done():
            slot.reply.set_result((accept, "" if accept else "declined"))

    async def _run_incoming(self, slot: PeerSlot) -> None:
        peer_id = slot.peer_id
        try:
            try:
                accepted, reason = await asyncio.wait_for(slot.reply, timeout=self._offer_timeout)
            except asyncio.TimeoutError:
                accepted, reason = False, "timeout"

            if not accepted:
                logger.info(f"Rejecting offer from {peer_id}: {reason}")
                try:
                    await self._signaling.send_reject(peer_id, reason, slot.offer.transfer_id)
                except ChannelError as e:
                    logger.warning(f"Could not send reject to {peer_id}: {e}")
                await self._finish(slot, None, reason, state=TransferState.REJECTED)
                return

            slot.state = BusyState.ACTIVE
            receiver = ReceiverSession(
                peer_id,
                slot.offer,
                self._save_dir,
                progress_callback=self._on_receive_progress,
                consolidate_threshold=self._consolidate_threshold,
            )
            slot.receiver = receiver
            await self._signaling.send_accept(peer_id, slot.offer.transfer_id)
            await self._set_state(slot, TransferState.TRANSFERRING)

            await self._watch_receiver(receiver)

            if receiver.state == SessionState.COMPLETED:
                slot.info.saved_path = receiver.saved_path
                await self._finish(
                    slot,
                    "file_received",
                    path=receiver.saved_path,
                    file_size=receiver.expected_total,
                )
            else:
                reason = receiver.error or "aborted"
                self._notify_peer(slot, reason)
                await self._finish(slot, "transfer_error", reason)

        except asyncio.CancelledError:
            if slot.receiver:
                await slot.receiver.abort("cancelled")
                self._notify_peer(slot, "cancelled")
            await self._finish(slot, "transfer_error", "cancelled", state=TransferState.CANCELLED)
        except TransferError as e:
            logger.error(f"Receive from {peer_id} failed: {e}")
            if slot.receiver:
                await slot.receiver.abort(e.reason)
            self._notify_peer(slot, e.reason)
            await self._finish(slot, "transfer_error", e.reason)
        finally:
            await self._close_channels(slot)

    async def _watch_receiver(self, receiver: ReceiverSession) -> None:
        """Wait for the receiver to finish, aborting it if frames stop."""
        check = min(1.0, self._stall_timeout)
        while not receiver.finished:
            try:
                await asyncio.wait_for(receiver.wait(), timeout=check)
            except asyncio.TimeoutError:
                if time.monotonic() - receiver.last_activity > self._stall_timeout:
                    await receiver.abort("Transfer stalled")

    async def _on_receive_progress(self, session: ReceiverSession, update) -> None:
        slot = self._slots.get(session.sender_id)
        if slot is None or slot.receiver is not session:
            return
        self._apply_progress(slot.info, update)
        await self._emit("receive_progress", self._event(
            slot,
            percent=update.percent,
            speed=update.speed_bps,
            eta=update.eta_seconds,
            transferred=update.transferred_bytes,
            total=update.total,
        ))

    # --- Cancel ---

    async def cancel(self, peer_id: str, reason: str = "cancelled") -> None:
        """Cancel whatever is going on with ``peer_id`` and tell the peer."""
        slot = self._slots.get(peer_id)
        if slot is None:
            raise UserError(f"No transfer with {peer_id}")
        if slot.state == BusyState.OFFER_INCOMING:
            await self.respond(peer_id, False)
            return
        logger.info(f"Cancelling transfer with {peer_id}: {reason}")
        await self._abort(slot, reason, notify=True, state=TransferState.CANCELLED)

    # --- Signaling callbacks ---

    async def _on_peers_changed(self, peers) -> None:
        present = {p.peer_id for p in peers}
        for peer_id, slot in list(self._slots.items()):
            if peer_id not in present:
                loss = PeerLossError(f"Peer {peer_id} disconnected")
                logger.warning(f"{loss} while {slot.state.value}")
                await self._abort(slot, loss.reason)

    def _awaiting_reply(self, peer_id: str, transfer_id: str | None) -> PeerSlot | None:
        """The outgoing offer a reply from ``peer_id`` answers, if still open."""
        slot = self._slots.get(peer_id)
        if slot is None or slot.state != BusyState.OFFER_OUTGOING or slot.reply.done():
            return None
        if transfer_id is not None and transfer_id != slot.offer.transfer_id:
            return None
        return slot

    async def _on_offer_accepted(self, peer_id: str, transfer_id: str | None = None) -> None:
        slot = self._awaiting_reply(peer_id, transfer_id)
        if slot is None:
            logger.warning(f"Ignoring stale accept from {peer_id} ({transfer_id})")
            return
        slot.reply.set_result((True, ""))

    async def _on_offer_rejected(
        self, peer_id: str, reason: str, transfer_id: str | None = None
    ) -> None:
        slot = self._awaiting_reply(peer_id, transfer_id)
        if slot is None:
            logger.warning(f"Ignoring stale reject from {peer_id} ({transfer_id})")
            return
        slot.reply.set_result((False, reason))

    async def _on_signal(self, peer_id: str, payload: dict) -> None:
        kind = payload.get("kind")
        slot = self._slots.get(peer_id)

        if kind == "direct-request":
            answer = {"kind": "direct-refused"}
            if (slot is not None and slot.receiver is not None
                    and not slot.finished and self._direct is not None):
                try:
                    descriptor = self._direct.expect(
                        peer_id, lambda channel: self._attach_direct(slot, channel)
                    )
                    answer = {"kind": "direct-answer", **descriptor}
                except ChannelError as e:
                    logger.warning(f"Cannot offer a direct channel to {peer_id}: {e}")
            try:
                await self._signaling.send_signal(peer_id, answer)
            except ChannelError as e:
                logger.warning(f"Could not answer direct request from {peer_id}: {e}")

        elif kind in ("direct-answer", "direct-refused"):
            if slot is not None and slot.direct_answer and not slot.direct_answer.done():
                slot.direct_answer.set_result(payload)
        else:
            logger.debug(f"Ignoring signal {kind!r} from {peer_id}")

    # --- Channel callbacks ---

    async def _on_frame(self, channel: Channel, raw: bytes) -> None:
        peer_id = channel.peer_id
        slot = self._slots.get(peer_id)
        try:
            frame = decode(raw)
            if slot is None or slot.finished:
                raise ProtocolError(f"No transfer in progress with {peer_id}")

            if frame.tag == FrameType.CANCEL:
                if frame.meta.transfer_id not in (None, slot.info.transfer_id):
                    raise ProtocolError(f"Cancel for another transfer {frame.meta.transfer_id}")
                slot.notified = True

            if slot.receiver is not None:
                if slot.carrier is None and frame.tag != FrameType.CANCEL:
                    slot.carrier = channel
                await slot.receiver.handle_frame(peer_id, frame)
            elif frame.tag == FrameType.CANCEL:
                reason = f"Cancelled by peer: {frame.meta.reason}"
                if slot.sender is not None:
                    slot.sender.cancel(reason)
                else:
                    await self._abort(slot, reason, state=TransferState.CANCELLED)
            else:
                raise ProtocolError(f"Unexpected frame {frame.tag:#x} from {peer_id}")
        except ProtocolError as e:
            logger.warning(f"Dropped frame from {peer_id}: {e}")

    async def _on_channel_closed(self, channel: Channel) -> None:
        slot = self._slots.get(channel.peer_id)
        if slot is None or slot.finished:
            return
        if slot.direct is not channel and slot.relay is not channel:
            return

        reason = f"{channel.kind.value.capitalize()} channel to {channel.peer_id} closed"
        if slot.sender is not None and slot.sender.channel is channel:
            slot.sender.cancel(reason)
        elif slot.receiver is not None and slot.direct is channel:
            if slot.carrier is channel:
                await self._abort(slot, reason)
            else:
                # Never carried the file; send failures arrive as a relayed CANCEL
                logger.info(f"Unused direct channel from {channel.peer_id} closed")
                slot.direct = None

    @staticmethod
    def _apply_progress(info: TransferInfo, update) -> None:
        info.transferred_bytes = update.transferred_bytes
        info.progress_percent = update.percent
        info.speed_bps = update.speed_bps
        info.eta_seconds = update.eta_seconds
