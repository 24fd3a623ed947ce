"""
Receiver session: reassembles one incoming file.

Unsequenced frames are appended in arrival order. Sequenced frames are
kept in a sparse map keyed by index, and duplicates are ignored. Once the
fragments held in memory pass a threshold they are consolidated into a
.part file in the save directory, so memory stays bounded whatever the
file size. Finalization renames the .part file into place.
"""

import asyncio
import logging
import os
import time

from config import CONSOLIDATE_THRESHOLD
from transfer.errors import ProtocolError
from transfer.framing import Frame, FrameType
from transfer.models import SessionState, TransferOffer
from transfer.progress import ProgressMeter

logger = logging.getLogger(__name__)


def safe_file_name(name: str) -> str:
    """Strip any directory components a peer may have put in a name."""
    name = os.path.basename(name.replace("\\", "/")).strip()
    if name in ("", ".", ".."):
        return "received_file"
    return name


def unique_path(directory: str, file_name: str) -> str:
    """Return a path in ``directory`` that does not exist yet."""
    path = os.path.join(directory, file_name)
    stem, ext = os.path.splitext(file_name)
    n = 1
    while os.path.exists(path):
        path = os.path.join(directory, f"{stem} ({n}){ext}")
        n += 1
    return path


class ReceiverSession:
    """One inbound transfer from one accepted sender."""

    def __init__(
        self,
        sender_id: str,
        offer: TransferOffer,
        save_dir: str,
        *,
        progress_callback=None,
        consolidate_threshold: int = CONSOLIDATE_THRESHOLD,
    ) -> None:
        self.sender_id = sender_id
        self.transfer_id = offer.transfer_id
        self.file_name = safe_file_name(offer.file_name)
        self.expected_total = offer.file_size
        self.save_dir = save_dir
        self.part_path = os.path.join(
            save_dir, f".{self.file_name}.{self.transfer_id[:8]}.part"
        )
        self.saved_path: str | None = None

        self.bytes_received = 0
        # Bytes already written out to the .part file
        self.last_consolidation_offset = 0
        self._fragments: list[bytes] = []
        self._sparse: dict[int, bytes] = {}
        self._seen: set[int] = set()
        self._pending = 0
        self._threshold = consolidate_threshold

        self._sequenced: bool | None = None
        self._chunk_size: int | None = None
        self._started = False
        self._end_seen = False
        self._file = None

        self.state = SessionState.IDLE
        self.error: str | None = None
        self.last_activity = time.monotonic()
        self._meter = ProgressMeter(self.expected_total)
        self._progress_callback = progress_callback  # async fn(session, ProgressUpdate)
        self._pending_update = None
        self._lock = asyncio.Lock()
        self._done = asyncio.Event()

    @property
    def finished(self) -> bool:
        return self.state in (SessionState.COMPLETED, SessionState.ABORTED)

    @property
    def buffered_bytes(self) -> int:
        """Bytes received but still held in memory."""
        return sum(len(b) for b in self._fragments) + sum(
            len(b) for b in self._sparse.values()
        )

    async def wait(self) -> SessionState:
        await self._done.wait()
        return self.state

    async def handle_frame(self, sender_id: str, frame: Frame) -> None:
        """Feed one decoded frame. Raises ProtocolError for frames to drop."""
        if sender_id != self.sender_id:
            raise ProtocolError(f"Frame from unexpected sender {sender_id}")

        async with self._lock:
            if self.finished:
                logger.debug(f"Ignoring frame {frame.tag:#x} for finished transfer {self.transfer_id}")
                return
            self.last_activity = time.monotonic()

            if frame.tag == FrameType.START:
                await self._on_start(frame.meta)
            elif frame.tag in (FrameType.DATA, FrameType.DATA_SEQ):
                await self._on_data(frame)
            elif frame.tag == FrameType.END:
                await self._on_end(frame.meta)
            elif frame.tag == FrameType.CANCEL:
                await self._abort(f"Cancelled by sender: {frame.meta.reason}")

        # Reported outside the lock so a callback may call abort()
        update, self._pending_update = self._pending_update, None
        if update is not None and self._progress_callback:
            await self._progress_callback(self, update)

    async def _on_start(self, meta) -> None:
        if self._started:
            logger.debug(f"Duplicate START for {self.transfer_id}")
            return
        if meta.transfer_id != self.transfer_id:
            raise ProtocolError(f"START for unknown transfer {meta.transfer_id}")
        if meta.file_size != self.expected_total:
            await self._abort(
                f"Size mismatch: offered {self.expected_total}, started {meta.file_size}"
            )
            return

        self._set_mode(meta.sequenced)
        self._chunk_size = meta.chunk_size
        self._started = True
        self.state = SessionState.STREAMING
        logger.info(
            f"Receiving '{self.file_name}' ({self.expected_total} bytes) from "
            f"{self.sender_id}{' sequenced' if meta.sequenced else ''}"
        )

        # Sequenced chunks may have overtaken START
        for seq in sorted(self._sparse):
            if not self._in_bounds(seq, len(self._sparse[seq])):
                data = self._sparse.pop(seq)
                self._seen.discard(seq)
                self.bytes_received -= len(data)
                self._pending -= len(data)
                logger.warning(f"Dropped misfit chunk {seq} from {self.sender_id}")

        if self._pending >= self._threshold:
            await self._consolidate()
        await self._try_complete()

    async def _on_data(self, frame: Frame) -> None:
        data = frame.payload
        if frame.seq is not None:
            self._set_mode(True)
            if frame.seq in self._seen:
                return
            if self._chunk_size is not None and not self._in_bounds(frame.seq, len(data)):
                raise ProtocolError(f"Chunk {frame.seq} does not fit the offered file")
            self._seen.add(frame.seq)
            self._sparse[frame.seq] = data
        else:
            self._set_mode(False)
            if self.bytes_received + len(data) > self.expected_total:
                raise ProtocolError("More data than offered")
            if self.state == SessionState.IDLE:
                # Implicit start: the offer already told us the size
                self.state = SessionState.STREAMING
            self._fragments.append(data)

        self.bytes_received += len(data)
        self._pending += len(data)

        if self._pending >= self._threshold:
            await self._consolidate()

        update = self._meter.update(self.bytes_received)
        if update is not None:
            self._pending_update = update

        if self._sequenced:
            await self._try_complete()

    async def _on_end(self, meta) -> None:
        if not self._started and self._sequenced is False:
            raise ProtocolError("END without START")
        self._end_seen = True

        # Sequenced frames may arrive in any order, END and START included
        if not self._started or self._sequenced:
            await self._try_complete()
            if not self.finished:
                logger.debug(
                    f"END for {self.transfer_id} before all data "
                    f"({self.bytes_received}/{self.expected_total}), waiting"
                )
            return

        if self.bytes_received != self.expected_total:
            await self._abort(
                f"Incomplete transfer: {self.bytes_received} of {self.expected_total} bytes"
            )
            return
        await self._finalize()

    async def _try_complete(self) -> None:
        if not self._started or self.finished:
            return
        if self.bytes_received != self.expected_total:
            return
        if self.expected_total == 0 and not self._end_seen:
            return
        await self._finalize()

    def _set_mode(self, sequenced: bool) -> None:
        if self._sequenced is None:
            self._sequenced = sequenced
        elif self._sequenced != sequenced:
            raise ProtocolError("Mixed sequenced and unsequenced frames")

    def _in_bounds(self, seq: int, length: int) -> bool:
        """Whether chunk ``seq`` exactly fills its slot. Only the last may be short."""
        offset = seq * self._chunk_size
        if length <= 0 or offset + length > self.expected_total:
            return False
        return length == self._chunk_size or offset + length == self.expected_total

    # --- Consolidation and output ---

    async def _consolidate(self) -> None:
        """Move every fragment held in memory into the .part file."""
        if self._sequenced and self._chunk_size is None:
            return  # positions unknown until START
        if not self._fragments and not self._sparse:
            return

        if self._sequenced:
            items = sorted(self._sparse.items())
            self._sparse = {}
            await asyncio.to_thread(self._write_sparse, items)
            written = sum(len(b) for _, b in items)
        else:
            block = b"".join(self._fragments)
            self._fragments = []
            await asyncio.to_thread(self._append, block)
            written = len(block)

        self.last_consolidation_offset += written
        self._pending = 0
        logger.debug(f"Consolidated {written} bytes of {self.transfer_id}")

    def _open(self):
        if self._file is None:
            os.makedirs(self.save_dir, exist_ok=True)
            self._file = open(self.part_path, "w+b")
        return self._file

    def _append(self, block: bytes) -> None:
        f = self._open()
        f.seek(0, os.SEEK_END)
        f.write(block)

    def _write_sparse(self, items: list[tuple[int, bytes]]) -> None:
        f = self._open()
        for seq, data in items:
            f.seek(seq * self._chunk_size)
            f.write(data)

    def _commit(self) -> str:
        f = self._open()
        f.close()
        self._file = None
        path = unique_path(self.save_dir, self.file_name)
        os.replace(self.part_path, path)
        return path

    def _discard(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
        if os.path.exists(self.part_path):
            os.remove(self.part_path)

    async def _finalize(self) -> None:
        if self.finished:
            return
        try:
            await self._consolidate()
            self.saved_path = await asyncio.to_thread(self._commit)
        except OSError as e:
            await self._abort(f"Could not save file: {e}")
            return

        self.state = SessionState.COMPLETED
        self._seen = set()
        logger.info(f"Received '{self.file_name}' from {self.sender_id} -> {self.saved_path}")
        self._pending_update = self._meter.finish()
        self._done.set()

    async def _abort(self, reason: str) -> None:
        if self.finished:
            return
        self.state = SessionState.ABORTED
        self.error = reason
        self._fragments = []
        self._sparse = {}
        self._seen = set()
        try:
            await asyncio.to_thread(self._discard)
        except OSError as e:
            logger.warning(f"Could not remove {self.part_path}: {e}")
        logger.info(f"Receive of '{self.file_name}' from {self.sender_id} aborted: {reason}")
        self._done.set()

    async def abort(self, reason: str) -> None:
        """Abandon the transfer and delete partial data."""
        async with self._lock:
            await self._abort(reason)
