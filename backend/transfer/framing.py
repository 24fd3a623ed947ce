"""
Chunk framing.

Every frame starts with a one-byte type tag, so control and data frames
are told apart without looking at their size or encoding:

    START     0x01 | JSON StartMeta
    DATA      0x02 | payload
    DATA_SEQ  0x03 | index (4 bytes, big-endian) | payload
    END       0x04 | JSON EndMeta
    CANCEL    0x05 | JSON CancelMeta
"""

import json
import struct
from dataclasses import dataclass
from enum import Enum

from pydantic import ValidationError

from transfer.errors import ProtocolError
from transfer.models import CancelMeta, EndMeta, StartMeta

SEQ_FORMAT = "!I"
SEQ_SIZE = struct.calcsize(SEQ_FORMAT)
MAX_SEQ = 0xFFFFFFFF


class FrameType:
    START = 0x01
    DATA = 0x02
    DATA_SEQ = 0x03
    END = 0x04
    CANCEL = 0x05


class FrameKind(str, Enum):
    DATA = "data"
    CONTROL = "control"


_CONTROL_META = {
    FrameType.START: StartMeta,
    FrameType.END: EndMeta,
    FrameType.CANCEL: CancelMeta,
}


@dataclass
class Frame:
    """A decoded frame."""
    tag: int
    payload: bytes = b""
    seq: int | None = None
    meta: StartMeta | EndMeta | CancelMeta | None = None

    @property
    def kind(self) -> FrameKind:
        if self.tag in (FrameType.DATA, FrameType.DATA_SEQ):
            return FrameKind.DATA
        return FrameKind.CONTROL


def encode_data(buf: bytes, seq: int | None = None) -> bytes:
    """Frame a chunk of file data, with a sequence index if given."""
    if seq is None:
        return bytes((FrameType.DATA,)) + buf
    if not 0 <= seq <= MAX_SEQ:
        raise ValueError(f"Sequence index out of range: {seq}")
    return bytes((FrameType.DATA_SEQ,)) + struct.pack(SEQ_FORMAT, seq) + buf


def encode_control(tag: int, meta=None) -> bytes:
    """Frame a control marker. ``meta`` defaults to the tag's empty model."""
    model = _CONTROL_META.get(tag)
    if model is None:
        raise ValueError(f"Not a control frame type: {tag:#x}")
    if meta is None:
        meta = model()
    return bytes((tag,)) + meta.model_dump_json().encode("utf-8")


def encode_start(meta: StartMeta) -> bytes:
    return encode_control(FrameType.START, meta)


def encode_end(chunks: int, total: int) -> bytes:
    return encode_control(FrameType.END, EndMeta(chunks=chunks, total=total))


def encode_cancel(reason: str = "cancelled", transfer_id: str | None = None) -> bytes:
    return encode_control(FrameType.CANCEL, CancelMeta(reason=reason, transfer_id=transfer_id))


def decode(frame: bytes) -> Frame:
    """Parse raw frame bytes. Raises ProtocolError on anything malformed."""
    if not frame:
        raise ProtocolError("Empty frame")

    tag = frame[0]
    body = memoryview(frame)[1:]

    if tag == FrameType.DATA:
        return Frame(tag=tag, payload=body.tobytes())

    if tag == FrameType.DATA_SEQ:
        if len(body) < SEQ_SIZE:
            raise ProtocolError("Truncated sequence header")
        (seq,) = struct.unpack_from(SEQ_FORMAT, body)
        return Frame(tag=tag, payload=body[SEQ_SIZE:].tobytes(), seq=seq)

    model = _CONTROL_META.get(tag)
    if model is None:
        raise ProtocolError(f"Unknown frame type {tag:#x}")
    try:
        meta = model(**json.loads(body.tobytes().decode("utf-8") or "{}"))
    except (UnicodeDecodeError, json.JSONDecodeError, TypeError, ValidationError) as e:
        raise ProtocolError(f"Bad {model.__name__} in frame: {e}") from e
    return Frame(tag=tag, meta=meta)
