"""Pydantic models for signaling and presence."""

from pydantic import BaseModel


class Peer(BaseModel):
    """A device currently connected to the signaling hub."""
    peer_id: str
    name: str
    device_type: str = "desktop"
    address: str = ""


class RegisterMessage(BaseModel):
    """First message a client sends after connecting to the hub."""
    name: str = "Unknown Device"
    device_type: str = "desktop"


# --- Wire messages ---

class SignalType:
    """JSON message types exchanged with the hub."""
    REGISTER = "register"
    WELCOME = "welcome"
    PEERS = "peers"
    OFFER = "offer"
    ACCEPT = "accept"
    REJECT = "reject"
    SIGNAL = "signal"


def pack_relay(peer_id: str, frame: bytes) -> bytes:
    """Binary relay envelope: 1-byte id length, peer id, frame."""
    pid = peer_id.encode("utf-8")
    if len(pid) > 255:
        raise ValueError("Peer id too long")
    return bytes((len(pid),)) + pid + frame


def unpack_relay(data: bytes) -> tuple[str, bytes]:
    """Inverse of pack_relay. Raises ValueError on a truncated envelope."""
    if not data:
        raise ValueError("Empty relay message")
    n = data[0]
    if len(data) < 1 + n:
        raise ValueError("Truncated relay envelope")
    return data[1:1 + n].decode("utf-8"), data[1 + n:]
