"""Pydantic models for file transfer."""

from enum import Enum

from pydantic import BaseModel


class TransferState(str, Enum):
    """All possible states for a file transfer, as shown to the UI."""
    PENDING = "pending"
    AWAITING_ACCEPTANCE = "awaiting_acceptance"
    REJECTED = "rejected"
    CONNECTING = "connecting"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransferDirection(str, Enum):
    SENDING = "sending"
    RECEIVING = "receiving"


class BusyState(str, Enum):
    """Per peer pair availability."""
    IDLE = "idle"
    OFFER_OUTGOING = "offer_outgoing"
    OFFER_INCOMING = "offer_incoming"
    ACTIVE = "active"


class SessionState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"


class ChannelKind(str, Enum):
    DIRECT = "direct"
    RELAY = "relay"


class TransferOffer(BaseModel):
    """A sender's proposal to transfer one file to one peer."""
    transfer_id: str
    file_name: str
    file_size: int
    mime_type: str = "application/octet-stream"
    sender_id: str = ""
    sender_name: str = ""
    target_id: str


class TransferInfo(BaseModel):
    """Full state of a single file transfer, exposed to the frontend."""
    transfer_id: str
    file_name: str
    file_size: int
    mime_type: str = "application/octet-stream"
    transferred_bytes: int = 0
    state: TransferState = TransferState.PENDING
    direction: TransferDirection
    peer_id: str
    peer_name: str = ""
    channel: ChannelKind | None = None
    speed_bps: float = 0.0
    progress_percent: float = 0.0
    eta_seconds: float = 0.0
    saved_path: str | None = None
    error_message: str | None = None


class ProgressUpdate(BaseModel):
    transferred_bytes: int
    total: int
    percent: float
    speed_bps: float
    eta_seconds: float


# --- Control frame metadata ---

class StartMeta(BaseModel):
    """Sent in the START frame before any file data."""
    transfer_id: str
    file_name: str
    file_size: int
    mime_type: str = "application/octet-stream"
    chunk_size: int
    sequenced: bool = False


class EndMeta(BaseModel):
    chunks: int
    total: int


class CancelMeta(BaseModel):
    reason: str = "cancelled"
    transfer_id: str | None = None  # unset matches whatever is in progress
