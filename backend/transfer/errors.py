"""Exceptions raised by the transfer engine."""


class TransferError(Exception):
    """Base class; the message is the human-readable reason."""

    @property
    def reason(self) -> str:
        return str(self)


class UserError(TransferError):
    """Bad local request (no file, no target, already busy). Never hits the network."""


class OfferError(TransferError):
    """An offer could not be delivered or was refused by the target."""


class ChannelError(TransferError):
    """Channel establishment or send failure."""


class PeerLossError(TransferError):
    """The remote peer disappeared."""


class ProtocolError(TransferError):
    """Malformed or unexpected frame. Dropped, never fatal to a session."""
