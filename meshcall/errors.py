"""Exception taxonomy for meshcall.

Per-peer errors (``NegotiationError``, ``IceFailure``) are handled inside the
call session and only remove the affected peer. Call-level errors
(``TransportError``, and ``MediaAccessError`` raised while joining) surface as
a terminal call state.
"""

from typing import Optional


class MediaAccessError(Exception):
    """Raised when a capture device is denied, missing, or fails to open."""

    def __init__(self, message: str, device: Optional[str] = None):
        super().__init__(message)
        self.device = device


class TransportError(Exception):
    """Raised when the signaling transport cannot subscribe, send, or stays closed."""

    pass


class NegotiationError(Exception):
    """Raised when offer/answer negotiation with a single peer cannot proceed.

    Attributes:
        participant_id: Remote participant the negotiation was with.
    """

    def __init__(self, message: str, participant_id: Optional[str] = None):
        super().__init__(message)
        self.participant_id = participant_id


class IceFailure(Exception):
    """Raised when connectivity to a peer is lost and the restart policy is exhausted."""

    def __init__(self, message: str, participant_id: Optional[str] = None):
        super().__init__(message)
        self.participant_id = participant_id


class ProtocolError(ValueError):
    """Raised when a signaling payload cannot be decoded into an envelope."""

    pass
