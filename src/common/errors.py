"""Exception hierarchy shared by the signaling server and client.

Server-side errors (routing, stale queue entries) are always handled locally
and logged; they never reach an unaffected peer. Client-side errors (media,
negotiation, transport) drive the connection session state machine.
"""

from src.common.types import PeerId


class SignalingError(Exception):
    """Base exception for signaling errors."""

    pass


class RoutingError(SignalingError):
    """Raised when a message is addressed to a peer that is not connected."""

    def __init__(self, peer_id: PeerId) -> None:
        super().__init__(f"Peer not connected: {peer_id}")
        self.peer_id = peer_id


class StaleQueueEntry(SignalingError):
    """Raised when a popped waiting-queue entry is no longer live."""

    def __init__(self, peer_id: PeerId) -> None:
        super().__init__(f"Stale queue entry: {peer_id}")
        self.peer_id = peer_id


class MediaAcquisitionError(SignalingError):
    """Raised when local capture is unavailable or denied."""

    pass


class NegotiationError(SignalingError):
    """Raised when an SDP or candidate cannot be applied."""

    pass


class TransportTerminalError(SignalingError):
    """Raised when the underlying connection reports failed or closed."""

    pass
