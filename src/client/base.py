"""Collaborator interfaces for the connection session.

The connection session drives negotiation through these seams so that the
state machine can run against aiortc in production and lightweight fakes in
tests:

- SignalingChannel: ordered, non-blocking delivery of client messages
- PeerConnection: one negotiated media connection with a single partner
- MediaSource / LocalMedia: acquisition and release of local capture
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, Literal, TypeAlias

from src.signaling.transport.websocket_protocol import IceCandidate

DescriptionKind: TypeAlias = Literal["offer", "answer"]

# Connection states that end a negotiated connection
TERMINAL_CONNECTION_STATES = frozenset({"failed", "closed"})


class SignalingChannel(ABC):
    """Client side of the signaling connection."""

    @abstractmethod
    def send(self, message: Any) -> bool:
        """Queue a client message for delivery without blocking.

        Args:
            message: ClientMessage model instance

        Returns:
            True if the message was queued, False if the channel is down
        """
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the channel currently has a live server connection."""
        pass


class LocalMedia(ABC):
    """Local capture held by a session until released."""

    @property
    @abstractmethod
    def tracks(self) -> list[Any]:
        """Media tracks to attach to a peer connection."""
        pass

    @abstractmethod
    def release(self) -> None:
        """Stop capture; the tracks are unusable afterwards."""
        pass


class MediaSource(ABC):
    """Factory for local capture."""

    @abstractmethod
    async def acquire(self) -> LocalMedia:
        """Acquire local capture.

        Raises:
            MediaAcquisitionError: If capture is unavailable or denied
        """
        pass


class PeerConnection(ABC):
    """One media connection negotiated with a single partner.

    Callbacks are assigned by the owner after construction:

    - on_ice_candidate(candidate): local candidate produced; None marks
      end-of-candidates
    - on_connection_state(state): connection state changed
    - on_track(track): remote track received
    """

    def __init__(self) -> None:
        self.on_ice_candidate: Callable[[IceCandidate | None], None] | None = None
        self.on_connection_state: Callable[[str], None] | None = None
        self.on_track: Callable[[Any], None] | None = None

    @property
    @abstractmethod
    def connection_state(self) -> str:
        """Current connection state (new, connecting, connected, failed, closed)."""
        pass

    @abstractmethod
    def add_tracks(self, media: LocalMedia) -> None:
        """Attach local capture to the connection."""
        pass

    @abstractmethod
    async def create_offer(self) -> str:
        """Create an offer, apply it as the local description and return its SDP."""
        pass

    @abstractmethod
    async def create_answer(self) -> str:
        """Create an answer, apply it as the local description and return its SDP."""
        pass

    @abstractmethod
    async def set_remote_description(self, kind: DescriptionKind, sdp: str) -> None:
        """Apply the partner's description.

        Raises:
            NegotiationError: If the description cannot be applied
        """
        pass

    @abstractmethod
    async def add_ice_candidate(self, candidate: IceCandidate | None) -> None:
        """Apply a remote candidate; None marks end-of-candidates.

        Raises:
            NegotiationError: If the candidate cannot be applied
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Tear down the connection."""
        pass


PeerConnectionFactory: TypeAlias = Callable[[], PeerConnection]
