"""Live peer registry.

Maps peer identifiers to their transport sessions. The registry is the single
source of truth for liveness: a peer is live while it is registered and its
connection is open.
"""

import logging
from collections.abc import Iterator
from typing import Any

from src.common.errors import RoutingError
from src.common.types import PeerId
from src.signaling.transport.base import TransportSession

logger = logging.getLogger(__name__)


class PeerRegistry:
    """Registry of connected peers, keyed by peer identifier.

    Thread-safety: NOT thread-safe. Use from the server's event loop only.
    """

    def __init__(self) -> None:
        self._sessions: dict[PeerId, TransportSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[PeerId]:
        return iter(list(self._sessions))

    def register(self, session: TransportSession) -> None:
        """Register a newly connected peer.

        Raises:
            ValueError: If the peer identifier is already registered
        """
        if session.peer_id in self._sessions:
            raise ValueError(f"Peer already registered: {session.peer_id}")

        self._sessions[session.peer_id] = session
        logger.debug("Peer registered", extra={"peer_id": session.peer_id})

    def unregister(self, peer_id: PeerId) -> TransportSession | None:
        """Remove a peer; its identifier is never live again."""
        session = self._sessions.pop(peer_id, None)
        if session is not None:
            logger.debug("Peer unregistered", extra={"peer_id": peer_id})
        return session

    def is_live(self, peer_id: PeerId) -> bool:
        """Check whether a peer is registered and its connection is open."""
        session = self._sessions.get(peer_id)
        return session is not None and session.is_connected

    def send(self, peer_id: PeerId, message: Any) -> None:
        """Queue a message for a live peer without blocking.

        Raises:
            RoutingError: If the peer is not currently connected
        """
        session = self._sessions.get(peer_id)
        if session is None or not session.is_connected:
            raise RoutingError(peer_id)

        try:
            session.enqueue_message(message)
        except ConnectionError as e:
            raise RoutingError(peer_id) from e
