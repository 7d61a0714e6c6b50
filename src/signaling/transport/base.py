"""Base transport abstraction for peer connections.

Defines the interface a transport implementation must provide to the
matchmaker and relay: a stable peer identifier per connection, a
non-blocking "send to id" path, and an inbound message stream whose end
signals the identifier's disconnect.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any


class TransportSession(ABC):
    """Base class for transport-specific peer sessions.

    Each transport implementation provides a concrete session type that handles
    message framing while conforming to this interface.
    """

    @abstractmethod
    def enqueue_message(self, message: Any) -> None:
        """Queue a server message for delivery without blocking.

        Matchmaking and relay call this from synchronous code paths, so it
        must never await network I/O.

        Args:
            message: ServerMessage model instance

        Raises:
            ConnectionError: If the connection is closed
        """
        pass

    @abstractmethod
    async def run_writer(self) -> None:
        """Deliver queued messages until the session closes."""
        pass

    @abstractmethod
    async def receive_messages(self) -> AsyncIterator[Any]:
        """Receive validated client messages.

        Yields ClientMessage models as they arrive. The iterator ends when the
        peer disconnects; malformed frames are rejected to the sender and
        skipped.

        Raises:
            ConnectionError: If the connection breaks abnormally
        """
        # Using yield to make this an async generator
        if False:
            yield None

    @abstractmethod
    async def close(self) -> None:
        """Clean session shutdown.

        Closes the connection and discards undelivered messages.
        """
        pass

    @property
    @abstractmethod
    def peer_id(self) -> str:
        """Unique peer identifier, stable for the connection lifetime."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the session connection is still active."""
        pass


class Transport(ABC):
    """Base transport implementation.

    Manages the lifecycle of a transport type (e.g., WebSocket server) and
    creates sessions for incoming peer connections.
    """

    @abstractmethod
    async def start(self) -> None:
        """Start the transport server.

        Raises:
            RuntimeError: If the transport fails to start
            OSError: If port binding fails (for network transports)
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the transport server and close all sessions."""
        pass

    @abstractmethod
    async def accept_session(self) -> TransportSession:
        """Accept a new peer session.

        Blocks until a new connection is established.

        Raises:
            RuntimeError: If the transport is not running
        """
        pass

    @property
    @abstractmethod
    def transport_type(self) -> str:
        """Transport type identifier (e.g., 'websocket')."""
        pass

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Check if the transport server is currently running."""
        pass
