"""WebSocket transport implementation.

Provides the persistent bidirectional connection each peer holds with the
signaling server. Every connection is assigned a stable peer identifier for
its lifetime; outbound messages are buffered per peer and written by a
dedicated writer task so that matchmaking never awaits network I/O.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.protocol import State

from src.signaling.metrics import MetricsCollector
from src.signaling.transport.base import Transport, TransportSession
from src.signaling.transport.websocket_protocol import (
    ErrorMessage,
    ProtocolError,
    SessionStartMessage,
    parse_client_message,
)

logger = logging.getLogger(__name__)

# Close code sent when max_connections is reached ("try again later")
CLOSE_CODE_SERVER_FULL = 1013


class WebSocketSession(TransportSession):
    """WebSocket-based peer session.

    Implements the TransportSession interface for WebSocket connections,
    handling JSON message serialization and per-peer outbound buffering.
    """

    def __init__(
        self,
        websocket: ServerConnection,
        peer_id: str,
        outbound_queue_size: int = 256,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize WebSocket session.

        Args:
            websocket: WebSocket connection
            peer_id: Unique peer identifier
            outbound_queue_size: Maximum number of undelivered messages
            metrics: Optional metrics collector for protocol errors
        """
        self._websocket = websocket
        self._peer_id = peer_id
        self._connected = True
        self._metrics = metrics

        # None is the writer shutdown sentinel
        self._outbound: asyncio.Queue[Any] = asyncio.Queue(maxsize=outbound_queue_size)

        logger.info(
            "WebSocket session initialized",
            extra={"peer_id": peer_id, "remote": websocket.remote_address},
        )

    @property
    def peer_id(self) -> str:
        """Get unique peer identifier."""
        return self._peer_id

    @property
    def is_connected(self) -> bool:
        """Check if the session connection is still active."""
        return self._connected and self._websocket.state == State.OPEN

    def enqueue_message(self, message: Any) -> None:
        """Queue a server message for delivery without blocking.

        Args:
            message: ServerMessage model instance

        Raises:
            ConnectionError: If the connection is closed
        """
        if not self.is_connected:
            raise ConnectionError("WebSocket connection is closed")

        try:
            self._outbound.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(
                "Outbound queue full, dropping message",
                extra={"peer_id": self._peer_id, "type": message.type},
            )

    async def run_writer(self) -> None:
        """Deliver queued messages until the session closes."""
        try:
            while True:
                message = await self._outbound.get()
                if message is None:
                    break

                await self._websocket.send(message.model_dump_json())

                logger.debug(
                    "Message sent",
                    extra={"peer_id": self._peer_id, "type": message.type},
                )

        except websockets.exceptions.ConnectionClosed:
            self._connected = False
            logger.debug("Writer stopped, connection closed", extra={"peer_id": self._peer_id})
        except asyncio.CancelledError:
            # Clean shutdown
            pass

    async def receive_messages(self) -> AsyncIterator[Any]:
        """Receive validated client messages.

        Yields:
            ClientMessage models in arrival order

        Raises:
            ConnectionError: If the connection breaks abnormally
        """
        try:
            async for raw_message in self._websocket:
                try:
                    message = parse_client_message(raw_message)
                except ProtocolError as e:
                    logger.warning(
                        "Rejected client message",
                        extra={"peer_id": self._peer_id, "code": e.code, "error": str(e)},
                    )
                    if self._metrics is not None:
                        self._metrics.record_protocol_error()
                    self._send_error(str(e), code=e.code)
                    continue

                logger.debug(
                    "Client message received",
                    extra={"peer_id": self._peer_id, "type": message.type},
                )
                yield message

        except websockets.exceptions.ConnectionClosed:
            logger.info("WebSocket connection closed by peer", extra={"peer_id": self._peer_id})
        except Exception as e:
            logger.error(
                "Error in receive_messages",
                extra={"peer_id": self._peer_id, "error": str(e)},
            )
            raise ConnectionError(f"WebSocket receive error: {e}") from e
        finally:
            self._connected = False

    def send_session_start(self) -> None:
        """Send the assigned peer identifier to the client."""
        self.enqueue_message(SessionStartMessage(peerId=self._peer_id))

    def _send_error(self, error_msg: str, code: str = "INTERNAL_ERROR") -> None:
        """Send error message to this peer only."""
        if not self.is_connected:
            return
        self.enqueue_message(ErrorMessage(message=error_msg, code=code))

    async def close(self) -> None:
        """Clean session shutdown.

        Stops the writer and closes the connection. Undelivered messages are
        discarded.
        """
        was_connected = self._connected
        self._connected = False

        while not self._outbound.empty():
            try:
                self._outbound.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._outbound.put_nowait(None)

        if not was_connected and self._websocket.state != State.OPEN:
            return

        logger.info("Closing WebSocket session", extra={"peer_id": self._peer_id})

        try:
            await self._websocket.close()
        except Exception as e:
            logger.warning(
                "Error during session close",
                extra={"peer_id": self._peer_id, "error": str(e)},
            )


class WebSocketTransport(Transport):
    """WebSocket transport server.

    Manages WebSocket server lifecycle and creates WebSocketSession instances
    for incoming peer connections.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 3001,
        max_connections: int = 1000,
        max_message_bytes: int = 2**16,
        outbound_queue_size: int = 256,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize WebSocket transport.

        Args:
            host: Bind host address
            port: Bind port
            max_connections: Maximum concurrent connections
            max_message_bytes: Maximum inbound frame size
            outbound_queue_size: Per-peer outbound buffer size
            metrics: Optional metrics collector handed to sessions
        """
        self._host = host
        self._port = port
        self._max_connections = max_connections
        self._max_message_bytes = max_message_bytes
        self._outbound_queue_size = outbound_queue_size
        self._metrics = metrics
        self._server: Server | None = None
        self._running = False
        self._active: dict[str, WebSocketSession] = {}
        self._session_queue: asyncio.Queue[WebSocketSession] = asyncio.Queue()

        logger.info(
            "WebSocket transport initialized",
            extra={"host": host, "port": port, "max_connections": max_connections},
        )

    @property
    def transport_type(self) -> str:
        """Transport type identifier."""
        return "websocket"

    @property
    def is_running(self) -> bool:
        """Check if the transport server is currently running."""
        return self._running

    @property
    def active_connections(self) -> int:
        """Number of currently open peer connections."""
        return len(self._active)

    async def start(self) -> None:
        """Start the WebSocket server.

        Raises:
            RuntimeError: If the transport fails to start
            OSError: If port binding fails
        """
        if self._running:
            raise RuntimeError("WebSocket transport is already running")

        logger.info("Starting WebSocket server", extra={"host": self._host, "port": self._port})

        try:
            self._server = await serve(
                self._handle_connection,
                self._host,
                self._port,
                max_size=self._max_message_bytes,
            )
            self._running = True

            logger.info(
                "WebSocket server started",
                extra={"host": self._host, "port": self._port},
            )

        except OSError as e:
            logger.error(
                "Failed to bind WebSocket server",
                extra={"host": self._host, "port": self._port, "error": str(e)},
            )
            raise
        except Exception as e:
            logger.error("Failed to start WebSocket server", extra={"error": str(e)})
            raise RuntimeError(f"Failed to start WebSocket transport: {e}") from e

    async def stop(self) -> None:
        """Stop the WebSocket server and close every open connection."""
        if not self._running:
            return

        logger.info("Stopping WebSocket server")

        self._running = False

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("WebSocket server stopped")

    async def accept_session(self) -> TransportSession:
        """Accept a new peer session.

        Raises:
            RuntimeError: If the transport is not running
        """
        if not self._running:
            raise RuntimeError("WebSocket transport is not running")

        return await self._session_queue.get()

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Handle incoming WebSocket connection.

        Args:
            websocket: WebSocket connection
        """
        if len(self._active) >= self._max_connections:
            logger.warning(
                "Connection limit reached, rejecting",
                extra={"remote": websocket.remote_address, "limit": self._max_connections},
            )
            await websocket.close(code=CLOSE_CODE_SERVER_FULL, reason="server full")
            return

        peer_id = f"peer-{uuid.uuid4().hex[:12]}"

        logger.info(
            "New WebSocket connection",
            extra={"peer_id": peer_id, "remote": websocket.remote_address},
        )

        session = WebSocketSession(
            websocket,
            peer_id,
            outbound_queue_size=self._outbound_queue_size,
            metrics=self._metrics,
        )
        self._active[peer_id] = session

        session.send_session_start()
        await self._session_queue.put(session)

        # Keep connection alive until closed
        try:
            await websocket.wait_closed()
        except Exception as e:
            logger.error(
                "Error in connection handler",
                extra={"peer_id": peer_id, "error": str(e)},
            )
        finally:
            self._active.pop(peer_id, None)
            logger.info("WebSocket connection closed", extra={"peer_id": peer_id})
