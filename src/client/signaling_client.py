"""WebSocket signaling client.

Holds the connection to the signaling server, reconnecting after drops, and
feeds validated server messages to a consumer callback (normally
``ConnectionSession.dispatch``). Outbound messages are queued without
blocking and written by a per-connection writer task.

Each reconnection yields a new peer identifier, announced by the server's
``session_start`` message.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection, connect
from websockets.protocol import State

from src.client.base import SignalingChannel
from src.signaling.transport.websocket_protocol import ProtocolError, parse_server_message

logger = logging.getLogger(__name__)


class SignalingClient(SignalingChannel):
    """Reconnecting WebSocket client for the signaling server."""

    def __init__(
        self,
        server_url: str,
        on_message: Callable[[Any], None],
        on_disconnect: Callable[[], None] | None = None,
        reconnection_attempts: int = 5,
        reconnection_delay_s: float = 1.0,
        outbound_queue_size: int = 256,
    ) -> None:
        """Initialize signaling client.

        Args:
            server_url: WebSocket server URL (e.g., ws://localhost:3001)
            on_message: Called with each validated ServerMessage model
            on_disconnect: Called when an established connection drops
            reconnection_attempts: Consecutive failed attempts before giving up
            reconnection_delay_s: Delay between attempts
            outbound_queue_size: Maximum number of unsent messages
        """
        self.server_url = server_url
        self._on_message = on_message
        self._on_disconnect = on_disconnect
        self._reconnection_attempts = reconnection_attempts
        self._reconnection_delay_s = reconnection_delay_s
        self._outbound_queue_size = outbound_queue_size

        self._websocket: ClientConnection | None = None
        self._outbound: asyncio.Queue[Any] = asyncio.Queue(maxsize=outbound_queue_size)
        self._closing = False

    @property
    def is_connected(self) -> bool:
        return self._websocket is not None and self._websocket.state == State.OPEN

    def send(self, message: Any) -> bool:
        """Queue a client message for delivery without blocking."""
        if not self.is_connected:
            return False

        try:
            self._outbound.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Outbound queue full, dropping message", extra={"type": message.type})
            return False
        return True

    async def run(self) -> None:
        """Connect and serve until close() is called.

        Raises:
            ConnectionError: If the server stays unreachable for every attempt
        """
        failures = 0

        while not self._closing:
            try:
                async with connect(self.server_url) as websocket:
                    failures = 0
                    logger.info("Connected to signaling server", extra={"url": self.server_url})
                    await self._serve(websocket)

            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.warning(
                    "Signaling connection failed",
                    extra={"url": self.server_url, "error": str(e)},
                )

            if self._closing:
                break

            failures += 1
            if failures > self._reconnection_attempts:
                raise ConnectionError(
                    f"Signaling server unreachable after {self._reconnection_attempts} reconnection attempts"
                )

            logger.info(
                "Reconnecting to signaling server",
                extra={"attempt": failures, "delay_s": self._reconnection_delay_s},
            )
            await asyncio.sleep(self._reconnection_delay_s)

    async def close(self) -> None:
        """Close the connection and stop reconnecting."""
        self._closing = True
        if self._websocket is not None:
            await self._websocket.close()

    async def _serve(self, websocket: ClientConnection) -> None:
        # Messages queued for a previous connection are addressed to a dead peer id
        self._outbound = asyncio.Queue(maxsize=self._outbound_queue_size)
        self._websocket = websocket
        writer_task = asyncio.create_task(self._write(websocket, self._outbound))

        try:
            async for raw_message in websocket:
                try:
                    message = parse_server_message(raw_message)
                except ProtocolError as e:
                    logger.warning(
                        "Dropping malformed server message",
                        extra={"code": e.code, "error": str(e)},
                    )
                    continue

                logger.debug("Server message received", extra={"type": message.type})
                self._on_message(message)

        except websockets.exceptions.ConnectionClosed:
            logger.info("Connection closed by server")

        finally:
            self._websocket = None
            writer_task.cancel()
            await asyncio.gather(writer_task, return_exceptions=True)

            if not self._closing and self._on_disconnect is not None:
                self._on_disconnect()

    async def _write(self, websocket: ClientConnection, outbound: asyncio.Queue[Any]) -> None:
        try:
            while True:
                message = await outbound.get()
                await websocket.send(message.model_dump_json())
                logger.debug("Message sent", extra={"type": message.type})
        except websockets.exceptions.ConnectionClosed:
            logger.debug("Writer stopped, connection closed")
