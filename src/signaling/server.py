"""Signaling server with WebSocket transport, matchmaking and relay.

Main server implementation that:
1. Starts WebSocket transport
2. Provides HTTP health check and metrics endpoints
3. Accepts peer sessions and registers their identifiers
4. Maps join-queue / next / leave onto the Matchmaker
5. Relays signaling payloads between peers
6. Cleans up pairing state when a peer disconnects
"""

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Any

from aiohttp.web import AppRunner, Application, TCPSite

from src.common.errors import RoutingError
from src.common.logging import setup_logging
from src.common.types import PeerId
from src.signaling.config import SignalingConfig
from src.signaling.health import cors_middleware, setup_health_routes
from src.signaling.matchmaking import Matchmaker
from src.signaling.metrics import MetricsCollector, get_metrics_collector
from src.signaling.registry import PeerRegistry
from src.signaling.relay import Relay
from src.signaling.transport.base import TransportSession
from src.signaling.transport.websocket_protocol import (
    JoinQueueMessage,
    LeaveMessage,
    NextMessage,
    SignalMessage,
)
from src.signaling.transport.websocket_transport import WebSocketTransport

logger = logging.getLogger(__name__)


class SignalingServer:
    """Owns the peer registry, matchmaker and relay.

    Every inbound event is handled synchronously on the event loop, one at a
    time, so matchmaking and relay operations never interleave.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(self, metrics: MetricsCollector | None = None) -> None:
        """Initialize signaling server state.

        Args:
            metrics: Metrics collector (defaults to the global one)
        """
        self.metrics = metrics or get_metrics_collector()
        self.registry = PeerRegistry()
        self.matchmaker = Matchmaker(
            is_live=self.registry.is_live,
            notify=self._notify,
            metrics=self.metrics,
        )
        self.relay = Relay(self.registry, metrics=self.metrics)

    def _notify(self, peer_id: PeerId, message: Any) -> None:
        try:
            self.registry.send(peer_id, message)
        except RoutingError:
            logger.warning(
                "Dropping event for disconnected peer",
                extra={"peer_id": peer_id, "type": message.type},
            )

    def dispatch(self, peer_id: PeerId, message: Any) -> None:
        """Apply one validated client message.

        Args:
            peer_id: Sender peer identifier
            message: ClientMessage model
        """
        if isinstance(message, JoinQueueMessage):
            logger.info("Peer joined queue", extra={"peer_id": peer_id})
            self.matchmaker.join(peer_id)

        elif isinstance(message, NextMessage):
            logger.info("Peer requested next partner", extra={"peer_id": peer_id})
            self.matchmaker.next(peer_id)

        elif isinstance(message, LeaveMessage):
            logger.info("Peer leaving", extra={"peer_id": peer_id})
            self.matchmaker.leave(peer_id)

        elif isinstance(message, SignalMessage):
            self.relay.relay(peer_id, message.targetId, message.signal)

        else:
            logger.warning(
                "Unhandled message type",
                extra={"peer_id": peer_id, "type": getattr(message, "type", None)},
            )

    async def handle_session(self, session: TransportSession) -> None:
        """Run one peer session until it disconnects.

        Args:
            session: Accepted transport session
        """
        peer_id = session.peer_id
        self.registry.register(session)
        self.metrics.record_peer_connected()
        writer_task = asyncio.create_task(session.run_writer())

        logger.info("Peer connected", extra={"peer_id": peer_id, "peers": len(self.registry)})

        try:
            async for message in session.receive_messages():
                self.dispatch(peer_id, message)

        except ConnectionError as e:
            logger.warning("Peer connection lost", extra={"peer_id": peer_id, "error": str(e)})

        except asyncio.CancelledError:
            logger.info("Session handler cancelled", extra={"peer_id": peer_id})
            raise

        finally:
            # Unregister first so the peer is no longer live for matchmaking
            self.registry.unregister(peer_id)
            self.matchmaker.disconnect(peer_id)
            self.metrics.record_peer_disconnected()

            await session.close()
            writer_task.cancel()
            try:
                await writer_task
            except asyncio.CancelledError:
                pass

            logger.info("Peer disconnected", extra={"peer_id": peer_id, "peers": len(self.registry)})


async def start_server(config_path: Path | None, server: SignalingServer | None = None) -> None:
    """Start the signaling server with configured transport.

    Initializes all components (config, transport, health checks) and runs
    the accept loop until interrupted or error.

    Args:
        config_path: Path to YAML config file (defaults used if missing)
        server: Optional pre-created server state (for testing)

    Raises:
        OSError: If a port cannot be bound
    """
    config = SignalingConfig.from_yaml_with_defaults(config_path)

    setup_logging(config.log_level)
    logger.info("Loaded configuration", extra={"config_path": str(config_path)})

    if server is None:
        server = SignalingServer()

    ws_config = config.transport.websocket
    transport = WebSocketTransport(
        host=ws_config.host,
        port=ws_config.port,
        max_connections=ws_config.max_connections,
        max_message_bytes=ws_config.max_message_bytes,
        outbound_queue_size=ws_config.outbound_queue_size,
        metrics=server.metrics,
    )

    await transport.start()
    logger.info("WebSocket transport started", extra={"port": ws_config.port})

    runner: AppRunner | None = None
    if config.health.enabled:
        health_app = Application(middlewares=[cors_middleware])
        setup_health_routes(health_app, server.matchmaker, server.metrics)

        runner = AppRunner(health_app)
        await runner.setup()
        site = TCPSite(runner, config.health.host, config.health.port)
        await site.start()
        logger.info("Health check server started", extra={"port": config.health.port})

    session_tasks: set[asyncio.Task[None]] = set()
    try:
        logger.info("Signaling server ready", extra={"port": ws_config.port})

        while True:
            session = await transport.accept_session()
            task = asyncio.create_task(server.handle_session(session))
            session_tasks.add(task)
            task.add_done_callback(session_tasks.discard)

    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    except Exception as e:
        logger.exception("Server error", extra={"error": str(e)})
    finally:
        logger.info("Shutting down signaling server")

        await transport.stop()
        logger.info("WebSocket transport stopped")

        if runner is not None:
            await runner.cleanup()
            logger.info("Health check server stopped")

        if session_tasks:
            logger.info("Waiting for sessions to complete", extra={"count": len(session_tasks)})
            _, pending = await asyncio.wait(
                session_tasks, timeout=config.graceful_shutdown_timeout_s
            )
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        logger.info("Signaling server stopped")


def main() -> None:
    """Entry point for the signaling server."""
    parser = argparse.ArgumentParser(description="Random video chat signaling server")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent.parent / "configs" / "signaling.yaml",
        help="Path to signaling config YAML file",
    )
    args = parser.parse_args()

    try:
        asyncio.run(start_server(args.config))
    except KeyboardInterrupt:
        logger.info("Signaling server interrupted")


if __name__ == "__main__":
    main()
