"""Command-line video chat client.

Connects to the signaling server, captures local media with aiortc and runs
a connection session driven by typed commands (/start, /next, /stop).
Remote media is received and consumed; this client does not render it.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from aiortc.contrib.media import MediaBlackhole

from src.client.aiortc_peer import AiortcPeerConnection, PlayerMediaSource, build_rtc_configuration
from src.client.config import ClientConfig
from src.client.connection_session import (
    ChannelLost,
    ConnectionSession,
    NegotiationState,
    SessionStatus,
)
from src.client.signaling_client import SignalingClient
from src.common.errors import MediaAcquisitionError
from src.common.logging import setup_logging

logger = logging.getLogger(__name__)

HELP_TEXT = """
Commands:
  /start  - Start looking for a partner
  /next   - Skip to the next partner
  /stop   - End the call and stop matching
  /status - Show connection status
  /quit   - Exit client
  /help   - Show this help
"""

STATE_LABELS = {
    NegotiationState.IDLE: "Idle",
    NegotiationState.AWAITING_MATCH: "Looking for a partner...",
    NegotiationState.OFFERING: "Partner found, connecting (offering)...",
    NegotiationState.ANSWERING: "Partner found, connecting (answering)...",
    NegotiationState.CONNECTED: "Connected",
    NegotiationState.DISCONNECTED: "Partner disconnected",
}


class CLIClient:
    """Interactive client for random video chat."""

    def __init__(self, config: ClientConfig) -> None:
        """Initialize CLI client.

        Args:
            config: Client configuration
        """
        self.config = config
        self.running = True
        self.sink = MediaBlackhole()
        self._sink_tasks: set[asyncio.Task[None]] = set()

        rtc_configuration = build_rtc_configuration(config.ice_servers)

        self.signaling = SignalingClient(
            config.server_url,
            on_message=self._on_server_message,
            on_disconnect=self._on_signaling_lost,
            reconnection_attempts=config.signaling.reconnection_attempts,
            reconnection_delay_s=config.signaling.reconnection_delay_s,
        )
        self.session = ConnectionSession(
            channel=self.signaling,
            peer_factory=lambda: AiortcPeerConnection(rtc_configuration),
            media_source=PlayerMediaSource(config.media),
            reconnect=config.reconnect,
            on_track=self._on_remote_track,
        )
        self.session.add_listener(self.print_status)
        self._last_state: NegotiationState | None = None

    def _on_server_message(self, message: Any) -> None:
        self.session.dispatch(message)

    def _on_signaling_lost(self) -> None:
        self.session.dispatch(ChannelLost())

    def _on_remote_track(self, track: Any) -> None:
        self.sink.addTrack(track)
        task = asyncio.create_task(self.sink.start())
        self._sink_tasks.add(task)
        task.add_done_callback(self._on_sink_done)
        print(f"\nReceiving {track.kind} from partner")

    def _on_sink_done(self, task: asyncio.Task[None]) -> None:
        self._sink_tasks.discard(task)
        if not task.cancelled() and (error := task.exception()) is not None:
            logger.warning("Remote track sink failed", extra={"error": str(error)})

    def print_status(self, status: SessionStatus) -> None:
        """Print a status line when the state changes or an error occurs."""
        if status.error is not None:
            print(f"\nError: {status.error}")
            if isinstance(status.error, MediaAcquisitionError):
                print("Check the media source in your config, then /start again")

        if status.state is self._last_state:
            return
        self._last_state = status.state

        label = STATE_LABELS[status.state]
        if status.partner_id and status.state is not NegotiationState.AWAITING_MATCH:
            label = f"{label} [{status.partner_id}]"
        print(f"\n* {label}")

    def show_status(self) -> None:
        status = self.session.status()
        print(f"\n  Server:  {self.config.server_url} ({'up' if self.signaling.is_connected else 'down'})")
        print(f"  Peer id: {status.local_id or '-'}")
        print(f"  State:   {STATE_LABELS[status.state]}")
        print(f"  Partner: {status.partner_id or '-'}")
        print(f"  Active:  {status.active}")

    async def input_loop(self) -> None:
        """Handle user input from stdin."""
        print("\n" + "=" * 60)
        print("Random Video Chat Client")
        print("=" * 60)
        print(HELP_TEXT)

        loop = asyncio.get_running_loop()

        while self.running:
            try:
                # Read input asynchronously
                text = await loop.run_in_executor(None, input, "> ")
                text = text.strip()

                if not text:
                    continue

                if not text.startswith("/"):
                    print("Type /help for available commands")
                    continue

                command = text[1:].lower()

                if command == "quit":
                    self.running = False
                    print("\nGoodbye!")
                    break

                elif command == "help":
                    print(HELP_TEXT)

                elif command == "start":
                    self.session.start()

                elif command == "next":
                    self.session.next()

                elif command == "stop":
                    self.session.stop()

                elif command == "status":
                    self.show_status()

                else:
                    print(f"Unknown command: {command}")
                    print("Type /help for available commands")

            except EOFError:
                # Handle Ctrl+D
                self.running = False
                break
            except KeyboardInterrupt:
                # Handle Ctrl+C
                self.running = False
                print("\n\nInterrupted!")
                break

    async def run(self) -> None:
        """Run the CLI client."""
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            self.running = False

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        session_task = asyncio.create_task(self.session.run())
        signaling_task = asyncio.create_task(self.signaling.run())
        input_task = asyncio.create_task(self.input_loop())

        try:
            done, _ = await asyncio.wait(
                {signaling_task, input_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if signaling_task in done and (error := signaling_task.exception()) is not None:
                logger.error("Signaling stopped", extra={"error": str(error)})
                print(f"\nError: {error}")
                self.running = False

        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

            self.session.close()
            await self.signaling.close()
            await asyncio.gather(session_task, signaling_task, return_exceptions=True)
            await self._stop_sink()

    async def _stop_sink(self) -> None:
        """Wait for pending track consumers, then stop the sink."""
        await asyncio.gather(*self._sink_tasks, return_exceptions=True)
        await self.sink.stop()


def main() -> None:
    """Main entry point for CLI client."""
    parser = argparse.ArgumentParser(description="Random video chat CLI client")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent.parent / "configs" / "client.yaml",
        help="Path to client config YAML file",
    )
    parser.add_argument(
        "--server",
        type=str,
        default=None,
        help="Signaling server URL (overrides config, e.g. ws://localhost:3001)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    config = ClientConfig.from_yaml_with_defaults(args.config)
    if args.server:
        config = ClientConfig.model_validate({**config.model_dump(), "server_url": args.server})

    setup_logging("DEBUG" if args.verbose else config.log_level)

    try:
        asyncio.run(CLIClient(config).run())
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()
