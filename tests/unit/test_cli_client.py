"""Unit tests for the command-line video chat client."""

import asyncio
import logging
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.client.cli_client import CLIClient, main
from src.client.config import ClientConfig
from src.client.connection_session import ChannelLost, NegotiationState, SessionStatus
from src.common.errors import MediaAcquisitionError, NegotiationError
from src.signaling.transport.websocket_protocol import MatchedMessage


@pytest.fixture
def client() -> CLIClient:
    return CLIClient(ClientConfig(server_url="ws://localhost:3001"))


def status(state: NegotiationState, partner_id: str | None = None, error: Exception | None = None) -> SessionStatus:
    return SessionStatus(state=state, active=True, local_id="me", partner_id=partner_id, error=error)


class TestStatusOutput:
    """Test status line rendering."""

    def test_prints_on_state_change_only(self, client: CLIClient, capsys: pytest.CaptureFixture[str]) -> None:
        """Test repeated notifications for the same state print once."""
        client.print_status(status(NegotiationState.AWAITING_MATCH))
        client.print_status(status(NegotiationState.AWAITING_MATCH, partner_id="p"))
        client.print_status(status(NegotiationState.CONNECTED, partner_id="p"))

        out = capsys.readouterr().out
        assert out.count("Looking for a partner...") == 1
        assert "Connected [p]" in out

    def test_media_error_hint(self, client: CLIClient, capsys: pytest.CaptureFixture[str]) -> None:
        """Test capture failures print a remedy."""
        client.print_status(status(NegotiationState.IDLE, error=MediaAcquisitionError("denied")))

        out = capsys.readouterr().out
        assert "Error: denied" in out
        assert "media source" in out

    def test_other_error_no_hint(self, client: CLIClient, capsys: pytest.CaptureFixture[str]) -> None:
        """Test other failures print the error only."""
        client.print_status(status(NegotiationState.DISCONNECTED, error=NegotiationError("bad sdp")))

        out = capsys.readouterr().out
        assert "Error: bad sdp" in out
        assert "media source" not in out
        assert "Partner disconnected" in out

    def test_show_status(self, client: CLIClient, capsys: pytest.CaptureFixture[str]) -> None:
        """Test /status output for a fresh client."""
        client.show_status()

        out = capsys.readouterr().out
        assert "ws://localhost:3001 (down)" in out
        assert "State:   Idle" in out
        assert "Partner: -" in out


class TestSignalingCallbacks:
    """Test signaling events are forwarded to the session."""

    def test_server_message_dispatched(self, client: CLIClient) -> None:
        message = MatchedMessage(partnerId="p")

        client._on_server_message(message)

        assert client.session._events.get_nowait() is message

    def test_signaling_lost_dispatched(self, client: CLIClient) -> None:
        client._on_signaling_lost()

        assert isinstance(client.session._events.get_nowait(), ChannelLost)


class TestRemoteTracks:
    """Test remote tracks are consumed by the sink."""

    @pytest.mark.asyncio
    async def test_sink_task_awaited_on_shutdown(self, client: CLIClient) -> None:
        """Test the sink start task is kept until shutdown waits for it."""
        gate = asyncio.Event()

        async def start() -> None:
            await gate.wait()

        client.sink = MagicMock(start=start, stop=AsyncMock())
        track = MagicMock(kind="video")

        client._on_remote_track(track)

        client.sink.addTrack.assert_called_once_with(track)
        assert len(client._sink_tasks) == 1

        gate.set()
        await client._stop_sink()

        assert client._sink_tasks == set()
        client.sink.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sink_failure_logged(self, client: CLIClient, caplog: pytest.LogCaptureFixture) -> None:
        """Test a failing sink is reported and still stopped."""
        client.sink = MagicMock(start=AsyncMock(side_effect=RuntimeError("decoder gone")), stop=AsyncMock())

        with caplog.at_level(logging.WARNING, logger="src.client.cli_client"):
            client._on_remote_track(MagicMock(kind="audio"))
            await client._stop_sink()
            await asyncio.sleep(0)

        assert "Remote track sink failed" in caplog.text
        assert client._sink_tasks == set()
        client.sink.stop.assert_awaited_once()


class TestInputLoop:
    """Test command handling."""

    @pytest.mark.asyncio
    async def test_commands(self, client: CLIClient, capsys: pytest.CaptureFixture[str]) -> None:
        """Test /start, /next and /stop drive the session."""
        states: list[NegotiationState] = []
        client.session.add_listener(lambda s: states.append(s.state))

        commands = ["", "hello", "/start", "/next", "/status", "/bogus", "/stop", "/help", "/quit"]
        with patch("builtins.input", side_effect=commands):
            await client.input_loop()

        assert states[0] is NegotiationState.AWAITING_MATCH
        assert client.session.state is NegotiationState.IDLE
        assert client.running is False

        out = capsys.readouterr().out
        assert "Type /help for available commands" in out
        assert "Unknown command: bogus" in out
        assert "Goodbye!" in out

    @pytest.mark.asyncio
    async def test_eof_exits(self, client: CLIClient) -> None:
        """Test Ctrl+D ends the loop."""
        with patch("builtins.input", side_effect=EOFError):
            await client.input_loop()

        assert client.running is False


class TestMain:
    """Test command-line entry point."""

    def test_server_override(self, tmp_path: Path) -> None:
        """Test --server replaces the configured URL."""
        argv = ["chat-client", "--config", str(tmp_path / "missing.yaml"), "--server", "wss://chat.example.com"]

        with (
            patch("sys.argv", argv),
            patch("src.client.cli_client.setup_logging"),
            patch("src.client.cli_client.asyncio.run") as mock_run,
            patch("src.client.cli_client.CLIClient") as mock_client,
        ):
            main()

        config = mock_client.call_args.args[0]
        assert config.server_url == "wss://chat.example.com"
        mock_run.assert_called_once()

    def test_invalid_server_rejected(self, tmp_path: Path) -> None:
        """Test a non-WebSocket URL fails validation."""
        argv = ["chat-client", "--config", str(tmp_path / "missing.yaml"), "--server", "http://x"]

        with patch("sys.argv", argv), pytest.raises(ValueError, match="ws://"):
            main()

    def test_verbose_sets_debug(self, tmp_path: Path) -> None:
        """Test -v enables debug logging."""
        argv = ["chat-client", "--config", str(tmp_path / "missing.yaml"), "-v"]

        with (
            patch("sys.argv", argv),
            patch("src.client.cli_client.setup_logging") as mock_logging,
            patch("src.client.cli_client.asyncio.run"),
            patch("src.client.cli_client.CLIClient", MagicMock()),
        ):
            main()

        mock_logging.assert_called_once_with("DEBUG")
