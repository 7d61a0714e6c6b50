"""End-to-end signaling integration tests.

Tests the complete flow against a running server:
1. Start signaling server (WebSocket + health endpoints)
2. Connect raw WebSocket peers and exercise the wire protocol
3. Pair, relay, next, leave and disconnect handling
4. Run two connection sessions through the server to Connected
5. Clean shutdown
"""

import asyncio
import json
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiohttp
import pytest
import pytest_asyncio
import yaml
from websockets.asyncio.client import ClientConnection, connect

from src.client.base import LocalMedia, MediaSource, PeerConnection
from src.client.config import ReconnectPolicy
from src.client.connection_session import ChannelLost, ConnectionSession, NegotiationState
from src.client.signaling_client import SignalingClient
from src.signaling.metrics import MetricsCollector
from src.signaling.server import SignalingServer, start_server
from src.signaling.transport.websocket_protocol import IceCandidate
from tests.conftest import get_free_port

pytestmark = pytest.mark.integration


@dataclass
class RunningServer:
    url: str
    health_url: str
    server: SignalingServer


async def wait_until(predicate: Callable[[], bool], timeout_s: float = 5.0) -> None:
    """Poll until predicate holds or fail the test."""
    async with asyncio.timeout(timeout_s):
        while not predicate():
            await asyncio.sleep(0.01)


async def wait_for_port(port: int, timeout_s: float = 5.0) -> None:
    async with asyncio.timeout(timeout_s):
        while True:
            try:
                _, writer = await asyncio.open_connection("127.0.0.1", port)
            except OSError:
                await asyncio.sleep(0.05)
                continue
            writer.close()
            await writer.wait_closed()
            return


@pytest_asyncio.fixture
async def signaling_server(tmp_path: Path, free_port: int) -> AsyncGenerator[RunningServer, None]:
    """Run the signaling server on free local ports."""
    health_port = get_free_port()
    config_path = tmp_path / "signaling.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "transport": {"websocket": {"host": "127.0.0.1", "port": free_port}},
                "health": {"enabled": True, "host": "127.0.0.1", "port": health_port},
                "graceful_shutdown_timeout_s": 1,
            }
        )
    )

    server = SignalingServer(metrics=MetricsCollector())
    task = asyncio.create_task(start_server(config_path, server))
    await wait_for_port(free_port)
    await wait_for_port(health_port)

    yield RunningServer(
        url=f"ws://127.0.0.1:{free_port}",
        health_url=f"http://127.0.0.1:{health_port}",
        server=server,
    )

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


# === Raw protocol helpers ===


async def recv(ws: ClientConnection, timeout_s: float = 2.0) -> dict[str, Any]:
    return json.loads(await asyncio.wait_for(ws.recv(), timeout=timeout_s))


async def send(ws: ClientConnection, message: dict[str, Any]) -> None:
    await ws.send(json.dumps(message))


async def connect_peer(url: str) -> tuple[ClientConnection, str]:
    """Connect and return the socket with its assigned peer id."""
    ws = await connect(url)
    start = await recv(ws)
    assert start["type"] == "session_start"
    return ws, start["peerId"]


async def assert_silent(ws: ClientConnection, timeout_s: float = 0.2) -> None:
    with pytest.raises(TimeoutError):
        await asyncio.wait_for(ws.recv(), timeout=timeout_s)


async def paired(url: str) -> tuple[ClientConnection, str, ClientConnection, str]:
    """Connect two peers and pair them; the first is the initiator."""
    a, a_id = await connect_peer(url)
    b, b_id = await connect_peer(url)

    await send(a, {"type": "join-queue"})
    await asyncio.sleep(0.05)
    await send(b, {"type": "join-queue"})

    assert await recv(a) == {"type": "matched", "partnerId": b_id, "initiator": True}
    assert await recv(b) == {"type": "matched", "partnerId": a_id, "initiator": False}
    return a, a_id, b, b_id


@pytest.mark.asyncio
async def test_session_start_assigns_unique_ids(signaling_server: RunningServer) -> None:
    """Test every connection gets its own peer id."""
    a, a_id = await connect_peer(signaling_server.url)
    b, b_id = await connect_peer(signaling_server.url)

    assert a_id != b_id

    await a.close()
    await b.close()


@pytest.mark.asyncio
async def test_pairing_and_relay(signaling_server: RunningServer) -> None:
    """Test FIFO pairing and offer/answer/candidate relay."""
    a, a_id, b, b_id = await paired(signaling_server.url)

    offer = {"kind": "offer", "sdp": "v=0 offer"}
    await send(a, {"type": "signal", "targetId": b_id, "signal": offer})
    assert await recv(b) == {"type": "signal", "fromId": a_id, "signal": offer}

    answer = {"kind": "answer", "sdp": "v=0 answer"}
    await send(b, {"type": "signal", "targetId": a_id, "signal": answer})
    assert await recv(a) == {"type": "signal", "fromId": b_id, "signal": answer}

    end_of_candidates = {"kind": "candidate", "candidate": None}
    await send(b, {"type": "signal", "targetId": a_id, "signal": end_of_candidates})
    assert (await recv(a))["signal"] == end_of_candidates

    await a.close()
    await b.close()


@pytest.mark.asyncio
async def test_next_rematches(signaling_server: RunningServer) -> None:
    """Test next notifies the partner, who is re-queued ahead of the requester."""
    a, a_id, b, b_id = await paired(signaling_server.url)

    await send(a, {"type": "next"})

    assert await recv(b) == {"type": "partner-left"}
    assert await recv(b) == {"type": "matched", "partnerId": a_id, "initiator": True}
    assert await recv(a) == {"type": "matched", "partnerId": b_id, "initiator": False}

    await a.close()
    await b.close()


@pytest.mark.asyncio
async def test_leave_stops_matching(signaling_server: RunningServer) -> None:
    """Test the leaver is not re-queued while the partner is."""
    a, a_id, b, b_id = await paired(signaling_server.url)

    await send(a, {"type": "leave"})

    assert await recv(b) == {"type": "partner-left"}
    await assert_silent(a)
    await wait_until(lambda: signaling_server.server.matchmaker.waiting == [b_id])

    await a.close()
    await b.close()


@pytest.mark.asyncio
async def test_disconnect_frees_partner(signaling_server: RunningServer) -> None:
    """Test a dropped peer's partner is notified and matched with the next arrival."""
    a, a_id, b, b_id = await paired(signaling_server.url)

    await a.close()
    assert await recv(b) == {"type": "partner-left"}

    c, c_id = await connect_peer(signaling_server.url)
    await send(c, {"type": "join-queue"})

    assert await recv(b) == {"type": "matched", "partnerId": c_id, "initiator": True}
    assert await recv(c) == {"type": "matched", "partnerId": b_id, "initiator": False}

    await b.close()
    await c.close()


@pytest.mark.asyncio
async def test_malformed_frames(signaling_server: RunningServer) -> None:
    """Test protocol errors are reported and the connection stays usable."""
    a, _ = await connect_peer(signaling_server.url)

    await a.send("{nope")
    error = await recv(a)
    assert error["type"] == "error"
    assert error["code"] == "INVALID_JSON"

    await send(a, {"type": "dance"})
    assert (await recv(a))["code"] == "UNKNOWN_TYPE"

    await send(a, {"type": []})
    assert (await recv(a))["code"] == "UNKNOWN_TYPE"

    await send(a, {"type": {}})
    assert (await recv(a))["code"] == "UNKNOWN_TYPE"

    await send(a, {"type": "signal", "targetId": "x", "signal": {"kind": "offer"}})
    assert (await recv(a))["code"] == "INVALID_MESSAGE"

    await send(a, {"type": "join-queue"})
    await wait_until(lambda: len(signaling_server.server.matchmaker.waiting) == 1)

    await a.close()


@pytest.mark.asyncio
async def test_signal_to_unknown_peer_dropped(signaling_server: RunningServer) -> None:
    """Test a signal for a missing peer is silently dropped."""
    a, _ = await connect_peer(signaling_server.url)

    await send(a, {"type": "signal", "targetId": "ghost", "signal": {"kind": "offer", "sdp": "v=0"}})

    await assert_silent(a)
    await wait_until(lambda: signaling_server.server.metrics.get_summary()["signals_dropped"] == 1)

    await a.close()


@pytest.mark.asyncio
async def test_health_endpoints(signaling_server: RunningServer) -> None:
    """Test the health app reports live matchmaking state."""
    a, a_id, b, b_id = await paired(signaling_server.url)

    async with aiohttp.ClientSession() as http:
        async with http.get(f"{signaling_server.health_url}/health") as resp:
            assert resp.status == 200
            assert (await resp.json())["status"] == "ok"

        async with http.get(f"{signaling_server.health_url}/metrics/summary") as resp:
            data = await resp.json()

    assert data["matchmaking"]["activePairs"] == 1
    assert data["matchmaking"]["waitingUsers"] == 0
    assert data["metrics"]["peers_connected"] == 2

    await a.close()
    await b.close()


# === Connection sessions over the real server ===


class StubPeerConnection(PeerConnection):
    """Peer connection that negotiates instantly with fixed SDP."""

    def __init__(self) -> None:
        super().__init__()
        self.remote: list[tuple[str, str]] = []
        self.closed = False

    @property
    def connection_state(self) -> str:
        return "closed" if self.closed else "new"

    def add_tracks(self, media: LocalMedia) -> None:
        pass

    async def create_offer(self) -> str:
        return "offer-sdp"

    async def create_answer(self) -> str:
        if self.on_ice_candidate is not None:
            self.on_ice_candidate(None)
        return "answer-sdp"

    async def set_remote_description(self, kind: Any, sdp: str) -> None:
        self.remote.append((kind, sdp))

    async def add_ice_candidate(self, candidate: IceCandidate | None) -> None:
        pass

    async def close(self) -> None:
        self.closed = True


class StubMedia(LocalMedia):
    @property
    def tracks(self) -> list[Any]:
        return []

    def release(self) -> None:
        pass


class StubMediaSource(MediaSource):
    async def acquire(self) -> LocalMedia:
        return StubMedia()


@dataclass
class ChatClient:
    """A connection session wired to a real signaling client."""

    url: str
    peers: list[StubPeerConnection] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.signaling = SignalingClient(
            self.url,
            on_message=lambda message: self.session.dispatch(message),
            on_disconnect=lambda: self.session.dispatch(ChannelLost()),
            reconnection_delay_s=0.05,
        )
        self.session = ConnectionSession(
            self.signaling,
            self._new_peer,
            StubMediaSource(),
            reconnect=ReconnectPolicy(debounce_s=0.1),
        )
        self._tasks = [
            asyncio.create_task(self.session.run()),
            asyncio.create_task(self.signaling.run()),
        ]

    def _new_peer(self) -> PeerConnection:
        pc = StubPeerConnection()
        self.peers.append(pc)
        return pc

    @property
    def state(self) -> NegotiationState:
        return self.session.state

    async def close(self) -> None:
        self.session.close()
        await self.signaling.close()
        await asyncio.gather(*self._tasks, return_exceptions=True)


@pytest.mark.asyncio
async def test_sessions_connect_through_server(signaling_server: RunningServer) -> None:
    """Test two sessions negotiate, re-match on next and recover after stop."""
    matchmaker = signaling_server.server.matchmaker
    alice = ChatClient(signaling_server.url)
    bob = ChatClient(signaling_server.url)

    try:
        await wait_until(lambda: alice.signaling.is_connected and bob.signaling.is_connected)

        alice.session.start()
        await wait_until(lambda: matchmaker.waiting == [alice.session.local_id])
        bob.session.start()

        await wait_until(
            lambda: alice.state is NegotiationState.CONNECTED and bob.state is NegotiationState.CONNECTED
        )
        assert alice.session.partner_id == bob.session.local_id
        assert alice.peers[-1].remote == [("answer", "answer-sdp")]
        assert bob.peers[-1].remote == [("offer", "offer-sdp")]

        # Bob is re-queued first, so he offers this time
        alice.session.next()
        await wait_until(
            lambda: len(bob.peers) == 2
            and alice.state is NegotiationState.CONNECTED
            and bob.state is NegotiationState.CONNECTED
        )
        assert bob.peers[-1].remote == [("answer", "answer-sdp")]
        assert alice.peers[0].closed is True

        bob.session.stop()
        # Alice re-joins after the debounce and keeps her queue position
        await wait_until(lambda: alice.state is NegotiationState.AWAITING_MATCH)
        assert matchmaker.waiting == [alice.session.local_id]
        assert bob.state is NegotiationState.IDLE

    finally:
        await alice.close()
        await bob.close()
