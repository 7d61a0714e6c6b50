"""Unit tests for the reconnecting signaling client.

Runs the client against a throwaway websockets server on localhost.
"""

import asyncio
import json
from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock

import pytest
from websockets.asyncio.server import ServerConnection, serve
from websockets.protocol import State

from src.client.signaling_client import SignalingClient
from src.signaling.transport.websocket_protocol import (
    JoinQueueMessage,
    LeaveMessage,
    MatchedMessage,
    SessionStartMessage,
)


async def wait_until(predicate: Callable[[], bool], timeout_s: float = 2.0) -> None:
    """Poll until predicate holds or fail the test."""
    async with asyncio.timeout(timeout_s):
        while not predicate():
            await asyncio.sleep(0.01)


def test_send_while_disconnected() -> None:
    """Test send reports failure before any connection exists."""
    client = SignalingClient("ws://127.0.0.1:1", on_message=lambda m: None)

    assert client.is_connected is False
    assert client.send(JoinQueueMessage()) is False


def test_send_full_queue_drops() -> None:
    """Test a full outbound queue refuses further messages."""
    client = SignalingClient("ws://127.0.0.1:1", on_message=lambda m: None, outbound_queue_size=1)
    client._websocket = MagicMock(state=State.OPEN)

    assert client.send(JoinQueueMessage()) is True
    assert client.send(LeaveMessage()) is False


@pytest.mark.asyncio
async def test_receive_and_send(free_port: int) -> None:
    """Test server messages are parsed and client messages serialized."""
    received: list[str] = []

    async def handler(websocket: ServerConnection) -> None:
        await websocket.send(SessionStartMessage(peerId="peer-1").model_dump_json())
        await websocket.send("{garbage")
        await websocket.send('{"type": {}}')
        await websocket.send(MatchedMessage(partnerId="peer-2").model_dump_json())
        async for raw in websocket:
            received.append(raw)

    messages: list[Any] = []
    disconnects: list[None] = []

    async with serve(handler, "127.0.0.1", free_port):
        client = SignalingClient(
            f"ws://127.0.0.1:{free_port}",
            on_message=messages.append,
            on_disconnect=lambda: disconnects.append(None),
        )
        task = asyncio.create_task(client.run())

        await wait_until(lambda: len(messages) == 2)
        assert isinstance(messages[0], SessionStartMessage)
        assert messages[0].peerId == "peer-1"
        assert isinstance(messages[1], MatchedMessage)
        assert client.is_connected is True

        assert client.send(JoinQueueMessage()) is True
        await wait_until(lambda: len(received) == 1)
        assert json.loads(received[0]) == {"type": "join-queue"}

        await client.close()
        await asyncio.wait_for(task, timeout=2.0)

    # A deliberate close is not reported as a lost connection
    assert disconnects == []
    assert client.is_connected is False


@pytest.mark.asyncio
async def test_reconnects_after_drop(free_port: int) -> None:
    """Test a dropped connection is reported and re-established."""
    connections: list[ServerConnection] = []

    async def handler(websocket: ServerConnection) -> None:
        connections.append(websocket)
        peer_id = f"peer-{len(connections)}"
        await websocket.send(SessionStartMessage(peerId=peer_id).model_dump_json())
        if len(connections) == 1:
            await websocket.close()
            return
        async for _ in websocket:
            pass

    messages: list[Any] = []
    disconnects: list[None] = []

    async with serve(handler, "127.0.0.1", free_port):
        client = SignalingClient(
            f"ws://127.0.0.1:{free_port}",
            on_message=messages.append,
            on_disconnect=lambda: disconnects.append(None),
            reconnection_delay_s=0.0,
        )
        task = asyncio.create_task(client.run())

        await wait_until(lambda: len(messages) == 2)
        assert [m.peerId for m in messages] == ["peer-1", "peer-2"]
        assert disconnects == [None]

        await client.close()
        await asyncio.wait_for(task, timeout=2.0)


@pytest.mark.asyncio
async def test_gives_up_when_unreachable(free_port: int) -> None:
    """Test run raises once every reconnection attempt has failed."""
    client = SignalingClient(
        f"ws://127.0.0.1:{free_port}",
        on_message=lambda m: None,
        reconnection_attempts=2,
        reconnection_delay_s=0.0,
    )

    with pytest.raises(ConnectionError, match="unreachable after 2 reconnection attempts"):
        await asyncio.wait_for(client.run(), timeout=5.0)
