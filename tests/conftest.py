"""Shared test fixtures."""

import socket

import pytest


def get_free_port() -> int:
    """Get a free TCP port for binding.

    Notes:
        Uses ephemeral port allocation (port=0) to avoid conflicts.
        The port is freed immediately after discovery, so there's a small
        race condition window, but this is acceptable for tests.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        s.listen(1)
        port: int = s.getsockname()[1]
    return port


@pytest.fixture
def free_port() -> int:
    """Free TCP port for a test server."""
    return get_free_port()
