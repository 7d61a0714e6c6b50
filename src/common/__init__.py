"""Common utilities and type definitions.

This package provides shared types, errors, and logging helpers used by both
the signaling server and the chat client.
"""

from src.common.errors import (
    MediaAcquisitionError,
    NegotiationError,
    RoutingError,
    SignalingError,
    StaleQueueEntry,
    TransportTerminalError,
)
from src.common.types import (
    MatchmakingStats,
    PeerId,
    PeerPair,
)

__all__ = [
    "MatchmakingStats",
    "MediaAcquisitionError",
    "NegotiationError",
    "PeerId",
    "PeerPair",
    "RoutingError",
    "SignalingError",
    "StaleQueueEntry",
    "TransportTerminalError",
]
