"""Common type aliases for the signaling system.

These aliases name the domain concepts shared by the server (matchmaking,
relay) and the client (connection session):

- Peer types: per-connection identifiers and pair snapshots
- Stats types: the matchmaking debug snapshot

Example:
    >>> from src.common.types import PeerId, MatchmakingStats
    >>> peer: PeerId = "peer-3f9a1c2b7d10"
"""

from typing import TypeAlias, TypedDict

# Peer types
PeerId: TypeAlias = str
"""Opaque identifier of a live transport connection.

Assigned by the transport when a client connects and invalidated when it
disconnects. Never reused for a different connection.

Example:
    >>> peer: PeerId = "peer-3f9a1c2b7d10"
"""

PeerPair: TypeAlias = tuple[PeerId, PeerId]
"""One direction of an entry in the pair table."""


class MatchmakingStats(TypedDict):
    """Snapshot of matchmaking state for debugging and monitoring.

    Attributes:
        waitingUsers: Number of peers in the waiting queue
        activePairs: Number of pairs (each pair counted once)
        waitingUserIds: Waiting peers in queue order
        activePairIds: Pair table entries, both directions

    Example:
        >>> stats: MatchmakingStats = {
        ...     "waitingUsers": 1,
        ...     "activePairs": 1,
        ...     "waitingUserIds": ["peer-c"],
        ...     "activePairIds": [("peer-a", "peer-b"), ("peer-b", "peer-a")],
        ... }
    """

    waitingUsers: int
    activePairs: int
    waitingUserIds: list[PeerId]
    activePairIds: list[PeerPair]
