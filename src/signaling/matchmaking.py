"""FIFO matchmaking with a symmetric pair table.

The Matchmaker owns the waiting queue and the pair table and is the only
code allowed to mutate them. Every operation is a plain synchronous method:
the server runs them on a single event loop, one inbound event at a time, so
operations never interleave and no lock is required. Outbound events are
handed to a non-blocking ``notify`` callback.

Invariants (held after every public operation):
- The pair table is symmetric: pairs[a] == b  ⇔  pairs[b] == a
- A peer appears in at most one pair
- The waiting queue holds no duplicates and no paired peer
- A peer is never matched with itself

Request mapping:
    join-queue  → join(id)        leave → leave(id)
    next        → next(id)        transport disconnect → disconnect(id)
"""

import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

from src.common.errors import StaleQueueEntry
from src.common.types import MatchmakingStats, PeerId
from src.signaling.metrics import MetricsCollector
from src.signaling.transport.websocket_protocol import MatchedMessage, PartnerLeftMessage

logger = logging.getLogger(__name__)


class MatchResult(Enum):
    """Outcome of a matching attempt."""

    MATCHED = "matched"
    WAITING = "waiting"
    ALREADY_PAIRED = "already_paired"
    NOT_LIVE = "not_live"


class Matchmaker:
    """Pairs waiting peers in strict arrival order.

    Thread-safety: NOT thread-safe. All calls must come from one thread
    (the server event loop); wrap calls in a lock if sockets are serviced
    by several OS threads.
    """

    def __init__(
        self,
        is_live: Callable[[PeerId], bool],
        notify: Callable[[PeerId, Any], None],
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize matchmaker.

        Args:
            is_live: Liveness predicate for peer identifiers
            notify: Non-blocking delivery of a server message to a peer
            metrics: Optional metrics collector
        """
        self._is_live = is_live
        self._notify = notify
        self._metrics = metrics

        # Insertion-ordered: peer id → enqueue timestamp (monotonic)
        self._waiting: dict[PeerId, float] = {}
        self._pairs: dict[PeerId, PeerId] = {}

    # === Queries ===

    @property
    def waiting(self) -> list[PeerId]:
        """Waiting peers in queue order."""
        return list(self._waiting)

    @property
    def pairs(self) -> dict[PeerId, PeerId]:
        """Copy of the pair table (both directions)."""
        return dict(self._pairs)

    def is_waiting(self, peer_id: PeerId) -> bool:
        return peer_id in self._waiting

    def partner_of(self, peer_id: PeerId) -> PeerId | None:
        return self._pairs.get(peer_id)

    def stats(self) -> MatchmakingStats:
        """Get current matchmaking statistics (for debugging)."""
        return {
            "waitingUsers": len(self._waiting),
            "activePairs": len(self._pairs) // 2,
            "waitingUserIds": list(self._waiting),
            "activePairIds": list(self._pairs.items()),
        }

    # === Core operations ===

    def enqueue(self, peer_id: PeerId) -> bool:
        """Append a peer to the waiting queue.

        No-op if the peer is already waiting or currently paired.

        Returns:
            True if the peer was appended
        """
        if peer_id in self._waiting or peer_id in self._pairs:
            return False

        self._waiting[peer_id] = time.monotonic()
        logger.info(
            "Peer added to queue",
            extra={"peer_id": peer_id, "waiting": len(self._waiting)},
        )
        self._update_gauges()
        return True

    def try_match(self, peer_id: PeerId) -> MatchResult:
        """Pair a peer with the earliest live waiter, or queue it.

        Stale waiters (no longer live) are discarded as they are popped. The
        requesting peer is never its own candidate.

        Returns:
            MATCHED, WAITING, ALREADY_PAIRED or NOT_LIVE
        """
        if not self._is_live(peer_id):
            logger.warning("Ignoring match request from peer that is not live", extra={"peer_id": peer_id})
            self._waiting.pop(peer_id, None)
            self._update_gauges()
            return MatchResult.NOT_LIVE

        if peer_id in self._pairs:
            return MatchResult.ALREADY_PAIRED

        self._waiting.pop(peer_id, None)

        while self._waiting:
            candidate = next(iter(self._waiting))
            enqueued_at = self._waiting.pop(candidate)

            try:
                self._check_live(candidate)
            except StaleQueueEntry as e:
                logger.warning("Discarding stale queue entry", extra={"peer_id": e.peer_id})
                if self._metrics is not None:
                    self._metrics.record_stale_queue_entry()
                continue

            self._pair(candidate, peer_id, time.monotonic() - enqueued_at)
            return MatchResult.MATCHED

        self.enqueue(peer_id)
        return MatchResult.WAITING

    def force_leave(self, peer_id: PeerId) -> PeerId | None:
        """Dissolve a peer's pair and drop it from the queue.

        The abandoned partner is notified with ``partner-left`` and re-queued
        so a voluntary departure never strands it.

        Returns:
            The former partner, if the peer was paired
        """
        self._waiting.pop(peer_id, None)

        partner = self._pairs.pop(peer_id, None)
        if partner is None:
            self._update_gauges()
            return None

        self._pairs.pop(partner, None)

        logger.info("Pair dissolved", extra={"peer_id": peer_id, "partner_id": partner})

        if self._is_live(partner):
            self._notify(partner, PartnerLeftMessage())
            if self._metrics is not None:
                self._metrics.record_partner_left()
            if self.enqueue(partner):
                logger.info("Partner re-queued", extra={"peer_id": partner})

        self._update_gauges()
        return partner

    def disconnect(self, peer_id: PeerId) -> None:
        """Clean up after a peer whose connection closed.

        The peer itself is discarded, never re-queued.
        """
        self.force_leave(peer_id)
        self._waiting.pop(peer_id, None)
        self._update_gauges()
        logger.info("Peer discarded from matchmaking", extra={"peer_id": peer_id})

    # === Request handlers ===

    def join(self, peer_id: PeerId) -> MatchResult:
        """Handle ``join-queue``: match now or wait.

        A peer that is already paired is left untouched; a peer that is
        already waiting keeps its queue position.
        """
        if peer_id in self._pairs:
            logger.warning("Peer already in a pair, skipping matchmaking", extra={"peer_id": peer_id})
            return MatchResult.ALREADY_PAIRED

        if peer_id in self._waiting:
            logger.debug("Peer already waiting", extra={"peer_id": peer_id})
            return MatchResult.WAITING

        return self.try_match(peer_id)

    def next(self, peer_id: PeerId) -> MatchResult:
        """Handle ``next``: abandon the current partner, then re-match."""
        self.force_leave(peer_id)
        return self.try_match(peer_id)

    def leave(self, peer_id: PeerId) -> None:
        """Handle ``leave``: abandon the current partner and stop waiting."""
        self.force_leave(peer_id)

    # === Internals ===

    def _check_live(self, peer_id: PeerId) -> None:
        if not self._is_live(peer_id):
            raise StaleQueueEntry(peer_id)

    def _pair(self, initiator: PeerId, responder: PeerId, wait_seconds: float) -> None:
        self._pairs[initiator] = responder
        self._pairs[responder] = initiator

        # The earlier waiter offers; the requester answers
        self._notify(responder, MatchedMessage(partnerId=initiator, initiator=False))
        self._notify(initiator, MatchedMessage(partnerId=responder, initiator=True))

        if self._metrics is not None:
            self._metrics.record_match(wait_seconds)
        self._update_gauges()

        logger.info(
            "Paired peers",
            extra={
                "initiator": initiator,
                "responder": responder,
                "active_pairs": len(self._pairs) // 2,
                "waiting": len(self._waiting),
            },
        )

    def _update_gauges(self) -> None:
        if self._metrics is not None:
            self._metrics.set_matchmaking_state(len(self._waiting), len(self._pairs) // 2)
