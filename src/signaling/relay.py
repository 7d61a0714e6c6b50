"""Identity-addressed relay for signaling payloads.

The relay forwards an already-validated signal payload from one connected
peer to another. It is stateless and best-effort: no buffering, no retries,
and no pairing enforcement (peers only address the partner id they were
given). A missing target is a routing error that is logged and dropped;
the sender is never told.
"""

import logging
from typing import Any

from src.common.errors import RoutingError
from src.common.types import PeerId
from src.signaling.metrics import MetricsCollector
from src.signaling.registry import PeerRegistry
from src.signaling.transport.websocket_protocol import RelayedSignalMessage

logger = logging.getLogger(__name__)


class Relay:
    """Forwards signaling payloads between live peers."""

    def __init__(self, registry: PeerRegistry, metrics: MetricsCollector | None = None) -> None:
        self._registry = registry
        self._metrics = metrics

    def relay(self, from_id: PeerId, to_id: PeerId, payload: Any) -> bool:
        """Deliver ``{fromId, payload}`` to ``to_id`` if it is connected.

        Args:
            from_id: Sender peer identifier
            to_id: Target peer identifier
            payload: Signal payload, forwarded as-is

        Returns:
            True if the message was queued for delivery
        """
        try:
            self._registry.send(to_id, RelayedSignalMessage(fromId=from_id, signal=payload))
        except RoutingError as e:
            logger.warning(
                "Target peer not found, dropping signal",
                extra={"from_id": from_id, "target_id": e.peer_id, "kind": payload.kind},
            )
            if self._metrics is not None:
                self._metrics.record_signal_dropped()
            return False

        logger.debug(
            "Signal relayed",
            extra={"from_id": from_id, "target_id": to_id, "kind": payload.kind},
        )
        if self._metrics is not None:
            self._metrics.record_signal_relayed()
        return True
