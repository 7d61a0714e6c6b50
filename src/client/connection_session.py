"""Connection session state machine.

Drives one user's side of a random call: joining the queue, negotiating a
peer connection with the matched partner, and re-queueing when the partner
leaves. All server messages and transport notifications are delivered as
events to a single dispatch loop (``run``), so state transitions never
interleave. User operations (``start``, ``next``, ``stop``) are synchronous:
they take effect immediately and enqueue any asynchronous follow-up work.

Cancellation: ``next`` and ``stop`` bump the session epoch. A negotiation
step that completes under an older epoch is discarded.
"""

import asyncio
import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeAlias

from src.client.base import (
    TERMINAL_CONNECTION_STATES,
    LocalMedia,
    MediaSource,
    PeerConnection,
    PeerConnectionFactory,
    SignalingChannel,
)
from src.client.config import ReconnectPolicy
from src.common.errors import (
    MediaAcquisitionError,
    NegotiationError,
    SignalingError,
    TransportTerminalError,
)
from src.common.types import PeerId
from src.signaling.transport.websocket_protocol import (
    AnswerSignal,
    CandidateSignal,
    ErrorMessage,
    IceCandidate,
    JoinQueueMessage,
    LeaveMessage,
    MatchedMessage,
    NextMessage,
    OfferSignal,
    PartnerLeftMessage,
    RelayedSignalMessage,
    SessionStartMessage,
    SignalMessage,
)

logger = logging.getLogger(__name__)


class NegotiationState(Enum):
    """Connection session states.

    State Transitions:
    - IDLE → AWAITING_MATCH (on start)
    - AWAITING_MATCH → OFFERING (on matched as initiator)
    - AWAITING_MATCH → ANSWERING (on offer from partner)
    - OFFERING → CONNECTED (on answer applied)
    - ANSWERING → CONNECTED (on local answer applied)
    - * → DISCONNECTED (on partner-left or connection failure)
    - DISCONNECTED → AWAITING_MATCH (on debounced re-queue)
    - * → AWAITING_MATCH (on next)
    - * → IDLE (on stop or media failure)

    Stop returns to IDLE rather than DISCONNECTED, so no re-queue follows.
    An offer or match arriving while IDLE or stopped is dropped, as is one
    arriving in DISCONNECTED when automatic re-queue is disabled.
    """

    IDLE = "idle"
    AWAITING_MATCH = "awaiting_match"
    OFFERING = "offering"
    ANSWERING = "answering"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


# Valid state transitions
VALID_TRANSITIONS: dict[NegotiationState, set[NegotiationState]] = {
    NegotiationState.IDLE: {NegotiationState.AWAITING_MATCH},
    NegotiationState.AWAITING_MATCH: {
        NegotiationState.OFFERING,
        NegotiationState.ANSWERING,
        NegotiationState.DISCONNECTED,
        NegotiationState.IDLE,
    },
    NegotiationState.OFFERING: {
        NegotiationState.CONNECTED,
        NegotiationState.DISCONNECTED,
        NegotiationState.AWAITING_MATCH,
        NegotiationState.IDLE,
    },
    NegotiationState.ANSWERING: {
        NegotiationState.CONNECTED,
        NegotiationState.DISCONNECTED,
        NegotiationState.AWAITING_MATCH,
        NegotiationState.IDLE,
    },
    NegotiationState.CONNECTED: {
        NegotiationState.DISCONNECTED,
        NegotiationState.AWAITING_MATCH,
        NegotiationState.IDLE,
    },
    NegotiationState.DISCONNECTED: {
        NegotiationState.AWAITING_MATCH,
        NegotiationState.IDLE,
    },
}


@dataclass(frozen=True)
class SessionStatus:
    """Snapshot handed to session listeners."""

    state: NegotiationState
    active: bool
    local_id: PeerId | None
    partner_id: PeerId | None
    error: Exception | None = None


SessionListener: TypeAlias = Callable[[SessionStatus], None]


@dataclass(frozen=True)
class ChannelLost:
    """The signaling connection dropped."""


@dataclass(frozen=True)
class _ConnectionStateChanged:
    pc: PeerConnection
    state: str


@dataclass(frozen=True)
class _DebounceElapsed:
    token: int


@dataclass(frozen=True)
class _Teardown:
    """Wakes the loop to close connections detached by next or stop."""


class ConnectionSession:
    """One user's call lifecycle against the signaling server.

    Thread-safety: NOT thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        channel: SignalingChannel,
        peer_factory: PeerConnectionFactory,
        media_source: MediaSource,
        reconnect: ReconnectPolicy | None = None,
        on_track: Callable[[Any], None] | None = None,
    ) -> None:
        """Initialize connection session.

        Args:
            channel: Signaling channel used for outbound messages
            peer_factory: Creates a fresh peer connection per partner
            media_source: Local capture provider
            reconnect: Automatic re-queue policy
            on_track: Called with each remote track
        """
        self._channel = channel
        self._peer_factory = peer_factory
        self._media_source = media_source
        self._reconnect = reconnect or ReconnectPolicy()
        self._on_track = on_track

        self.state = NegotiationState.IDLE
        self.active = False
        self.local_id: PeerId | None = None
        self.partner_id: PeerId | None = None

        self._epoch = 0
        self._negotiating = False
        self._pc: PeerConnection | None = None
        self._media: LocalMedia | None = None
        self._remote_description_set = False
        self._pending_candidates: list[IceCandidate | None] = []
        # Detached by next/stop; closed before any further event is handled
        self._closing_peers: list[PeerConnection] = []

        self._debounce: asyncio.TimerHandle | None = None
        self._debounce_token = 0

        # None is the dispatch loop shutdown sentinel
        self._events: asyncio.Queue[Any] = asyncio.Queue()
        self._listeners: list[SessionListener] = []

    # === Queries ===

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def is_negotiating(self) -> bool:
        return self._negotiating

    @property
    def has_media(self) -> bool:
        return self._media is not None

    @property
    def requeue_pending(self) -> bool:
        """Whether a debounced re-queue is scheduled."""
        return self._debounce is not None

    def status(self, error: Exception | None = None) -> SessionStatus:
        return SessionStatus(
            state=self.state,
            active=self.active,
            local_id=self.local_id,
            partner_id=self.partner_id,
            error=error,
        )

    def add_listener(self, listener: SessionListener) -> None:
        """Register a callback invoked on every status change."""
        self._listeners.append(listener)

    # === User operations ===

    def start(self) -> None:
        """Start looking for a partner."""
        self.active = True

        if self.state not in (NegotiationState.IDLE, NegotiationState.DISCONNECTED):
            logger.debug("Session already started", extra={"state": self.state.value})
            return

        self._epoch += 1
        self._cancel_requeue()
        self._requeue()

    def next(self) -> None:
        """Abandon the current partner and look for another one.

        No-op while idle.
        """
        if self.state is NegotiationState.IDLE:
            logger.debug("Ignoring next while idle")
            return

        self.active = True
        self._epoch += 1
        self._cancel_requeue()
        self._schedule_teardown()
        self.partner_id = None

        self._set_state(NegotiationState.AWAITING_MATCH)
        self._send(NextMessage())

    def stop(self) -> None:
        """End the call and stop matching."""
        self.active = False
        self._epoch += 1
        self._cancel_requeue()
        self._schedule_teardown()
        self.partner_id = None

        if self.state is not NegotiationState.IDLE:
            self._set_state(NegotiationState.IDLE)
            self._send(LeaveMessage())

    # === Event loop ===

    def dispatch(self, event: Any) -> None:
        """Queue a server message or transport notification for the loop."""
        self._events.put_nowait(event)

    async def run(self) -> None:
        """Process events until close() is called."""
        logger.info("Connection session loop started")
        try:
            while True:
                event = await self._events.get()
                if event is None:
                    break

                try:
                    await self.handle_event(event)
                except Exception as e:
                    logger.exception(
                        "Error handling session event",
                        extra={"event": type(event).__name__, "error": str(e)},
                    )
        finally:
            await self._close_detached_peers()
            await self._teardown()
            logger.info("Connection session loop stopped")

    def close(self) -> None:
        """Stop the session and end the dispatch loop."""
        self.stop()
        self._events.put_nowait(None)

    async def handle_event(self, event: Any) -> None:
        """Apply one event to the state machine."""
        await self._close_detached_peers()

        if isinstance(event, SessionStartMessage):
            self._on_channel_ready(event.peerId)

        elif isinstance(event, ChannelLost):
            await self._on_channel_lost()

        elif isinstance(event, MatchedMessage):
            await self._on_matched(event)

        elif isinstance(event, RelayedSignalMessage):
            await self._on_signal(event)

        elif isinstance(event, PartnerLeftMessage):
            await self._on_partner_left()

        elif isinstance(event, ErrorMessage):
            logger.error("Server error", extra={"code": event.code, "error": event.message})
            self._notify(SignalingError(f"[{event.code}] {event.message}"))

        elif isinstance(event, _ConnectionStateChanged):
            await self._on_connection_state(event)

        elif isinstance(event, _DebounceElapsed):
            self._on_requeue_elapsed(event)

        elif isinstance(event, _Teardown):
            pass

        else:
            logger.warning("Unhandled session event", extra={"event": type(event).__name__})

    # === Signaling channel ===

    def _on_channel_ready(self, peer_id: PeerId) -> None:
        previous_id, self.local_id = self.local_id, peer_id
        logger.info("Signaling channel ready", extra={"peer_id": peer_id, "previous_id": previous_id})

        if not self.active:
            self._notify()
            return

        if self.state is NegotiationState.AWAITING_MATCH:
            self._send(JoinQueueMessage())
            self._notify()
        elif self.state is NegotiationState.DISCONNECTED and self._reconnect.enabled:
            self._requeue()

    async def _on_channel_lost(self) -> None:
        logger.warning("Signaling channel lost", extra={"state": self.state.value})
        self._cancel_requeue()

        if self.state in (NegotiationState.IDLE, NegotiationState.DISCONNECTED):
            return

        # The server drops all pairing state for the old identifier
        self._epoch += 1
        await self._teardown()
        self.partner_id = None
        self._set_state(
            NegotiationState.DISCONNECTED,
            TransportTerminalError("Signaling connection lost"),
        )

    # === Matchmaking ===

    async def _on_matched(self, message: MatchedMessage) -> None:
        if not self.active:
            logger.info("Ignoring match while stopped", extra={"partner_id": message.partnerId})
            return

        if self.state is NegotiationState.DISCONNECTED:
            if not self._reconnect.enabled:
                logger.info("Declining match, re-queue disabled", extra={"partner_id": message.partnerId})
                self._send(LeaveMessage())
                return
            self._cancel_requeue()
            self._set_state(NegotiationState.AWAITING_MATCH)

        if self.state is not NegotiationState.AWAITING_MATCH:
            logger.warning(
                "Ignoring out-of-sequence match",
                extra={"partner_id": message.partnerId, "state": self.state.value},
            )
            return

        self.partner_id = message.partnerId
        logger.info(
            "Matched with partner",
            extra={"partner_id": message.partnerId, "initiator": message.initiator},
        )

        if message.initiator:
            await self._start_offer(self._epoch)
        else:
            self._notify()

    async def _on_partner_left(self) -> None:
        if self.state is NegotiationState.IDLE:
            return
        if self.state is NegotiationState.AWAITING_MATCH and self.partner_id is None:
            # Pair already dissolved by our own next
            logger.debug("Ignoring partner-left with no partner")
            return

        logger.info("Partner left", extra={"partner_id": self.partner_id})
        await self._teardown()
        self.partner_id = None
        self._set_state(NegotiationState.DISCONNECTED)
        if self._reconnect.enabled:
            self._schedule_requeue()
        else:
            # The server re-queues the remaining peer; opt out until start
            self._send(LeaveMessage())

    def _requeue(self) -> None:
        self._set_state(NegotiationState.AWAITING_MATCH)
        self._send(JoinQueueMessage())

    def _schedule_requeue(self) -> None:
        if not self.active or not self._reconnect.enabled:
            return

        self._cancel_requeue()
        token = self._debounce_token
        self._debounce = asyncio.get_running_loop().call_later(
            self._reconnect.debounce_s, self.dispatch, _DebounceElapsed(token)
        )
        logger.debug("Re-queue scheduled", extra={"delay_s": self._reconnect.debounce_s})

    def _cancel_requeue(self) -> None:
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None
        # Invalidates an elapsed timer whose event is already queued
        self._debounce_token += 1

    def _on_requeue_elapsed(self, event: _DebounceElapsed) -> None:
        if event.token != self._debounce_token:
            return
        self._debounce = None

        if self.active and self.state is NegotiationState.DISCONNECTED:
            logger.info("Re-joining queue")
            self._requeue()

    # === Negotiation ===

    async def _on_signal(self, message: RelayedSignalMessage) -> None:
        if self.partner_id is not None and message.fromId != self.partner_id:
            logger.warning(
                "Dropping signal from non-partner",
                extra={"from_id": message.fromId, "partner_id": self.partner_id},
            )
            return

        signal = message.signal
        if isinstance(signal, OfferSignal):
            await self._on_offer(message.fromId, signal.sdp)
        elif isinstance(signal, AnswerSignal):
            await self._on_answer(signal.sdp)
        else:
            await self._on_remote_candidate(signal.candidate)

    async def _on_offer(self, from_id: PeerId, sdp: str) -> None:
        if self.state is NegotiationState.CONNECTED:
            logger.debug("Ignoring duplicate offer", extra={"from_id": from_id})
            return

        if not self.active:
            logger.info("Ignoring offer while stopped", extra={"from_id": from_id})
            return

        if self.state is NegotiationState.DISCONNECTED:
            if not self._reconnect.enabled:
                logger.info("Ignoring offer, re-queue disabled", extra={"from_id": from_id})
                return
            self._cancel_requeue()
            self._set_state(NegotiationState.AWAITING_MATCH)

        if self.state is not NegotiationState.AWAITING_MATCH:
            logger.warning(
                "Ignoring out-of-sequence offer",
                extra={"from_id": from_id, "state": self.state.value},
            )
            return

        if self.partner_id is None:
            logger.info("Adopting offer sender as partner", extra={"from_id": from_id})
            self.partner_id = from_id

        await self._start_answer(self._epoch, sdp)

    async def _start_offer(self, epoch: int) -> None:
        self._set_state(NegotiationState.OFFERING)
        self._begin_negotiation()
        try:
            pc = self._ensure_peer_connection()
            await self._ensure_media(pc, epoch)
            sdp = await pc.create_offer()
        except MediaAcquisitionError as e:
            if self._is_current(epoch):
                await self._fail_media(e)
            return
        except NegotiationError as e:
            if self._is_current(epoch):
                await self._abandon(e)
            return
        finally:
            self._negotiating = False

        if not self._is_current(epoch):
            logger.info("Discarding stale offer", extra={"epoch": epoch})
            return

        self._send_signal(OfferSignal(sdp=sdp))

    async def _start_answer(self, epoch: int, offer_sdp: str) -> None:
        self._set_state(NegotiationState.ANSWERING)
        self._begin_negotiation()
        try:
            pc = self._ensure_peer_connection()
            await pc.set_remote_description("offer", offer_sdp)
            await self._mark_remote_description(pc)
            await self._ensure_media(pc, epoch)
            sdp = await pc.create_answer()
        except MediaAcquisitionError as e:
            if self._is_current(epoch):
                await self._fail_media(e)
            return
        except NegotiationError as e:
            if self._is_current(epoch):
                await self._abandon(e)
            return
        finally:
            self._negotiating = False

        if not self._is_current(epoch):
            logger.info("Discarding stale answer", extra={"epoch": epoch})
            return

        self._send_signal(AnswerSignal(sdp=sdp))
        self._set_state(NegotiationState.CONNECTED)

    async def _on_answer(self, sdp: str) -> None:
        if self.state is NegotiationState.CONNECTED:
            logger.debug("Ignoring duplicate answer")
            return

        pc = self._pc
        if self.state is not NegotiationState.OFFERING or pc is None:
            logger.warning("Ignoring out-of-sequence answer", extra={"state": self.state.value})
            return

        epoch = self._epoch
        self._begin_negotiation()
        try:
            await pc.set_remote_description("answer", sdp)
        except NegotiationError as e:
            if self._is_current(epoch):
                await self._abandon(e)
            return
        finally:
            self._negotiating = False

        if not self._is_current(epoch):
            return

        await self._mark_remote_description(pc)
        self._set_state(NegotiationState.CONNECTED)

    async def _on_remote_candidate(self, candidate: IceCandidate | None) -> None:
        if self.partner_id is None:
            logger.debug("Dropping candidate with no partner")
            return

        if self._pc is not None and self._remote_description_set:
            await self._apply_candidate(self._pc, candidate)
        else:
            self._pending_candidates.append(candidate)

    async def _mark_remote_description(self, pc: PeerConnection) -> None:
        """Record the remote description and flush buffered candidates in order."""
        if pc is not self._pc:
            return

        self._remote_description_set = True
        pending, self._pending_candidates = self._pending_candidates, []
        if pending:
            logger.debug("Applying buffered candidates", extra={"count": len(pending)})
        for candidate in pending:
            await self._apply_candidate(pc, candidate)

    async def _apply_candidate(self, pc: PeerConnection, candidate: IceCandidate | None) -> None:
        try:
            await pc.add_ice_candidate(candidate)
        except NegotiationError as e:
            logger.warning("Dropping candidate that could not be applied", extra={"error": str(e)})

    def _on_local_candidate(self, pc: PeerConnection, candidate: IceCandidate | None) -> None:
        if pc is not self._pc:
            return
        self._send_signal(CandidateSignal(candidate=candidate))

    async def _on_connection_state(self, event: _ConnectionStateChanged) -> None:
        if event.pc is not self._pc:
            return

        logger.info("Peer connection state changed", extra={"state": event.state})
        if event.state in TERMINAL_CONNECTION_STATES:
            await self._abandon(TransportTerminalError(f"Peer connection {event.state}"))

    def _begin_negotiation(self) -> None:
        if self._negotiating:
            raise RuntimeError("Negotiation already in flight")
        self._negotiating = True

    def _is_current(self, epoch: int) -> bool:
        return epoch == self._epoch

    # === Resources ===

    def _ensure_peer_connection(self) -> PeerConnection:
        if self._pc is None:
            pc = self._peer_factory()
            pc.on_ice_candidate = functools.partial(self._on_local_candidate, pc)
            pc.on_connection_state = lambda state: self.dispatch(_ConnectionStateChanged(pc, state))
            pc.on_track = self._on_track
            self._pc = pc
            self._remote_description_set = False
        return self._pc

    async def _ensure_media(self, pc: PeerConnection, epoch: int) -> None:
        if self._media is not None:
            return

        media = await self._media_source.acquire()
        if not self._is_current(epoch):
            media.release()
            return

        self._media = media
        pc.add_tracks(media)
        logger.info("Local media acquired", extra={"tracks": len(media.tracks)})

    def _detach(self) -> tuple[PeerConnection | None, LocalMedia | None]:
        pc, media = self._pc, self._media
        self._pc = None
        self._media = None
        self._remote_description_set = False
        self._pending_candidates = []
        return pc, media

    def _schedule_teardown(self) -> None:
        """Release capture now; close the connection on the next loop turn."""
        pc, media = self._detach()
        if media is not None:
            media.release()
            logger.info("Local media released")
        if pc is not None:
            self._closing_peers.append(pc)
            self.dispatch(_Teardown())

    async def _close_detached_peers(self) -> None:
        while self._closing_peers:
            await self._release(self._closing_peers.pop(0), None)

    async def _teardown(self) -> None:
        pc, media = self._detach()
        await self._release(pc, media)

    async def _release(self, pc: PeerConnection | None, media: LocalMedia | None) -> None:
        if media is not None:
            media.release()
            logger.info("Local media released")

        if pc is not None:
            try:
                await pc.close()
            except Exception as e:
                logger.warning("Error closing peer connection", extra={"error": str(e)})

    # === Failure handling ===

    async def _abandon(self, error: SignalingError) -> None:
        """Drop the current partner after a defining failure, then re-queue."""
        logger.warning(
            "Abandoning connection",
            extra={"partner_id": self.partner_id, "error": str(error)},
        )
        await self._teardown()
        self._send(LeaveMessage())
        self.partner_id = None
        self._set_state(NegotiationState.DISCONNECTED, error)
        self._schedule_requeue()

    async def _fail_media(self, error: MediaAcquisitionError) -> None:
        logger.error("Local media unavailable", extra={"error": str(error)})
        self._epoch += 1
        await self._teardown()
        self._send(LeaveMessage())
        self.partner_id = None
        self.active = False
        self._set_state(NegotiationState.IDLE, error)

    # === Helpers ===

    def _set_state(self, new_state: NegotiationState, error: Exception | None = None) -> None:
        """Transition to a new state with validation and notify listeners.

        Raises:
            ValueError: If transition is invalid
        """
        if new_state is not self.state:
            if new_state not in VALID_TRANSITIONS.get(self.state, set()):
                raise ValueError(f"Invalid state transition: {self.state.value} → {new_state.value}")

            old_state, self.state = self.state, new_state
            logger.info(
                "Session state transition",
                extra={"from_state": old_state.value, "to_state": new_state.value},
            )

        self._notify(error)

    def _notify(self, error: Exception | None = None) -> None:
        status = self.status(error)
        for listener in list(self._listeners):
            listener(status)

    def _send(self, message: Any) -> bool:
        sent = self._channel.send(message)
        if not sent:
            logger.warning("Signaling channel down, message not sent", extra={"type": message.type})
        return sent

    def _send_signal(self, payload: Any) -> None:
        if self.partner_id is None:
            return
        self._send(SignalMessage(targetId=self.partner_id, signal=payload))
