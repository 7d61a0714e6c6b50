"""WebSocket message protocol definitions.

Defines Pydantic models for WebSocket message serialization/deserialization.
Messages are JSON-encoded text frames. Field names follow the wire format
(camelCase) so that browser and Python clients share one schema.

Signal payloads are a tagged variant discriminated by ``kind``; envelopes are
discriminated by ``type``. Both are validated once at the server boundary.
"""

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter

# === Signal payloads (opaque to the server) ===


class IceCandidate(BaseModel):
    """ICE candidate descriptor as produced by a peer connection."""

    candidate: str = Field(..., description="Candidate attribute line")
    sdpMid: str | None = Field(default=None, description="Media stream identification tag")
    sdpMLineIndex: int | None = Field(default=None, ge=0, description="Media line index")


class OfferSignal(BaseModel):
    """Session description offer."""

    kind: Literal["offer"] = "offer"
    sdp: str = Field(..., min_length=1, description="Offer SDP")


class AnswerSignal(BaseModel):
    """Session description answer."""

    kind: Literal["answer"] = "answer"
    sdp: str = Field(..., min_length=1, description="Answer SDP")


class CandidateSignal(BaseModel):
    """Trickled ICE candidate; ``None`` marks end-of-candidates."""

    kind: Literal["candidate"] = "candidate"
    candidate: IceCandidate | None = Field(default=None, description="ICE candidate or null")


SignalPayload = Annotated[
    OfferSignal | AnswerSignal | CandidateSignal,
    Field(discriminator="kind"),
]


# === Client → Server ===


class JoinQueueMessage(BaseModel):
    """Client → Server: enter the waiting queue."""

    type: Literal["join-queue"] = "join-queue"


class NextMessage(BaseModel):
    """Client → Server: abandon the current partner and re-match."""

    type: Literal["next"] = "next"


class LeaveMessage(BaseModel):
    """Client → Server: abandon the current partner and stop matching."""

    type: Literal["leave"] = "leave"


class SignalMessage(BaseModel):
    """Client → Server: signaling payload addressed to another peer."""

    type: Literal["signal"] = "signal"
    targetId: str = Field(..., min_length=1, description="Destination peer identifier")
    signal: SignalPayload


# === Server → Client ===


class SessionStartMessage(BaseModel):
    """Server → Client: connection accepted, carries the assigned peer id."""

    type: Literal["session_start"] = "session_start"
    peerId: str = Field(..., description="Identifier assigned to this connection")


class MatchedMessage(BaseModel):
    """Server → Client: a partner was found.

    The earlier waiter is the initiator and sends the offer.
    """

    type: Literal["matched"] = "matched"
    partnerId: str = Field(..., description="Partner peer identifier")
    initiator: bool = Field(default=True, description="Whether this side sends the offer")


class PartnerLeftMessage(BaseModel):
    """Server → Client: the current partner left or disconnected."""

    type: Literal["partner-left"] = "partner-left"


class RelayedSignalMessage(BaseModel):
    """Server → Client: signaling payload forwarded from another peer."""

    type: Literal["signal"] = "signal"
    fromId: str = Field(..., description="Sender peer identifier")
    signal: SignalPayload


class ErrorMessage(BaseModel):
    """Server → Client: error notification.

    Sent when a client message is rejected. Never sent to other peers.
    """

    type: Literal["error"] = "error"
    message: str = Field(..., description="Error description")
    code: str = Field(default="INTERNAL_ERROR", description="Error code")


# Union type for all client → server messages
ClientMessage = Annotated[
    JoinQueueMessage | NextMessage | LeaveMessage | SignalMessage,
    Field(discriminator="type"),
]

# Union type for all server → client messages
ServerMessage = Annotated[
    SessionStartMessage | MatchedMessage | PartnerLeftMessage | RelayedSignalMessage | ErrorMessage,
    Field(discriminator="type"),
]

CLIENT_MESSAGE_TYPES = frozenset({"join-queue", "next", "leave", "signal"})
SERVER_MESSAGE_TYPES = frozenset({"session_start", "matched", "partner-left", "signal", "error"})

_client_adapter: TypeAdapter[Any] = TypeAdapter(ClientMessage)
_server_adapter: TypeAdapter[Any] = TypeAdapter(ServerMessage)


class ProtocolError(ValueError):
    """Raised when a raw frame cannot be decoded into a protocol message.

    Attributes:
        code: Wire error code (INVALID_JSON, UNKNOWN_TYPE, INVALID_MESSAGE)
    """

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


def _decode(raw: str | bytes, known_types: frozenset[str]) -> dict[str, Any]:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}", "INVALID_JSON") from e

    if not isinstance(data, dict):
        raise ProtocolError("Message must be a JSON object", "INVALID_MESSAGE")

    message_type = data.get("type")
    if not isinstance(message_type, str) or message_type not in known_types:
        raise ProtocolError(f"Unknown message type: {message_type}", "UNKNOWN_TYPE")

    return data


def parse_client_message(raw: str | bytes) -> Any:
    """Decode and validate a client → server frame.

    Args:
        raw: Raw WebSocket frame

    Returns:
        One of the ClientMessage models

    Raises:
        ProtocolError: If the frame is not valid JSON, has an unknown type,
            or fails validation
    """
    data = _decode(raw, CLIENT_MESSAGE_TYPES)
    try:
        return _client_adapter.validate_python(data)
    except ValueError as e:
        raise ProtocolError(f"Invalid {data['type']} message: {e}", "INVALID_MESSAGE") from e


def parse_server_message(raw: str | bytes) -> Any:
    """Decode and validate a server → client frame.

    Raises:
        ProtocolError: If the frame is not a valid server message
    """
    data = _decode(raw, SERVER_MESSAGE_TYPES)
    try:
        return _server_adapter.validate_python(data)
    except ValueError as e:
        raise ProtocolError(f"Invalid {data['type']} message: {e}", "INVALID_MESSAGE") from e
