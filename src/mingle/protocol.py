"""WebSocket message protocol definitions.

Defines Pydantic models for relay/client message serialization. Every frame
is a JSON object carrying a ``type`` discriminator.

Position frames are deliberately not modelled strictly on the inbound side:
they are cleaned field by field in :mod:`src.mingle.transform_relay` so a
malformed coordinate never costs the whole update. Signalling frames are
validated against a tagged union at the boundary; the SDP and candidate
strings inside them stay opaque.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class Vec3(BaseModel):
    """Three-component vector (metres for positions, degrees for rotations)."""

    x: float = 0.0
    y: float = 0.0
    z: float = 0.0


class SessionDescription(BaseModel):
    """SDP offer or answer, passed through unexamined."""

    model_config = ConfigDict(extra="allow")

    type: Literal["offer", "answer", "pranswer", "rollback"]
    sdp: str = ""


class IceCandidatePayload(BaseModel):
    """Browser-shaped ICE candidate (``RTCIceCandidateInit``)."""

    model_config = ConfigDict(extra="allow")

    candidate: str
    sdpMid: str | None = None  # noqa: N815
    sdpMLineIndex: int | None = None  # noqa: N815


class _RelayMessage(BaseModel):
    """Relay → client base; ``from`` is a Python keyword so it travels as an alias."""

    model_config = ConfigDict(populate_by_name=True)

    def to_json(self) -> str:
        """Serialise with wire field names, dropping unset optionals."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Relay → client
# ---------------------------------------------------------------------------


class SessionStartMessage(_RelayMessage):
    """Relay → Client: the identifier assigned to this connection."""

    type: Literal["session_start"] = "session_start"
    session_id: str = Field(..., description="Unique session identifier")


class PositionBroadcast(_RelayMessage):
    """Relay → All: a session's latest transform, tagged with its id."""

    type: Literal["position"] = "position"
    id: str = Field(..., description="Sender session id")
    position: Vec3 | None = None
    rotation: Vec3 | None = None
    auxiliary: dict[str, Any] | None = None


class ClientCountMessage(_RelayMessage):
    """Relay → All: live session count after a join or leave."""

    type: Literal["client_count"] = "client_count"
    count: int = Field(..., ge=0)


class DisconnectClientMessage(_RelayMessage):
    """Relay → Others: a session has left."""

    type: Literal["disconnect_client"] = "disconnect_client"
    id: str = Field(..., description="Departed session id")


class RtcOfferEvent(_RelayMessage):
    """Relay → Recipient: offer from another session."""

    type: Literal["rtc_offer"] = "rtc_offer"
    sender: str = Field(..., alias="from")
    offer: SessionDescription


class RtcAnswerEvent(_RelayMessage):
    """Relay → Recipient: answer from another session."""

    type: Literal["rtc_answer"] = "rtc_answer"
    sender: str = Field(..., alias="from")
    answer: SessionDescription


class IceCandidateEvent(_RelayMessage):
    """Relay → Recipient: trickled ICE candidate (None marks end of candidates)."""

    type: Literal["ice_candidate"] = "ice_candidate"
    sender: str = Field(..., alias="from")
    candidate: IceCandidatePayload | None = None

    def to_json(self) -> str:
        # A null candidate is meaningful, so keep it on the wire.
        return self.model_dump_json(by_alias=True)


class ErrorMessage(_RelayMessage):
    """Relay → Client: error notification for the sender's own frame."""

    type: Literal["error"] = "error"
    message: str = Field(..., description="Error description")
    code: str = Field(default="INVALID_MESSAGE", description="Error code")


# ---------------------------------------------------------------------------
# Client → relay
# ---------------------------------------------------------------------------


class PositionUpdate(BaseModel):
    """Client → Relay: periodic transform (~10 Hz)."""

    type: Literal["position"] = "position"
    position: Vec3 | None = None
    rotation: Vec3 | None = None
    auxiliary: dict[str, Any] | None = None

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)


class RtcOfferRequest(BaseModel):
    """Client → Relay: offer directed at one session."""

    type: Literal["rtc_offer"] = "rtc_offer"
    to: str = Field(..., min_length=1)
    offer: SessionDescription

    def to_json(self) -> str:
        return self.model_dump_json()


class RtcAnswerRequest(BaseModel):
    """Client → Relay: answer directed at one session."""

    type: Literal["rtc_answer"] = "rtc_answer"
    to: str = Field(..., min_length=1)
    answer: SessionDescription

    def to_json(self) -> str:
        return self.model_dump_json()


class IceCandidateRequest(BaseModel):
    """Client → Relay: ICE candidate directed at one session."""

    type: Literal["ice_candidate"] = "ice_candidate"
    to: str = Field(..., min_length=1)
    candidate: IceCandidatePayload | None = None

    def to_json(self) -> str:
        return self.model_dump_json()


SignalRequest = RtcOfferRequest | RtcAnswerRequest | IceCandidateRequest

SignalEvent = RtcOfferEvent | RtcAnswerEvent | IceCandidateEvent

# Union type for all relay → client messages
ServerMessage = (
    SessionStartMessage
    | PositionBroadcast
    | ClientCountMessage
    | DisconnectClientMessage
    | RtcOfferEvent
    | RtcAnswerEvent
    | IceCandidateEvent
    | ErrorMessage
)

SIGNAL_TYPES = frozenset({"rtc_offer", "rtc_answer", "ice_candidate"})

_signal_request_adapter: TypeAdapter[SignalRequest] = TypeAdapter(
    Annotated[SignalRequest, Field(discriminator="type")]
)
_server_message_adapter: TypeAdapter[ServerMessage] = TypeAdapter(
    Annotated[ServerMessage, Field(discriminator="type")]
)


def parse_signal_request(data: dict[str, Any]) -> SignalRequest:
    """Validate a client signalling frame.

    Raises:
        pydantic.ValidationError: If the frame does not match any signal kind
    """
    return _signal_request_adapter.validate_python(data)


def parse_server_message(data: dict[str, Any]) -> ServerMessage:
    """Validate a relay frame on the client side.

    Raises:
        pydantic.ValidationError: If the frame is not a known relay message
    """
    return _server_message_adapter.validate_python(data)
