"""Signalling broker.

Routes directed WebRTC handshake messages (offer, answer, ICE candidate)
between exactly two sessions. The relay stamps ``from`` with the sender's
connection identity and never broadcasts these messages. A message for an
unknown or departed recipient is dropped without telling the sender; the
sender observes it as a negotiation timeout.
"""

import logging
from typing import Any

from pydantic import ValidationError

from src.mingle.metrics import MetricsCollector
from src.mingle.protocol import (
    ErrorMessage,
    IceCandidateEvent,
    IceCandidateRequest,
    RtcAnswerEvent,
    RtcAnswerRequest,
    RtcOfferEvent,
    RtcOfferRequest,
    SignalEvent,
    SignalRequest,
    parse_signal_request,
)
from src.mingle.registry import SessionRegistry

logger = logging.getLogger(__name__)


def stamp_sender(request: SignalRequest, sender_id: str) -> SignalEvent:
    """Turn a client request into the event delivered to its recipient."""
    if isinstance(request, RtcOfferRequest):
        return RtcOfferEvent(sender=sender_id, offer=request.offer)
    if isinstance(request, RtcAnswerRequest):
        return RtcAnswerEvent(sender=sender_id, answer=request.answer)
    if isinstance(request, IceCandidateRequest):
        return IceCandidateEvent(sender=sender_id, candidate=request.candidate)
    raise TypeError(f"Unsupported signal request: {type(request).__name__}")


class SignallingBroker:
    """Directed, fire-and-forget routing of handshake messages.

    Per (sender, recipient) pair, messages are delivered in the order they
    were received: one relay loop, one ordered socket per recipient.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(
        self, registry: SessionRegistry, metrics: MetricsCollector, debug: bool = False
    ) -> None:
        self.registry = registry
        self.metrics = metrics
        self.debug = debug

    async def on_signal(self, sender_id: str, data: dict[str, Any]) -> bool:
        """Validate and route one signalling frame.

        Returns:
            True if the message reached its recipient
        """
        try:
            request = parse_signal_request(data)
        except ValidationError as e:
            logger.warning(
                "Malformed signalling message",
                extra={
                    "session_id": sender_id,
                    "type": data.get("type"),
                    "errors": e.error_count(),
                },
            )
            self.metrics.record_invalid_message()
            await self.registry.send_to(
                sender_id,
                ErrorMessage(
                    message=f"Malformed {data.get('type')} message", code="INVALID_SIGNAL"
                ),
            )
            return False

        return await self.route(sender_id, request)

    async def route(self, sender_id: str, request: SignalRequest) -> bool:
        """Deliver a validated request to its single recipient, or drop it."""
        recipient = request.to

        if recipient == sender_id or recipient not in self.registry:
            logger.debug(
                "Dropping signalling message",
                extra={"type": request.type, "from": sender_id, "to": recipient},
            )
            self.metrics.record_signal(delivered=False)
            return False

        delivered = await self.registry.send_to(recipient, stamp_sender(request, sender_id))
        self.metrics.record_signal(delivered=delivered)

        if self.debug:
            logger.debug(
                "Signalling message routed",
                extra={"type": request.type, "from": sender_id, "to": recipient},
            )
        return delivered
