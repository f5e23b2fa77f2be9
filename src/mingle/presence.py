"""Presence notifier.

Turns registry membership changes into relay-wide events: the live session
count goes to everybody on every join and leave, and a departure notice goes
to every remaining session exactly once per disconnect.
"""

import logging

from src.mingle.logging_utils import log_event
from src.mingle.metrics import MetricsCollector
from src.mingle.protocol import ClientCountMessage, DisconnectClientMessage
from src.mingle.registry import Session, SessionRegistry
from src.mingle.transport.base import TransportSession

logger = logging.getLogger(__name__)


class PresenceNotifier:
    """Registers and unregisters sessions and announces the change.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(self, registry: SessionRegistry, metrics: MetricsCollector) -> None:
        self.registry = registry
        self.metrics = metrics

    async def on_connect(self, transport: TransportSession) -> Session:
        """Insert a session with no transform and broadcast the new count."""
        session = self.registry.add(transport)
        self.metrics.record_session_start()

        logger.info(
            "Client connected",
            extra={"session_id": session.id, "count": self.registry.count},
        )
        log_event("session_joined", {"session_id": session.id, "count": self.registry.count})

        await self.broadcast_count()
        return session

    async def on_disconnect(self, session_id: str) -> bool:
        """Remove a session and announce its departure.

        Idempotent: a second call for the same id does nothing. Because ids
        are never reused, the departure notice for an id always precedes any
        traffic from a later session.

        Returns:
            True if the session was present and departure was announced
        """
        session = self.registry.remove(session_id)
        if session is None:
            return False

        self.metrics.record_session_end(session.age_seconds)

        logger.info(
            "Client disconnected",
            extra={"session_id": session_id, "count": self.registry.count},
        )
        log_event("session_left", {"session_id": session_id, "count": self.registry.count})

        # The departed session is already out of the registry, so a plain
        # broadcast reaches exactly the remaining sessions.
        await self.registry.broadcast(DisconnectClientMessage(id=session_id))
        await self.broadcast_count()
        return True

    async def broadcast_count(self) -> None:
        await self.registry.broadcast(ClientCountMessage(count=self.registry.count))
