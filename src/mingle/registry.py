"""Session registry.

In-memory table of connected sessions, owned by the relay process and only
touched from its event loop. Holds the transport handle and last-known
transform of every session, and performs fan-out to them.
"""

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from src.mingle.protocol import PositionUpdate, ServerMessage
from src.mingle.transport.base import TransportSession, new_session_id

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """One connected client's relay-side identity and state."""

    id: str
    transport: TransportSession
    last_transform: PositionUpdate | None = None
    connected_at: float = field(default_factory=time.monotonic)
    messages_received: int = 0

    @property
    def age_seconds(self) -> float:
        return time.monotonic() - self.connected_at


class SessionRegistry:
    """Registry of live sessions keyed by server-assigned id.

    Identifiers are never reused: every id handed out by :meth:`allocate_id`
    is remembered for the lifetime of the registry, so a departure for an id
    always refers to exactly one connection.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(self, id_factory: Callable[[], str] = new_session_id) -> None:
        self._id_factory = id_factory
        self._sessions: dict[str, Session] = {}
        self._issued: set[str] = set()

    def allocate_id(self) -> str:
        """Allocate a fresh identifier that has never been issued before."""
        while True:
            session_id = self._id_factory()
            if session_id not in self._issued:
                self._issued.add(session_id)
                return session_id
            logger.warning("Session id collision, regenerating", extra={"session_id": session_id})

    def add(self, transport: TransportSession) -> Session:
        """Insert a session for a freshly accepted transport.

        Raises:
            ValueError: If a session with the same id is already registered
        """
        session_id = transport.session_id
        if session_id in self._sessions:
            raise ValueError(f"Session already registered: {session_id}")

        self._issued.add(session_id)
        session = Session(id=session_id, transport=transport)
        self._sessions[session_id] = session
        return session

    def remove(self, session_id: str) -> Session | None:
        """Remove a session; returns None if it was already gone."""
        return self._sessions.pop(session_id, None)

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def update_transform(self, session_id: str, transform: PositionUpdate) -> bool:
        """Store the latest transform of a session; False if it is unknown."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.last_transform = transform
        session.messages_received += 1
        return True

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    @property
    def count(self) -> int:
        """Number of live sessions."""
        return len(self._sessions)

    def ids(self) -> list[str]:
        return list(self._sessions)

    def sessions(self) -> list[Session]:
        """Snapshot of live sessions (safe to iterate across awaits)."""
        return list(self._sessions.values())

    async def send_to(self, session_id: str, message: ServerMessage) -> bool:
        """Deliver a message to one session.

        Returns:
            True if delivered, False if the session is unknown or its
            connection is already broken
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False
        return await self._deliver(session, message)

    async def broadcast(
        self, message: ServerMessage, exclude: Iterable[str] = ()
    ) -> int:
        """Deliver a message to every live session except ``exclude``.

        A failing recipient is skipped; its own connection handler performs
        the departure.

        Returns:
            Number of sessions the message was delivered to
        """
        excluded = set(exclude)
        delivered = 0
        for session in self.sessions():
            if session.id in excluded:
                continue
            if await self._deliver(session, message):
                delivered += 1
        return delivered

    async def _deliver(self, session: Session, message: ServerMessage) -> bool:
        try:
            await session.transport.send_message(message)
            return True
        except ConnectionError as e:
            logger.debug(
                "Dropping message for broken connection",
                extra={"session_id": session.id, "type": message.type, "error": str(e)},
            )
            return False
