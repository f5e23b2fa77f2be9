"""Transport seam between the relay core and the client sockets.

The registry, presence notifier and brokers only ever see these two
interfaces: a listening transport that hands out sessions, and sessions
that exchange typed relay messages and decoded JSON objects.
"""

import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from src.mingle.protocol import ServerMessage


def new_session_id() -> str:
    """Generate an opaque, collision-resistant session identifier."""
    return f"s-{uuid.uuid4().hex[:12]}"


class TransportSession(ABC):
    """One connected client, owned by the relay until :meth:`release`."""

    @property
    @abstractmethod
    def session_id(self) -> str:
        """Identifier assigned when the client connected; never reused."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        pass

    @abstractmethod
    async def send_message(self, message: ServerMessage) -> None:
        """Deliver one relay message.

        Raises:
            ConnectionError: If the client is gone
        """

    @abstractmethod
    def receive_messages(self) -> AsyncIterator[dict[str, Any]]:
        """Iterate the client's frames as decoded JSON objects.

        Frames that are not JSON objects never reach the caller. Iteration
        stops when the client disconnects.
        """

    @abstractmethod
    async def close(self) -> None:
        pass

    def release(self) -> None:
        """Tell the transport the relay has finished with this session."""


class Transport(ABC):
    """Listening side: accepts clients and queues their sessions."""

    @property
    @abstractmethod
    def is_running(self) -> bool:
        pass

    @abstractmethod
    async def start(self) -> None:
        """Begin accepting clients.

        Raises:
            RuntimeError: If already started
            OSError: If the listening socket cannot be bound
        """

    @abstractmethod
    async def stop(self) -> None:
        """Stop accepting clients and close every open session."""

    @abstractmethod
    async def accept_session(self) -> TransportSession:
        """Wait for the next client.

        Raises:
            RuntimeError: If the transport is not running
        """
