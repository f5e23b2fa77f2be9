"""Unit tests for the session registry."""

import pytest

from src.mingle.protocol import ClientCountMessage, PositionUpdate, Vec3
from src.mingle.registry import SessionRegistry
from src.mingle.transport.base import new_session_id
from tests.helpers.mock_session import MockSession


def test_new_session_id_format() -> None:
    session_id = new_session_id()
    assert session_id.startswith("s-")
    assert len(session_id) == 14


def test_allocate_id_never_reuses() -> None:
    """A colliding factory value is regenerated rather than reissued."""
    values = iter(["a", "a", "b", "a", "c"])
    registry = SessionRegistry(id_factory=lambda: next(values))

    assert registry.allocate_id() == "a"
    assert registry.allocate_id() == "b"
    assert registry.allocate_id() == "c"


def test_removed_id_is_not_reissued() -> None:
    values = iter(["x", "x", "y"])
    registry = SessionRegistry(id_factory=lambda: next(values))

    first = registry.allocate_id()
    registry.add(MockSession(first))
    registry.remove(first)

    assert registry.allocate_id() != first


def test_add_and_remove() -> None:
    registry = SessionRegistry()
    session = registry.add(MockSession("alice"))

    assert session.id == "alice"
    assert session.last_transform is None
    assert "alice" in registry
    assert len(registry) == 1
    assert registry.count == 1

    assert registry.remove("alice") is session
    assert registry.remove("alice") is None
    assert registry.count == 0


def test_add_duplicate_rejected() -> None:
    registry = SessionRegistry()
    registry.add(MockSession("alice"))

    with pytest.raises(ValueError, match="already registered"):
        registry.add(MockSession("alice"))


def test_update_transform() -> None:
    registry = SessionRegistry()
    registry.add(MockSession("alice"))
    update = PositionUpdate(position=Vec3(x=1.0))

    assert registry.update_transform("alice", update) is True
    session = registry.get("alice")
    assert session is not None
    assert session.last_transform == update
    assert session.messages_received == 1

    assert registry.update_transform("ghost", update) is False


async def test_send_to() -> None:
    registry = SessionRegistry()
    alice = MockSession("alice")
    registry.add(alice)

    assert await registry.send_to("alice", ClientCountMessage(count=1)) is True
    assert await registry.send_to("ghost", ClientCountMessage(count=1)) is False
    assert alice.sent == [ClientCountMessage(count=1)]


async def test_broadcast_skips_broken_and_excluded() -> None:
    registry = SessionRegistry()
    alice, bob, carol = MockSession("alice"), MockSession("bob"), MockSession("carol")
    for session in (alice, bob, carol):
        registry.add(session)
    bob.break_connection()

    delivered = await registry.broadcast(ClientCountMessage(count=3), exclude=["carol"])

    assert delivered == 1
    assert alice.sent_of("client_count") == [ClientCountMessage(count=3)]
    assert bob.sent == []
    assert carol.sent == []
