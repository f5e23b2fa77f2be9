"""Unit tests for the remote avatar table."""

from src.mingle.client.avatars import RemoteAvatarTable
from src.mingle.protocol import PositionBroadcast, Vec3


def test_upsert_creates_then_updates() -> None:
    table = RemoteAvatarTable()

    avatar, created = table.upsert(PositionBroadcast(id="bob", position=Vec3(x=1)))
    assert created is True
    assert avatar.position == Vec3(x=1)

    again, created = table.upsert(
        PositionBroadcast(id="bob", rotation=Vec3(y=90), auxiliary={"color": "#123456"})
    )
    assert created is False
    assert again is avatar
    assert avatar.position == Vec3(x=1)
    assert avatar.rotation == Vec3(y=90)
    assert avatar.color == "#123456"
    assert avatar.updates == 2


def test_spectate_position() -> None:
    table = RemoteAvatarTable()
    avatar, _ = table.upsert(
        PositionBroadcast(id="bob", auxiliary={"spectatePos": {"x": 1, "y": 2, "z": 3}})
    )
    assert avatar.spectate_position == Vec3(x=1, y=2, z=3)


def test_track_before_first_transform() -> None:
    table = RemoteAvatarTable()
    track = object()

    table.attach_track("bob", track)
    avatar, created = table.upsert(PositionBroadcast(id="bob", position=Vec3()))

    assert created is False
    assert avatar.tracks == [track]


def test_detach_and_remove() -> None:
    table = RemoteAvatarTable()
    track = object()
    table.attach_track("bob", track)

    assert table.detach_tracks("bob") == [track]
    assert table.detach_tracks("nobody") == []
    assert "bob" in table

    assert table.remove("bob") is not None
    assert table.remove("bob") is None
    assert len(table) == 0


def test_ids_and_clear() -> None:
    table = RemoteAvatarTable()
    for remote_id in ("a", "b"):
        table.upsert(PositionBroadcast(id=remote_id))

    assert table.ids() == ["a", "b"]
    table.clear()
    assert table.ids() == []
