"""Remote avatar table.

Per-remote render/playback targets keyed by session id. The 3D scene
consumes this table; it only ever holds *other* participants.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from src.mingle.protocol import PositionBroadcast, Vec3

logger = logging.getLogger(__name__)


@dataclass
class RemoteAvatar:
    """Last known state of one remote participant."""

    id: str
    position: Vec3 | None = None
    rotation: Vec3 | None = None
    auxiliary: dict[str, Any] = field(default_factory=dict)
    tracks: list[Any] = field(default_factory=list)
    updates: int = 0
    last_update_ts: float | None = None

    @property
    def color(self) -> str | None:
        value = self.auxiliary.get("color")
        return value if isinstance(value, str) else None

    @property
    def spectate_position(self) -> Vec3 | None:
        value = self.auxiliary.get("spectatePos")
        return Vec3.model_validate(value) if isinstance(value, dict) else None

    def apply(self, message: PositionBroadcast) -> None:
        """Overwrite state with a newer update (state is replaced, not diffed)."""
        if message.position is not None:
            self.position = message.position
        if message.rotation is not None:
            self.rotation = message.rotation
        self.auxiliary = dict(message.auxiliary or {})
        self.updates += 1
        self.last_update_ts = time.monotonic()


class RemoteAvatarTable:
    """Remote avatars keyed by session id."""

    def __init__(self) -> None:
        self._avatars: dict[str, RemoteAvatar] = {}

    def upsert(self, message: PositionBroadcast) -> tuple[RemoteAvatar, bool]:
        """Apply an update, creating the avatar on first sight.

        Returns:
            (avatar, True if it was just created)
        """
        avatar = self._avatars.get(message.id)
        created = avatar is None
        if avatar is None:
            avatar = RemoteAvatar(id=message.id)
            self._avatars[message.id] = avatar
            logger.info("Remote avatar created", extra={"remote_id": message.id})

        avatar.apply(message)
        return avatar, created

    def attach_track(self, remote_id: str, track: Any) -> RemoteAvatar:
        """Route a remote media track to its avatar.

        The track may arrive before the first transform, so a placeholder
        avatar is created rather than losing the stream.
        """
        avatar = self._avatars.get(remote_id)
        if avatar is None:
            avatar = RemoteAvatar(id=remote_id)
            self._avatars[remote_id] = avatar
        avatar.tracks.append(track)
        return avatar

    def detach_tracks(self, remote_id: str) -> list[Any]:
        avatar = self._avatars.get(remote_id)
        if avatar is None:
            return []
        tracks, avatar.tracks = avatar.tracks, []
        return tracks

    def remove(self, remote_id: str) -> RemoteAvatar | None:
        avatar = self._avatars.pop(remote_id, None)
        if avatar is not None:
            logger.info("Remote avatar removed", extra={"remote_id": remote_id})
        return avatar

    def clear(self) -> None:
        self._avatars.clear()

    def get(self, remote_id: str) -> RemoteAvatar | None:
        return self._avatars.get(remote_id)

    def ids(self) -> list[str]:
        return list(self._avatars)

    def __contains__(self, remote_id: object) -> bool:
        return remote_id in self._avatars

    def __len__(self) -> int:
        return len(self._avatars)
