"""Local camera/microphone capture shared by every peer link.

Acquisition happens once; every PeerLink gets its own relayed proxy of the
source tracks, so attaching to a new peer never moves or re-opens the
device. If acquisition fails the client carries on receive-only.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay

from src.mingle.config import MediaConfig

logger = logging.getLogger(__name__)

MEDIA_UNAVAILABLE_NOTICE = "Webcam unavailable. Check camera permissions."


class LocalMedia:
    """Single shared local media source.

    ``player_factory`` opens one device and returns an object with ``audio``
    and ``video`` track attributes (aiortc's MediaPlayer by default).
    """

    def __init__(
        self,
        config: MediaConfig,
        player_factory: Callable[..., Any] = MediaPlayer,
    ) -> None:
        self.config = config
        self._player_factory = player_factory
        self._relay = MediaRelay()
        self._players: list[Any] = []
        self._sources: list[MediaStreamTrack] = []
        self._task: asyncio.Task[list[MediaStreamTrack]] | None = None
        self.notice: str | None = None

    @property
    def started(self) -> bool:
        return self._task is not None

    def start(self) -> None:
        """Begin acquisition in the background (idempotent)."""
        if self._task is None:
            self._task = asyncio.create_task(self._acquire())

    async def wait_ready(self) -> list[MediaStreamTrack]:
        """Wait for acquisition and return the source tracks (possibly none)."""
        self.start()
        assert self._task is not None
        return await asyncio.shield(self._task)

    async def tracks_for_peer(self) -> list[MediaStreamTrack]:
        """Per-peer proxies of the shared source tracks."""
        sources = await self.wait_ready()
        return [self._relay.subscribe(track) for track in sources]

    async def _acquire(self) -> list[MediaStreamTrack]:
        if not self.config.enabled:
            logger.info("Local media disabled, joining receive-only")
            return []

        devices = [
            (
                "video",
                self.config.video_device,
                self.config.video_format,
                self.config.video_options,
            ),
            ("audio", self.config.audio_device, self.config.audio_format, {}),
        ]

        for kind, device, fmt, options in devices:
            if not device:
                continue
            try:
                player = await asyncio.to_thread(
                    self._player_factory, device, format=fmt, options=options
                )
            except Exception as e:
                # Camera/microphone denied or missing is never fatal.
                logger.warning(
                    "Could not open local media device",
                    extra={"kind": kind, "device": device, "error": str(e)},
                )
                self.notice = MEDIA_UNAVAILABLE_NOTICE
                continue

            track = getattr(player, kind, None)
            if track is None:
                logger.warning(
                    "Media device has no track of the requested kind",
                    extra={"kind": kind, "device": device},
                )
                self.notice = MEDIA_UNAVAILABLE_NOTICE
                continue

            self._players.append(player)
            self._sources.append(track)
            logger.info("Local media started", extra={"kind": kind, "device": device})

        if not self._sources:
            logger.info("No local media tracks, joining receive-only")
        return list(self._sources)

    async def stop(self) -> None:
        """Stop every source track and release the devices."""
        if self._task is not None and not self._task.done():
            self._task.cancel()

        for track in self._sources:
            track.stop()
        self._sources.clear()
        self._players.clear()
