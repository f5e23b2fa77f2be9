"""Unit tests for shared local media acquisition."""

from typing import Any
from unittest.mock import MagicMock

from aiortc.mediastreams import AudioStreamTrack, VideoStreamTrack

from src.mingle.client.media import MEDIA_UNAVAILABLE_NOTICE, LocalMedia
from src.mingle.config import MediaConfig


class FakePlayer:
    """MediaPlayer stand-in exposing synthetic tracks."""

    opened: list[tuple[str, dict[str, Any]]] = []

    def __init__(self, device: str, format: str | None = None, options: Any = None) -> None:
        FakePlayer.opened.append((device, {"format": format, "options": options}))
        self.audio = AudioStreamTrack()
        self.video = VideoStreamTrack()


def denied_player(device: str, **kwargs: Any) -> Any:
    raise PermissionError(f"Permission denied: {device}")


async def test_disabled_media_is_receive_only() -> None:
    factory = MagicMock()
    media = LocalMedia(MediaConfig(enabled=False, video_device="/dev/video0"), factory)

    assert await media.wait_ready() == []
    assert await media.tracks_for_peer() == []
    assert media.notice is None
    factory.assert_not_called()


async def test_no_devices_configured() -> None:
    media = LocalMedia(MediaConfig(), FakePlayer)
    assert await media.wait_ready() == []
    assert media.notice is None


async def test_acquisition_opens_each_device_once() -> None:
    FakePlayer.opened.clear()
    media = LocalMedia(
        MediaConfig(
            video_device="/dev/video0",
            video_format="v4l2",
            audio_device="default",
            audio_format="pulse",
        ),
        FakePlayer,
    )

    first = await media.tracks_for_peer()
    second = await media.tracks_for_peer()

    assert [device for device, _ in FakePlayer.opened] == ["/dev/video0", "default"]
    assert FakePlayer.opened[0][1]["format"] == "v4l2"
    assert sorted(track.kind for track in first) == ["audio", "video"]
    # Each peer gets its own proxy of the shared source.
    assert not set(map(id, first)) & set(map(id, second))
    await media.stop()


async def test_start_is_idempotent() -> None:
    FakePlayer.opened.clear()
    media = LocalMedia(MediaConfig(video_device="/dev/video0"), FakePlayer)

    media.start()
    media.start()
    await media.wait_ready()

    assert media.started
    assert len(FakePlayer.opened) == 1
    await media.stop()


async def test_denied_device_degrades_with_notice() -> None:
    media = LocalMedia(MediaConfig(video_device="/dev/video0"), denied_player)

    assert await media.tracks_for_peer() == []
    assert media.notice == MEDIA_UNAVAILABLE_NOTICE


async def test_partial_failure_keeps_working_device() -> None:
    def factory(device: str, **kwargs: Any) -> Any:
        if device == "/dev/video0":
            raise OSError("No such device")
        return FakePlayer(device, **kwargs)

    media = LocalMedia(
        MediaConfig(video_device="/dev/video0", audio_device="default"), factory
    )

    tracks = await media.wait_ready()

    assert [track.kind for track in tracks] == ["audio"]
    assert media.notice == MEDIA_UNAVAILABLE_NOTICE
    await media.stop()


async def test_stop_ends_source_tracks() -> None:
    media = LocalMedia(MediaConfig(video_device="/dev/video0"), FakePlayer)
    [source] = await media.wait_ready()

    await media.stop()

    assert source.readyState == "ended"
