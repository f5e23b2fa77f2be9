"""Headless Mingle participant.

Joins a relay, walks its avatar around a circle, negotiates media with every
other participant and logs who it sees. Useful for load testing a relay and
for giving a lone browser tab someone to talk to.
"""

import argparse
import asyncio
import logging
import math
import random
import sys
import time
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

from aiortc.contrib.media import MediaBlackhole

from src.mingle.client.media import LocalMedia
from src.mingle.client.relay_client import RelayClient
from src.mingle.config import ClientConfig
from src.mingle.logging_utils import setup_logging
from src.mingle.protocol import PositionUpdate, Vec3

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent.parent / "configs" / "client.yaml"

EYE_HEIGHT = 1.6


def random_color() -> str:
    return f"#{random.randint(0, 0xFFFFFF):06x}"


class CircleWalk:
    """Transform source moving around a circle in the ground plane.

    Heading (rotation about y, in degrees) follows the direction of travel.
    """

    def __init__(
        self,
        radius: float = 3.0,
        period_s: float = 20.0,
        color: str | None = None,
        clock: Any = time.monotonic,
    ) -> None:
        self.radius = radius
        self.period_s = period_s
        self.color = color or random_color()
        self._clock = clock
        self._start = clock()

    def __call__(self) -> PositionUpdate:
        angle = 2 * math.pi * (self._clock() - self._start) / self.period_s
        return PositionUpdate(
            position=Vec3(
                x=self.radius * math.cos(angle),
                y=EYE_HEIGHT,
                z=self.radius * math.sin(angle),
            ),
            rotation=Vec3(y=-math.degrees(angle)),
            auxiliary={"color": self.color},
        )


class TrackSinks:
    """Consumes remote tracks so their decoders keep running.

    Sinks are kept per remote so a closed link stops only its own.
    """

    def __init__(self) -> None:
        self._sinks: dict[str, list[MediaBlackhole]] = {}
        self._pending: set[asyncio.Task[None]] = set()

    def __call__(self, remote_id: str, track: Any) -> None:
        logger.info(
            "Receiving remote media",
            extra={"remote_id": remote_id, "kind": getattr(track, "kind", None)},
        )
        sink = MediaBlackhole()
        sink.addTrack(track)
        self._sinks.setdefault(remote_id, []).append(sink)
        self._track(sink.start())

    def release(self, remote_id: str) -> None:
        """Stop the sinks of a remote whose link closed."""
        sinks = self._sinks.pop(remote_id, [])
        if sinks:
            logger.debug("Remote media ended", extra={"remote_id": remote_id})
            self._track(self._stop_all(sinks))

    async def stop(self) -> None:
        # Starts must finish before their sinks can be stopped.
        while self._pending:
            await asyncio.gather(*self._pending)
        remaining = [sink for sinks in self._sinks.values() for sink in sinks]
        self._sinks.clear()
        await self._stop_all(remaining)

    def _track(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @staticmethod
    async def _stop_all(sinks: list[MediaBlackhole]) -> None:
        for sink in sinks:
            await sink.stop()


async def run_client(
    config: ClientConfig,
    radius: float = 3.0,
    status_interval_s: float = 10.0,
) -> str:
    """Run one headless participant until the relay connection ends."""
    media = LocalMedia(config.media)
    sinks = TrackSinks()
    client = RelayClient(
        config,
        transform_source=CircleWalk(radius=radius),
        media=media,
        on_remote_track=sinks,
        on_remote_closed=sinks.release,
    )

    async def report_status() -> None:
        while True:
            await asyncio.sleep(status_interval_s)
            links = client.negotiator.links if client.negotiator is not None else {}
            logger.info(
                "Status",
                extra={
                    "session_id": client.session_id,
                    "participants": client.client_count,
                    "avatars": client.avatars.ids(),
                    "links": {rid: link.state.value for rid, link in links.items()},
                    "media_notice": media.notice,
                },
            )

    reporter = asyncio.create_task(report_status())
    try:
        return await client.run()
    finally:
        reporter.cancel()
        await client.close()
        await sinks.stop()


def build_config(args: argparse.Namespace) -> ClientConfig:
    """Merge command-line flags over the YAML configuration."""
    config = ClientConfig.from_yaml_with_defaults(args.config)
    update: dict[str, Any] = {}

    if args.url:
        update["relay_url"] = args.url
    if args.log_level:
        update["log_level"] = args.log_level

    media = config.media
    if args.video:
        media = media.model_copy(update={"video_device": args.video})
    if args.video_format:
        media = media.model_copy(update={"video_format": args.video_format})
    if args.audio:
        media = media.model_copy(update={"audio_device": args.audio})
    if args.no_media:
        media = media.model_copy(update={"enabled": False})
    update["media"] = media.model_dump()

    # Re-validate so flag values get the same checks as YAML values.
    return ClientConfig.model_validate({**config.model_dump(), **update})


def main() -> None:
    """Main entry point for the headless client."""
    parser = argparse.ArgumentParser(description="Headless Mingle participant")
    parser.add_argument(
        "--url",
        type=str,
        default=None,
        help="Relay WebSocket URL (default: from config, ws://localhost:3000)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path to client config YAML file",
    )
    parser.add_argument(
        "--no-media",
        action="store_true",
        help="Join receive-only without opening any device",
    )
    parser.add_argument(
        "--video",
        type=str,
        default=None,
        help="Video device or file to send (e.g. /dev/video0)",
    )
    parser.add_argument(
        "--video-format",
        type=str,
        default=None,
        help="FFmpeg input format for --video (e.g. v4l2, avfoundation)",
    )
    parser.add_argument(
        "--audio",
        type=str,
        default=None,
        help="Audio device or file to send",
    )
    parser.add_argument(
        "--radius",
        type=float,
        default=3.0,
        help="Radius of the walked circle in metres",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    args = parser.parse_args()

    try:
        config = build_config(args)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(config.log_level)

    try:
        reason = asyncio.run(run_client(config, radius=args.radius))
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)
    except OSError as e:
        logger.error("Could not reach relay", extra={"url": config.relay_url, "error": str(e)})
        sys.exit(1)

    logger.info("Disconnected", extra={"reason": reason})


if __name__ == "__main__":
    main()
