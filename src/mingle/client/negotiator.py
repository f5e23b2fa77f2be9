"""Peer mesh negotiation.

Every client keeps one PeerLink per known remote session and negotiates a
direct WebRTC connection with it through the relay's signalling broker.

Glare avoidance: for any pair of sessions exactly one side sends the offer.
The side whose own id sorts lower initiates; both sides compute this
independently from the two ids, so no extra coordination message exists.

Each PeerLink processes its work items (start offer, remote offer, remote
answer, remote ICE candidate) strictly in arrival order on its own task. A
link waiting on local media or on the network therefore never blocks other
links or the transform loop of the client.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from aiortc import (
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)

from src.mingle.client.ice import candidate_from_wire
from src.mingle.client.media import LocalMedia
from src.mingle.protocol import (
    IceCandidatePayload,
    RtcAnswerRequest,
    RtcOfferRequest,
    SessionDescription,
    SignalRequest,
)

logger = logging.getLogger(__name__)

MEDIA_KINDS = ("audio", "video")


class LinkState(Enum):
    """PeerLink state machine states.

    State Transitions:
    - NEW → OFFERING (initiator sends its offer)
    - NEW → ANSWERING (responder received an offer)
    - OFFERING → CONNECTED (answer applied)
    - ANSWERING → CONNECTED (answer sent, both descriptions set)
    - * → CLOSED (departure, negotiation failure, or shutdown)

    CONNECTED refers to the signalling layer: both descriptions are set.
    """

    NEW = "new"
    OFFERING = "offering"
    ANSWERING = "answering"
    CONNECTED = "connected"
    CLOSED = "closed"


# Valid state transitions
VALID_TRANSITIONS: dict[LinkState, set[LinkState]] = {
    LinkState.NEW: {LinkState.OFFERING, LinkState.ANSWERING, LinkState.CLOSED},
    LinkState.OFFERING: {LinkState.CONNECTED, LinkState.CLOSED},
    LinkState.ANSWERING: {LinkState.CONNECTED, LinkState.CLOSED},
    LinkState.CONNECTED: {LinkState.CLOSED},
    LinkState.CLOSED: set(),  # Terminal state
}


class InvalidTransitionError(RuntimeError):
    """Raised when a PeerLink is asked to make a transition it cannot make."""


def is_initiator(local_id: str, remote_id: str) -> bool:
    """True if ``local_id`` should send the offer to ``remote_id``.

    Plain lexicographic comparison of the identifiers: stable for the
    lifetime of both sessions and identical on both sides.
    """
    return local_id < remote_id


class _Work(Enum):
    START_OFFER = "start_offer"
    OFFER = "offer"
    ANSWER = "answer"
    CANDIDATE = "candidate"


@dataclass
class PeerLink:
    """One client's connection state for one remote session."""

    remote_id: str
    initiator: bool
    pc: Any
    state: LinkState = LinkState.NEW
    pending_candidates: list[RTCIceCandidate] = field(default_factory=list)
    remote_description_set: bool = False
    local_tracks: list[Any] = field(default_factory=list)
    created_at: float = field(default_factory=time.monotonic)
    inbox: asyncio.Queue[tuple[_Work, Any]] = field(default_factory=asyncio.Queue)
    worker: asyncio.Task[None] | None = None
    deadline: asyncio.TimerHandle | None = None

    @property
    def is_closed(self) -> bool:
        return self.state is LinkState.CLOSED

    @property
    def outgoing_tracks(self) -> int:
        return len(self.local_tracks)

    def transition(self, new_state: LinkState) -> None:
        """Move to ``new_state``.

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        if new_state not in VALID_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Invalid PeerLink transition for {self.remote_id}: "
                f"{self.state.value} -> {new_state.value}"
            )

        logger.debug(
            "PeerLink state change",
            extra={
                "remote_id": self.remote_id,
                "from_state": self.state.value,
                "to_state": new_state.value,
            },
        )
        self.state = new_state


SignalSender = Callable[[SignalRequest], Awaitable[None]]


class PeerMeshNegotiator:
    """Builds and tears down direct peer links for one client.

    Args:
        local_id: This client's own session id
        send_signal: Coroutine function delivering a request to the relay
        media: Shared local media; None means receive-only
        ice_servers: STUN/TURN URLs for new peer connections
        negotiation_timeout_s: Close links that do not connect in time
        retry_cooldown_s: Ignore rediscovery of a failed peer for this long
        peer_connection_factory: Creates one RTCPeerConnection-like object
        on_track: Called as ``on_track(remote_id, track)`` for remote media
        on_link_closed: Called as ``on_link_closed(remote_id)`` after teardown

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        local_id: str,
        send_signal: SignalSender,
        media: LocalMedia | None = None,
        ice_servers: list[str] | None = None,
        negotiation_timeout_s: float = 15.0,
        retry_cooldown_s: float = 5.0,
        peer_connection_factory: Callable[[], Any] | None = None,
        on_track: Callable[[str, Any], None] | None = None,
        on_link_closed: Callable[[str], None] | None = None,
    ) -> None:
        self.local_id = local_id
        self._send_signal = send_signal
        self.media = media
        self.ice_servers = ice_servers or []
        self.negotiation_timeout_s = negotiation_timeout_s
        self.retry_cooldown_s = retry_cooldown_s
        self._pc_factory = peer_connection_factory or self._default_peer_connection
        self.on_track = on_track
        self.on_link_closed = on_link_closed

        self.links: dict[str, PeerLink] = {}
        self._cooldown_until: dict[str, float] = {}
        self._background: set[asyncio.Future[None]] = set()

    def _default_peer_connection(self) -> RTCPeerConnection:
        servers = [RTCIceServer(urls=url) for url in self.ice_servers]
        return RTCPeerConnection(RTCConfiguration(iceServers=servers))

    def link(self, remote_id: str) -> PeerLink | None:
        return self.links.get(remote_id)

    def in_cooldown(self, remote_id: str) -> bool:
        until = self._cooldown_until.get(remote_id)
        if until is None:
            return False
        if time.monotonic() >= until:
            del self._cooldown_until[remote_id]
            return False
        return True

    # === Discovery ===

    def discover(self, remote_id: str) -> PeerLink | None:
        """Make sure a PeerLink exists for a remote session seen on the relay.

        Returns the existing link if there is one (never a duplicate), a new
        link otherwise, or None for our own id and for peers in retry
        cooldown. A new link on the initiating side starts its offer.
        """
        if remote_id == self.local_id:
            return None

        existing = self.links.get(remote_id)
        if existing is not None:
            return existing

        if self.in_cooldown(remote_id):
            return None

        return self._create_link(remote_id)

    def _create_link(self, remote_id: str) -> PeerLink:
        pc = self._pc_factory()
        link = PeerLink(
            remote_id=remote_id,
            initiator=is_initiator(self.local_id, remote_id),
            pc=pc,
        )
        self.links[remote_id] = link
        self._wire_events(link)

        loop = asyncio.get_running_loop()
        link.deadline = loop.call_later(
            self.negotiation_timeout_s, self._on_negotiation_timeout, link
        )
        link.worker = asyncio.create_task(
            self._run_link(link), name=f"peer-link-{remote_id}"
        )

        if link.initiator:
            link.inbox.put_nowait((_Work.START_OFFER, None))

        logger.info(
            "PeerLink created",
            extra={"remote_id": remote_id, "initiator": link.initiator},
        )
        return link

    def _wire_events(self, link: PeerLink) -> None:
        pc = link.pc

        @pc.on("track")
        def handle_track(track: Any) -> None:
            logger.info(
                "Remote track received",
                extra={"remote_id": link.remote_id, "kind": getattr(track, "kind", None)},
            )
            if self.on_track is not None and not link.is_closed:
                self.on_track(link.remote_id, track)

        @pc.on("connectionstatechange")
        async def handle_connection_state() -> None:
            state = pc.connectionState
            logger.debug(
                "Peer connection state",
                extra={"remote_id": link.remote_id, "state": state},
            )
            if state == "failed":
                await self._close_link(link, reason="ice failure", failed=True)

    # === Inbound signalling ===

    def handle_offer(self, remote_id: str, offer: SessionDescription) -> PeerLink | None:
        """Queue a remote offer, creating the link if the sender is new.

        An offer is a fresh attempt from the remote side, so it lifts any
        retry cooldown for that peer.
        """
        if remote_id == self.local_id:
            return None
        self._cooldown_until.pop(remote_id, None)

        stale = self.links.get(remote_id)
        if stale is not None and not stale.initiator and stale.state is not LinkState.NEW:
            # The initiator restarted negotiation; replace, never duplicate.
            self._detach(stale, reason="renegotiation")
            self._spawn(self._release(stale))

        link = self.discover(remote_id)
        if link is not None:
            link.inbox.put_nowait((_Work.OFFER, offer))
        return link

    def handle_answer(self, remote_id: str, answer: SessionDescription) -> PeerLink | None:
        link = self.links.get(remote_id)
        if link is None:
            logger.warning("Answer from unknown peer dropped", extra={"remote_id": remote_id})
            return None
        link.inbox.put_nowait((_Work.ANSWER, answer))
        return link

    def handle_ice_candidate(
        self, remote_id: str, payload: IceCandidatePayload | None
    ) -> PeerLink | None:
        """Queue a remote candidate; it is buffered until the remote description is set.

        A null payload (end of candidates) and unparseable candidates are
        ignored without affecting the link.
        """
        if payload is None or not payload.candidate:
            return self.links.get(remote_id)

        try:
            candidate = candidate_from_wire(payload)
        except ValueError as e:
            logger.warning(
                "Ignoring malformed ICE candidate",
                extra={"remote_id": remote_id, "error": str(e)},
            )
            return self.links.get(remote_id)

        link = self.discover(remote_id)
        if link is not None:
            link.inbox.put_nowait((_Work.CANDIDATE, candidate))
        return link

    async def handle_departure(self, remote_id: str) -> bool:
        """Tear down the link to a departed session, whatever its state.

        The link leaves the table and enters CLOSED before this coroutine
        first yields; releasing the transport follows. Idempotent.

        Returns:
            True if a link existed
        """
        self._cooldown_until.pop(remote_id, None)
        link = self.links.get(remote_id)
        if link is None:
            return False
        await self._close_link(link, reason="departure")
        return True

    async def close_all(self) -> None:
        """Close every link (relay connection lost or client shutting down)."""
        for link in list(self.links.values()):
            await self._close_link(link, reason="shutdown")

    async def wait_idle(self, remote_id: str) -> None:
        """Wait until a link has processed everything queued so far."""
        link = self.links.get(remote_id)
        if link is not None and not link.is_closed:
            await link.inbox.join()

    # === Per-link worker ===

    async def _run_link(self, link: PeerLink) -> None:
        while not link.is_closed:
            work, payload = await link.inbox.get()
            try:
                if link.is_closed:
                    continue

                if work is _Work.START_OFFER:
                    await self._start_offer(link)
                elif work is _Work.OFFER:
                    await self._accept_offer(link, payload)
                elif work is _Work.ANSWER:
                    await self._accept_answer(link, payload)
                elif work is _Work.CANDIDATE:
                    await self._add_candidate(link, payload)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Negotiation failed",
                    extra={
                        "remote_id": link.remote_id,
                        "state": link.state.value,
                        "step": work.value,
                        "error": str(e),
                    },
                )
                await self._close_link(link, reason=f"negotiation failure: {e}", failed=True)
            finally:
                link.inbox.task_done()

    async def _start_offer(self, link: PeerLink) -> None:
        if link.state is not LinkState.NEW:
            return

        await self._attach_local_tracks(link)
        if link.is_closed:
            return

        link.transition(LinkState.OFFERING)
        offer = await link.pc.createOffer()
        await link.pc.setLocalDescription(offer)

        local = link.pc.localDescription
        await self._send_signal(
            RtcOfferRequest(
                to=link.remote_id,
                offer=SessionDescription(type=local.type, sdp=local.sdp),
            )
        )
        logger.info("Sent RTC offer", extra={"remote_id": link.remote_id})

    async def _accept_offer(self, link: PeerLink, offer: SessionDescription) -> None:
        if link.initiator or link.state is not LinkState.NEW:
            logger.warning(
                "Unexpected offer ignored",
                extra={
                    "remote_id": link.remote_id,
                    "state": link.state.value,
                    "initiator": link.initiator,
                },
            )
            return

        link.transition(LinkState.ANSWERING)
        await self._attach_local_tracks(link)
        if link.is_closed:
            return

        await link.pc.setRemoteDescription(RTCSessionDescription(sdp=offer.sdp, type=offer.type))
        await self._on_remote_description(link)

        answer = await link.pc.createAnswer()
        await link.pc.setLocalDescription(answer)

        local = link.pc.localDescription
        await self._send_signal(
            RtcAnswerRequest(
                to=link.remote_id,
                answer=SessionDescription(type=local.type, sdp=local.sdp),
            )
        )
        self._mark_connected(link)
        logger.info("Sent RTC answer", extra={"remote_id": link.remote_id})

    async def _accept_answer(self, link: PeerLink, answer: SessionDescription) -> None:
        if link.state is not LinkState.OFFERING:
            logger.warning(
                "Unexpected answer ignored",
                extra={"remote_id": link.remote_id, "state": link.state.value},
            )
            return

        await link.pc.setRemoteDescription(RTCSessionDescription(sdp=answer.sdp, type=answer.type))
        await self._on_remote_description(link)
        self._mark_connected(link)
        logger.info("RTC answer applied", extra={"remote_id": link.remote_id})

    async def _add_candidate(self, link: PeerLink, candidate: RTCIceCandidate) -> None:
        if not link.remote_description_set:
            link.pending_candidates.append(candidate)
            logger.debug(
                "ICE candidate buffered",
                extra={"remote_id": link.remote_id, "pending": len(link.pending_candidates)},
            )
            return
        await self._apply_candidate(link, candidate)

    async def _on_remote_description(self, link: PeerLink) -> None:
        """Replay buffered candidates in arrival order."""
        link.remote_description_set = True
        while link.pending_candidates and not link.is_closed:
            await self._apply_candidate(link, link.pending_candidates.pop(0))

    async def _apply_candidate(self, link: PeerLink, candidate: RTCIceCandidate) -> None:
        try:
            await link.pc.addIceCandidate(candidate)
        except Exception as e:
            # One bad candidate does not doom the connection.
            logger.warning(
                "ICE candidate rejected",
                extra={"remote_id": link.remote_id, "error": str(e)},
            )

    async def _attach_local_tracks(self, link: PeerLink) -> None:
        """Attach shared local media; with none, negotiate receive-only."""
        tracks: list[Any] = []
        if self.media is not None:
            tracks = await self.media.tracks_for_peer()

        if link.is_closed:
            for track in tracks:
                track.stop()
            return

        for track in tracks:
            link.pc.addTrack(track)
        link.local_tracks.extend(tracks)

        # The offer must still carry media sections for what we only receive.
        if link.initiator:
            sending = {getattr(track, "kind", None) for track in tracks}
            for kind in MEDIA_KINDS:
                if kind not in sending:
                    link.pc.addTransceiver(kind, direction="recvonly")

        if not tracks:
            logger.info("Negotiating receive-only", extra={"remote_id": link.remote_id})

    def _mark_connected(self, link: PeerLink) -> None:
        link.transition(LinkState.CONNECTED)
        if link.deadline is not None:
            link.deadline.cancel()
            link.deadline = None

    # === Teardown ===

    def _on_negotiation_timeout(self, link: PeerLink) -> None:
        link.deadline = None
        if link.is_closed or link.state is LinkState.CONNECTED:
            return
        logger.warning(
            "Negotiation timed out",
            extra={"remote_id": link.remote_id, "state": link.state.value},
        )
        self._detach(link, reason="negotiation timeout", failed=True)
        self._spawn(self._release(link))

    async def _close_link(self, link: PeerLink, reason: str, failed: bool = False) -> None:
        if link.is_closed:
            return
        self._detach(link, reason=reason, failed=failed)
        await self._release(link)

    def _detach(self, link: PeerLink, reason: str, failed: bool = False) -> None:
        """Remove the link and stop its work without yielding to the loop."""
        if self.links.get(link.remote_id) is link:
            del self.links[link.remote_id]
        link.transition(LinkState.CLOSED)
        link.pending_candidates.clear()

        if link.deadline is not None:
            link.deadline.cancel()
            link.deadline = None
        if link.worker is not None and link.worker is not asyncio.current_task():
            link.worker.cancel()

        # Unblock wait_idle() callers; the worker will not process these.
        while not link.inbox.empty():
            link.inbox.get_nowait()
            link.inbox.task_done()

        if failed and self.retry_cooldown_s > 0:
            self._cooldown_until[link.remote_id] = time.monotonic() + self.retry_cooldown_s

        logger.info("PeerLink closed", extra={"remote_id": link.remote_id, "reason": reason})

    async def _release(self, link: PeerLink) -> None:
        """Release transport resources of a detached link."""
        for track in link.local_tracks:
            track.stop()
        try:
            await link.pc.close()
        except Exception as e:
            logger.warning(
                "Error closing peer connection",
                extra={"remote_id": link.remote_id, "error": str(e)},
            )

        if self.on_link_closed is not None:
            self.on_link_closed(link.remote_id)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
