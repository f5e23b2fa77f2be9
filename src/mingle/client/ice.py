"""Conversion between browser-shaped ICE candidates and aiortc objects."""

from aiortc import RTCIceCandidate
from aiortc.sdp import candidate_from_sdp

from src.mingle.protocol import IceCandidatePayload

CANDIDATE_PREFIX = "candidate:"

# foundation, component, transport, priority, address, port, "typ", type
MIN_CANDIDATE_FIELDS = 8


def candidate_from_wire(payload: IceCandidatePayload) -> RTCIceCandidate:
    """Parse an ``RTCIceCandidateInit`` as sent by browsers.

    Raises:
        ValueError: If the candidate line cannot be parsed
    """
    line = payload.candidate.strip()
    if line.startswith(CANDIDATE_PREFIX):
        line = line[len(CANDIDATE_PREFIX):]

    if len(line.split()) < MIN_CANDIDATE_FIELDS:
        raise ValueError(f"Unparseable ICE candidate: {payload.candidate!r}")

    try:
        candidate = candidate_from_sdp(line)
    except (IndexError, ValueError) as e:
        raise ValueError(f"Unparseable ICE candidate: {payload.candidate!r}") from e

    candidate.sdpMid = payload.sdpMid
    candidate.sdpMLineIndex = payload.sdpMLineIndex
    return candidate
