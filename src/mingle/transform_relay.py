"""Transform relay.

Receives each session's periodic position/rotation/auxiliary update, repairs
malformed fields instead of rejecting the update, stores it as the session's
last transform and fans it out tagged with the sender's id.

Fan-out contract: by default the sender is included in the broadcast. Every
client must therefore ignore position messages carrying its own id.
"""

import logging
import math
from typing import Any

from src.mingle.metrics import MetricsCollector
from src.mingle.protocol import PositionBroadcast, PositionUpdate, Vec3
from src.mingle.registry import SessionRegistry

logger = logging.getLogger(__name__)

_AXES = ("x", "y", "z")

# Top-level keys sent by the original browser client that belong in auxiliary
LEGACY_AUXILIARY_KEYS = ("color", "spectatePos")


def _is_number(value: Any) -> bool:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    try:
        # JSON integers are unbounded; one too large for a float is malformed.
        return math.isfinite(float(value))
    except OverflowError:
        return False


def sanitize_vec3(value: Any) -> tuple[Vec3 | None, int]:
    """Coerce a loosely typed ``{x, y, z}`` object into a Vec3.

    Returns:
        (vector or None if the value is not an object, number of repaired fields)
    """
    if not isinstance(value, dict):
        return None, 1

    repaired = 0
    components: dict[str, float] = {}
    for axis in _AXES:
        component = value.get(axis)
        if _is_number(component):
            components[axis] = float(component)
        else:
            components[axis] = 0.0
            repaired += 1
    return Vec3(**components), repaired


def sanitize_transform(data: dict[str, Any]) -> tuple[PositionUpdate, int]:
    """Build a PositionUpdate from a raw client frame, field by field.

    Absent fields stay absent; present but malformed fields are repaired
    (numeric components default to zero) or dropped (non-object auxiliary).

    Returns:
        (clean update, number of fields that had to be repaired or dropped)
    """
    repaired = 0
    fields: dict[str, Any] = {}

    for name in ("position", "rotation"):
        if name not in data or data[name] is None:
            continue
        vec, fixes = sanitize_vec3(data[name])
        repaired += fixes
        if vec is not None:
            fields[name] = vec

    auxiliary: dict[str, Any] = {}
    raw_aux = data.get("auxiliary")
    if raw_aux is not None:
        if isinstance(raw_aux, dict):
            auxiliary.update({str(k): v for k, v in raw_aux.items()})
        else:
            repaired += 1

    for key in LEGACY_AUXILIARY_KEYS:
        value = data.get(key)
        if value is None:
            continue
        if key == "spectatePos":
            vec, fixes = sanitize_vec3(value)
            repaired += fixes
            if vec is not None:
                auxiliary[key] = vec.model_dump()
        else:
            auxiliary[key] = value

    if auxiliary:
        fields["auxiliary"] = auxiliary

    return PositionUpdate(**fields), repaired


class TransformRelay:
    """Stores and fans out transform updates.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        metrics: MetricsCollector,
        include_sender: bool = True,
        debug: bool = False,
    ) -> None:
        self.registry = registry
        self.metrics = metrics
        self.include_sender = include_sender
        self.debug = debug

    async def on_transform(self, sender_id: str, data: dict[str, Any]) -> int:
        """Validate, store and re-broadcast one update.

        Updates from a session that is no longer registered are dropped, so
        no position bearing a departed id is sent after its departure notice.

        Returns:
            Number of sessions the update was delivered to
        """
        update, repaired = sanitize_transform(data)

        if not self.registry.update_transform(sender_id, update):
            logger.debug("Ignoring transform from unknown session", extra={"session_id": sender_id})
            return 0

        if repaired:
            logger.debug(
                "Repaired malformed transform fields",
                extra={"session_id": sender_id, "fields": repaired},
            )
        self.metrics.record_transform(repaired)

        message = PositionBroadcast(id=sender_id, **update.model_dump(exclude={"type"}))
        exclude = () if self.include_sender else (sender_id,)
        delivered = await self.registry.broadcast(message, exclude=exclude)

        if self.debug:
            logger.debug(
                "Position relayed",
                extra={"session_id": sender_id, "delivered": delivered},
            )
        return delivered

    async def send_snapshot(self, session_id: str) -> int:
        """Send a newly joined session the last transform of every other session.

        Returns:
            Number of snapshot entries delivered
        """
        sent = 0
        for other in self.registry.sessions():
            if other.id == session_id or other.last_transform is None:
                continue
            message = PositionBroadcast(
                id=other.id, **other.last_transform.model_dump(exclude={"type"})
            )
            if await self.registry.send_to(session_id, message):
                sent += 1

        logger.debug("Late-join snapshot sent", extra={"session_id": session_id, "entries": sent})
        return sent
