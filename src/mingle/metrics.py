"""Relay metrics in Prometheus text exposition format.

Tracked:
- Sessions: connected now, accepted in total, how long they lasted
- Transforms: updates fanned out, malformed fields the sanitiser repaired
- Signalling: directed messages delivered and dropped
- Frames rejected at the protocol boundary

Served by the HTTP side app at /metrics (text) and /metrics/summary (JSON).
"""

import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# Session lengths in seconds: from a page reload to a working day.
SESSION_DURATION_BOUNDS = (1.0, 10.0, 60.0, 300.0, 900.0, 3600.0, 4 * 3600.0, 8 * 3600.0)


def _header(name: str, help_text: str, kind: str) -> list[str]:
    return [f"# HELP {name} {help_text}", f"# TYPE {name} {kind}"]


@dataclass
class Counter:
    """Monotonically increasing value."""

    name: str
    help: str
    value: float = 0.0

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError(f"Counter {self.name} cannot decrease")
        self.value += amount

    def render(self) -> list[str]:
        return _header(self.name, self.help, "counter") + [f"{self.name} {self.value}"]


@dataclass
class Gauge:
    """Value that goes up and down."""

    name: str
    help: str
    value: float = 0.0

    def inc(self, amount: float = 1.0) -> None:
        self.value += amount

    def dec(self, amount: float = 1.0) -> None:
        self.value -= amount

    def render(self) -> list[str]:
        return _header(self.name, self.help, "gauge") + [f"{self.name} {self.value}"]


@dataclass
class Histogram:
    """Distribution over fixed upper bounds.

    ``counts[i]`` is the number of observations <= ``bounds[i]``; the
    implicit +Inf bucket is ``count``.
    """

    name: str
    help: str
    bounds: tuple[float, ...] = SESSION_DURATION_BOUNDS
    counts: list[int] = field(default_factory=list)
    sum: float = 0.0
    count: int = 0

    def __post_init__(self) -> None:
        self.counts = [0] * len(self.bounds)

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for i, bound in enumerate(self.bounds):
            if value <= bound:
                self.counts[i] += 1

    def render(self) -> list[str]:
        lines = _header(self.name, self.help, "histogram")
        for bound, count in zip(self.bounds, self.counts):
            lines.append(f'{self.name}_bucket{{le="{bound}"}} {count}')
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {self.count}')
        lines.append(f"{self.name}_sum {self.sum}")
        lines.append(f"{self.name}_count {self.count}")
        return lines


class MetricsCollector:
    """All relay metrics, recorded by the relay components.

    Thread-safety: This class is NOT thread-safe. The relay and the HTTP side
    app share one event loop.
    """

    def __init__(self) -> None:
        self.sessions_active = Gauge("sessions_active", "Number of connected sessions")
        self.sessions_total = Counter("sessions_total", "Sessions accepted since start")
        self.session_duration = Histogram(
            "session_duration_seconds", "Time from connect to disconnect"
        )
        self.transforms_relayed = Counter(
            "transforms_relayed_total", "Transform updates received and fanned out"
        )
        self.fields_sanitised = Counter(
            "transform_fields_sanitised_total", "Malformed transform fields replaced or dropped"
        )
        self.signals_routed = Counter(
            "signals_routed_total", "Directed signalling messages delivered to their recipient"
        )
        self.signals_dropped = Counter(
            "signals_dropped_total",
            "Directed signalling messages dropped (unknown or departed recipient)",
        )
        self.invalid_messages = Counter(
            "invalid_messages_total", "Client frames rejected at the protocol boundary"
        )

        self._scalars: list[Counter | Gauge] = [
            self.transforms_relayed,
            self.fields_sanitised,
            self.signals_routed,
            self.signals_dropped,
            self.invalid_messages,
            self.sessions_total,
            self.sessions_active,
        ]

    def record_session_start(self) -> None:
        self.sessions_active.inc()
        self.sessions_total.inc()

    def record_session_end(self, duration_seconds: float) -> None:
        self.sessions_active.dec()
        self.session_duration.observe(duration_seconds)

    def record_transform(self, sanitised_fields: int = 0) -> None:
        """Count one relayed update and the fields the sanitiser repaired in it."""
        self.transforms_relayed.inc()
        if sanitised_fields:
            self.fields_sanitised.inc(sanitised_fields)

    def record_signal(self, delivered: bool) -> None:
        (self.signals_routed if delivered else self.signals_dropped).inc()

    def record_invalid_message(self) -> None:
        self.invalid_messages.inc()

    def export_prometheus(self) -> str:
        lines: list[str] = []
        for metric in self._scalars:
            lines.extend(metric.render())
        lines.extend(self.session_duration.render())
        return "\n".join(lines) + "\n"

    def get_summary(self) -> dict[str, float]:
        """Current value of every counter and gauge, keyed by metric name."""
        summary = {metric.name: metric.value for metric in self._scalars}
        summary["session_duration_seconds_count"] = self.session_duration.count
        return summary


_metrics_collector: MetricsCollector | None = None


def get_metrics_collector() -> MetricsCollector:
    """Process-wide collector used when none is injected."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector
