"""Telemetry backend that keeps metrics in process memory.

Used when ``telemetry.backend`` is ``memory`` and by the tests, which read
values back with ``get_counter`` / ``get_gauge``.
"""

from __future__ import annotations

from dataclasses import dataclass, field

type Labels = tuple[tuple[str, str], ...]
type MetricKey = tuple[str, Labels]


def _key(name: str, labels: Labels) -> MetricKey:
    return name, tuple(sorted(labels))


@dataclass(slots=True)
class InMemoryTelemetry:
    counters: dict[MetricKey, int] = field(default_factory=dict)
    gauges: dict[MetricKey, float] = field(default_factory=dict)

    def incr(self, name: str, value: int = 1, labels: Labels = ()) -> None:
        key = _key(name, labels)
        self.counters[key] = self.counters.get(key, 0) + value

    def gauge(self, name: str, value: float, labels: Labels = ()) -> None:
        self.gauges[_key(name, labels)] = value

    def get_counter(self, name: str, labels: Labels = ()) -> int:
        return self.counters.get(_key(name, labels), 0)

    def get_gauge(self, name: str, labels: Labels = ()) -> float | None:
        return self.gauges.get(_key(name, labels))
