"""Base telemetry port protocol."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class TelemetryPort(Protocol):
    """Protocol for telemetry backends (Prometheus, in-memory).

    - Counters: monotonically increasing values (transitions, retries, push failures)
    - Gauges: point-in-time values (connection state, reconnect attempts)
    """

    def incr(self, name: str, value: int = 1, labels: tuple[tuple[str, str], ...] = ()) -> None:
        """Increase a named counter by ``value`` with optional labels.

        Args:
            name: Metric name (e.g., "state_transitions_total")
            value: Amount to increment (default 1)
            labels: Optional label tuples (e.g., (("to", "connected"),))
        """

    def gauge(self, name: str, value: float, labels: tuple[tuple[str, str], ...] = ()) -> None:
        """Set a gauge value.

        Args:
            name: Metric name (e.g., "reconnect_attempts")
            value: Current value
            labels: Optional label tuples
        """
