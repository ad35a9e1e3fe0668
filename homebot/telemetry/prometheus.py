"""Prometheus metrics backend for homebot observability.

Metrics are exposed by the bridge API at ``/metrics`` for scraping.

Usage:
    telemetry = PrometheusTelemetry()
    telemetry.incr("state_transitions_total", labels=(("to", "connected"),))
    telemetry.gauge("reconnect_attempts", 3)
"""

from __future__ import annotations

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, generate_latest


class PrometheusTelemetry:
    """Prometheus-backed telemetry.

    Standard metrics are registered up front; unknown names get an ad-hoc
    ``homebot_<name>`` counter or gauge on first use. Pass a private
    ``CollectorRegistry`` to keep several instances apart (tests).
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or REGISTRY
        self._metrics: dict[str, Counter | Gauge] = {}
        self._register_standard_metrics()

    def _register_standard_metrics(self) -> None:
        """Register standard homebot metrics."""
        self._metrics["state_transitions_total"] = Counter(
            "homebot_state_transitions_total",
            "Connection state transitions",
            labelnames=["to"],
            registry=self.registry,
        )
        self._metrics["reconnects_scheduled_total"] = Counter(
            "homebot_reconnects_scheduled_total",
            "Reconnect attempts scheduled",
            labelnames=["action"],
            registry=self.registry,
        )
        self._metrics["dead_connections_total"] = Counter(
            "homebot_dead_connections_total",
            "Connections declared dead by the keepalive watchdog",
            registry=self.registry,
        )
        self._metrics["status_push_total"] = Counter(
            "homebot_status_push_total",
            "Status push deliveries per control-plane URL",
            labelnames=["outcome"],  # outcome=ok/error
            registry=self.registry,
        )
        self._metrics["reply_requests_total"] = Counter(
            "homebot_reply_requests_total",
            "Reply capability calls",
            labelnames=["outcome"],  # outcome=ok/empty/timeout/error
            registry=self.registry,
        )
        self._metrics["messages_total"] = Counter(
            "homebot_messages_total",
            "Inbound messages by routing outcome",
            labelnames=["outcome"],
            registry=self.registry,
        )
        self._metrics["conflict_checks_total"] = Counter(
            "homebot_conflict_checks_total",
            "Conflict arbiter evaluations",
            labelnames=["verdict"],  # verdict=conflict/clear
            registry=self.registry,
        )
        self._metrics["remediations_total"] = Counter(
            "homebot_remediations_total",
            "Remote deployment remediation runs",
            labelnames=["outcome"],
            registry=self.registry,
        )
        self._metrics["connection_state"] = Gauge(
            "homebot_connection_state",
            "1 for the current connection state, 0 otherwise",
            labelnames=["state"],
            registry=self.registry,
        )
        self._metrics["reconnect_attempts"] = Gauge(
            "homebot_reconnect_attempts",
            "Reconnect attempts since the last successful connection",
            registry=self.registry,
        )

    def incr(self, name: str, value: int = 1, labels: tuple[tuple[str, str], ...] = ()) -> None:
        """Increase a named counter."""
        metric = self._metrics.get(name)
        if metric is None:
            # Create ad-hoc counter
            labelnames = [k for k, _ in labels] if labels else []
            metric = Counter(
                f"homebot_{name}",
                f"Counter: {name}",
                labelnames=labelnames,
                registry=self.registry,
            )
            self._metrics[name] = metric

        if labels:
            metric.labels(**dict(labels)).inc(value)
        else:
            metric.inc(value)

    def gauge(self, name: str, value: float, labels: tuple[tuple[str, str], ...] = ()) -> None:
        """Set a gauge value."""
        metric = self._metrics.get(name)
        if metric is None:
            # Create ad-hoc gauge
            labelnames = [k for k, _ in labels] if labels else []
            metric = Gauge(
                f"homebot_{name}",
                f"Gauge: {name}",
                labelnames=labelnames,
                registry=self.registry,
            )
            self._metrics[name] = metric

        if labels:
            metric.labels(**dict(labels)).set(value)
        else:
            metric.set(value)

    def render(self) -> bytes:
        """Prometheus text exposition of this backend's registry."""
        return generate_latest(self.registry)
