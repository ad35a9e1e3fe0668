"""Control-plane store of status reports pushed by bridges."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any

from homebot.core.models import ConnectionState, HomeStatusReport


def parse_status_payload(payload: dict[str, Any], received_at: float) -> HomeStatusReport:
    """Build a report from a pushed ``/status`` body; unknown states read as disconnected."""
    try:
        state = ConnectionState(str(payload.get("state") or "disconnected"))
    except ValueError:
        state = ConnectionState.DISCONNECTED
    attempts = payload.get("reconnectAttempts")
    return HomeStatusReport(
        state=state,
        identity=payload.get("identity") or payload.get("phone") or None,
        error=payload.get("error") or None,
        hostname=str(payload.get("hostname") or "unknown"),
        runtime=str(payload.get("runtime") or ""),
        qr_payload=payload.get("qrPayload") or None,
        qr_data_url=payload.get("qrDataUrl") or None,
        pairing_code=payload.get("pairingCode") or None,
        reconnect_attempts=int(attempts) if isinstance(attempts, (int, float)) else 0,
        received_at=received_at,
    )


class HomeStatusRegistry:
    """Latest report per reporting host.

    ``resolve`` picks the freshest report younger than ``stale_after_s``.
    With nothing fresh it returns a ``disconnected`` placeholder that keeps
    the last known identity and host, plus an error saying the bridge went
    quiet.
    """

    def __init__(self, stale_after_s: float = 120.0, clock: Callable[[], float] = time.monotonic):
        self.stale_after_s = stale_after_s
        self._clock = clock
        self._lock = threading.Lock()
        self._by_host: dict[str, HomeStatusReport] = {}

    def record(self, payload: dict[str, Any]) -> HomeStatusReport:
        report = parse_status_payload(payload, self._clock())
        with self._lock:
            self._by_host[report.hostname] = report
        return report

    def hosts(self) -> list[HomeStatusReport]:
        with self._lock:
            return list(self._by_host.values())

    def now(self) -> float:
        return self._clock()

    def resolve(self) -> HomeStatusReport | None:
        """Freshest non-stale report, a stale placeholder, or None if nothing ever reported."""
        now = self._clock()
        reports = self.hosts()
        if not reports:
            return None
        fresh = [r for r in reports if r.age(now) <= self.stale_after_s]
        if fresh:
            return max(fresh, key=lambda r: r.received_at)

        last = max(reports, key=lambda r: r.received_at)
        return HomeStatusReport(
            state=ConnectionState.DISCONNECTED,
            identity=last.identity,
            error=(
                f"Home bot has not reported in over {self.stale_after_s / 60:.0f} minutes. "
                f"Check if it's still running on {last.hostname or 'the host machine'}."
            ),
            hostname=last.hostname,
            runtime=last.runtime,
            received_at=last.received_at,
        )
