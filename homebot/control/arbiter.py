"""Split-brain detection between the home bridge and its remote twin."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

from loguru import logger

from homebot.control.registry import HomeStatusRegistry
from homebot.core.models import ConflictReport, ConnectionState, RemediationResult
from homebot.core.ports import RemoteDeploymentPort
from homebot.telemetry.base import TelemetryPort


class ConflictArbiter:
    """Combines the home bridge's pushed status with a probe of the remote deployment.

    ``has_conflict = remote_active and home_state == connected``. Each call to
    ``evaluate`` recomputes the verdict from scratch; only the latest report is
    kept. Which instance should win is the operator's decision; ``remediate``
    only ever suppresses the remote side.
    """

    def __init__(
        self,
        registry: HomeStatusRegistry,
        remote: RemoteDeploymentPort | None,
        *,
        probe_timeout_s: float = 20.0,
        telemetry: TelemetryPort | None = None,
        wall_clock: Callable[[], float] = time.time,
    ):
        self._registry = registry
        self._remote = remote
        self._probe_timeout_s = probe_timeout_s
        self._telemetry = telemetry
        self._wall_clock = wall_clock
        self.latest: ConflictReport | None = None

    @staticmethod
    def verdict(home_state: ConnectionState, remote_active: bool) -> bool:
        return remote_active and home_state == ConnectionState.CONNECTED

    async def _probe_remote(self) -> tuple[bool, str | None]:
        if self._remote is None:
            return False, "remote deployment not configured"
        try:
            active = await asyncio.wait_for(self._remote.is_active(), timeout=self._probe_timeout_s)
        except TimeoutError:
            return False, f"remote probe timed out after {self._probe_timeout_s:.0f}s"
        except Exception as e:
            logger.warning(f"Remote probe failed: {e.__class__.__name__}: {e}")
            return False, str(e)
        return bool(active), None

    async def evaluate(self) -> ConflictReport:
        remote_active, remote_error = await self._probe_remote()

        home = self._registry.resolve()
        now = self._registry.now()
        if home is None:
            home_state = ConnectionState.DISCONNECTED
            age = None
        else:
            home_state = home.state
            age = round(home.age(now), 1)
        home_online = (
            home is not None
            and age is not None
            and age <= self._registry.stale_after_s
            and home_state == ConnectionState.CONNECTED
        )

        has_conflict = self.verdict(home_state, remote_active)
        report = ConflictReport(
            home_state=home_state,
            home_identity=home.identity if home else None,
            home_hostname=home.hostname if home else None,
            home_error=home.error if home else None,
            home_last_report_age_s=age,
            home_online=home_online,
            remote_active=remote_active,
            remote_error=remote_error,
            has_conflict=has_conflict,
            checked_at=self._wall_clock(),
        )
        self.latest = report

        if has_conflict:
            logger.warning(
                f"Session conflict: remote deployment is active while home bridge "
                f"({report.home_hostname}) is connected as {report.home_identity}"
            )
        if self._telemetry is not None:
            self._telemetry.incr(
                "conflict_checks_total",
                labels=(("verdict", "conflict" if has_conflict else "clear"),),
            )
        return report

    async def remediate(self) -> RemediationResult:
        """Stop and disable the remote deployment. Safe to call repeatedly."""
        if self._remote is None:
            return RemediationResult(success=False, error="remote deployment not configured")

        try:
            result = await self._remote.disable()
        except Exception as e:
            logger.error(f"Remote remediation failed: {e.__class__.__name__}: {e}")
            self._count("error")
            return RemediationResult(success=False, error=str(e))

        if result.ok:
            logger.info("Remote deployment stopped and disabled; home bridge should stabilize")
            self._count("ok")
            return RemediationResult(success=True, output=result.output.strip())

        logger.error(f"Remote remediation failed: {result.error}")
        self._count("error")
        return RemediationResult(success=False, output=result.output.strip(), error=result.error)

    def _count(self, outcome: str) -> None:
        if self._telemetry is not None:
            self._telemetry.incr("remediations_total", labels=(("outcome", outcome),))

    async def aclose(self) -> None:
        if self._remote is not None:
            await self._remote.aclose()
