"""Best-effort status push to the control plane(s)."""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable
from typing import Any

import httpx
from loguru import logger

from homebot.bridge.qr import qr_data_url
from homebot.config.schema import StatusConfig
from homebot.core.models import ConnectionSnapshot
from homebot.telemetry.base import TelemetryPort
from homebot.utils.helpers import get_hostname, utc_now_iso


class StatusReporter:
    """Pushes ``ConnectionSnapshot``s on every transition and on an interval.

    Each delivery POSTs to ``{url}/status`` on every configured base URL
    concurrently. Failures are logged and counted; nothing here ever raises
    into the caller or blocks the supervisor.
    """

    def __init__(
        self,
        config: StatusConfig,
        *,
        snapshot_provider: Callable[[], ConnectionSnapshot] | None = None,
        client: httpx.AsyncClient | None = None,
        telemetry: TelemetryPort | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self._snapshot_provider = snapshot_provider
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None
        self._telemetry = telemetry
        self._clock = clock
        self._hostname = config.hostname.strip() or get_hostname()
        self._latest: ConnectionSnapshot | None = None
        self._delivery_tasks: set[asyncio.Task[int]] = set()
        self._loop_task: asyncio.Task[None] | None = None
        self._last_success_at: float | None = None
        self._no_urls_logged = False

    @property
    def urls(self) -> list[str]:
        return [u.strip().rstrip("/") for u in self.config.urls if u.strip()]

    def set_snapshot_provider(self, provider: Callable[[], ConnectionSnapshot]) -> None:
        self._snapshot_provider = provider

    def publish(self, snapshot: ConnectionSnapshot) -> None:
        """Record ``snapshot`` as latest and deliver it in the background."""
        self._latest = snapshot
        if not self.config.enabled:
            return
        if not self.urls:
            if not self._no_urls_logged:
                self._no_urls_logged = True
                logger.debug("Status push disabled: no control-plane URLs configured")
            return
        try:
            task = asyncio.get_running_loop().create_task(self.deliver(snapshot))
        except RuntimeError:
            logger.debug("Status push skipped: no running event loop")
            return
        self._delivery_tasks.add(task)
        task.add_done_callback(self._on_delivery_done)

    def _on_delivery_done(self, task: asyncio.Task[int]) -> None:
        self._delivery_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Status push task failed: {exc}")

    def build_payload(self, snapshot: ConnectionSnapshot) -> dict[str, Any]:
        payload = snapshot.to_status_payload()
        payload["qrDataUrl"] = qr_data_url(snapshot.qr_payload) if snapshot.qr_payload else None
        payload["hostname"] = self._hostname
        payload["runtime"] = self.config.runtime
        payload["reportedAt"] = utc_now_iso()
        return payload

    async def deliver(self, snapshot: ConnectionSnapshot) -> int:
        """POST one snapshot to every URL. Returns the number of successful deliveries."""
        urls = self.urls
        if not urls:
            return 0
        payload = self.build_payload(snapshot)
        results = await asyncio.gather(*(self._post(url, payload) for url in urls))
        delivered = sum(1 for ok in results if ok)
        if delivered:
            self._last_success_at = self._clock()
        return delivered

    async def _post(self, base_url: str, payload: dict[str, Any]) -> bool:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["X-API-Key"] = self.config.api_key
        try:
            response = await self._client.post(
                f"{base_url}/status",
                json=payload,
                headers=headers,
                timeout=self.config.timeout_s,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Status push to {base_url} failed: {e.__class__.__name__}: {e}")
            self._count("error")
            return False
        self._count("ok")
        return True

    def _count(self, outcome: str) -> None:
        if self._telemetry is not None:
            self._telemetry.incr("status_push_total", labels=(("outcome", outcome),))

    def last_success_age(self) -> float | None:
        """Seconds since the last successful delivery, or None if none yet."""
        if self._last_success_at is None:
            return None
        return max(0.0, self._clock() - self._last_success_at)

    async def start(self) -> None:
        if self._loop_task is None and self.config.enabled:
            self._loop_task = asyncio.create_task(self._periodic_loop())

    async def stop(self) -> None:
        if self._loop_task:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None
        for task in list(self._delivery_tasks):
            task.cancel()
        self._delivery_tasks.clear()
        if self._owns_client:
            await self._client.aclose()

    async def flush(self) -> None:
        """Wait for in-flight deliveries."""
        if self._delivery_tasks:
            await asyncio.gather(*self._delivery_tasks, return_exceptions=True)

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.interval_s)
            snapshot = (
                self._snapshot_provider() if self._snapshot_provider is not None else self._latest
            )
            if snapshot is None:
                continue
            self._latest = snapshot
            await self.deliver(snapshot)
