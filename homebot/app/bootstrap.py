"""Application bootstrap and runtime wiring for the bridge and the control plane."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

import uvicorn
from loguru import logger

from homebot.api.bridge import create_app as create_bridge_app
from homebot.api.control_plane import create_app as create_control_plane_app
from homebot.bridge.ledger import SentMessageLedger
from homebot.bridge.reply import HttpReplyClient
from homebot.bridge.reporter import StatusReporter
from homebot.bridge.router import MessageRouter
from homebot.bridge.supervisor import ConnectionSupervisor
from homebot.control.arbiter import ConflictArbiter
from homebot.control.registry import HomeStatusRegistry
from homebot.control.remote import build_remote
from homebot.core.policy import ReconnectPolicy
from homebot.storage.auth_state import FileAuthStateStore
from homebot.telemetry import InMemoryTelemetry, PrometheusTelemetry
from homebot.transport.bridge import BridgeTransport

if TYPE_CHECKING:
    from fastapi import FastAPI

    from homebot.config.schema import Config
    from homebot.telemetry.base import TelemetryPort


def build_telemetry(config: Config) -> TelemetryPort:
    if config.telemetry.backend == "prometheus":
        return PrometheusTelemetry()
    return InMemoryTelemetry()


@dataclass(slots=True)
class BridgeRuntime:
    """Lifecycle holder for the composed bridge process."""

    config: Config
    supervisor: ConnectionSupervisor
    reporter: StatusReporter
    router: MessageRouter
    reply: HttpReplyClient
    telemetry: TelemetryPort
    app: FastAPI

    async def run(self, *, autostart: bool = True) -> None:
        server: uvicorn.Server | None = None
        if self.config.api.enabled:
            server = uvicorn.Server(
                uvicorn.Config(
                    self.app,
                    host=self.config.api.host,
                    port=self.config.api.port,
                    log_level="info",
                )
            )
        try:
            await self.supervisor.launch()
            await self.reporter.start()
            if autostart:
                self.supervisor.start()
            if server is not None:
                await server.serve()
            else:
                await asyncio.Event().wait()
        finally:
            await self.supervisor.shutdown()
            await self.router.drain()
            await self.reporter.flush()
            await self.reporter.stop()
            await self.reply.aclose()
            logger.info("Bridge stopped")


def build_bridge_runtime(config: Config) -> BridgeRuntime:
    """Compose supervisor, transport, router and reporter from ``config``."""
    telemetry = build_telemetry(config)
    store = FileAuthStateStore(config.session.auth_path)
    transport = BridgeTransport(config.bridge, connect_timeout_s=config.session.connect_timeout_s)
    reporter = StatusReporter(config.status, telemetry=telemetry)

    supervisor = ConnectionSupervisor(
        transport,
        store,
        ReconnectPolicy.from_config(config.reconnect),
        reporter=reporter,
        session=config.session,
        keepalive=config.keepalive,
        telemetry=telemetry,
    )
    reporter.set_snapshot_provider(supervisor.snapshot)

    reply = HttpReplyClient(config.reply, telemetry=telemetry)
    router = MessageRouter(
        transport,
        reply,
        SentMessageLedger(config.ledger.max_entries, config.ledger.trim_to),
        identity_provider=lambda: supervisor.identity,
        telemetry=telemetry,
        typing=config.reply.typing,
        presence_timeout_s=config.reply.presence_timeout_s,
    )
    supervisor.attach_router(router)

    app = create_bridge_app(supervisor, reporter, telemetry, config.api)
    return BridgeRuntime(
        config=config,
        supervisor=supervisor,
        reporter=reporter,
        router=router,
        reply=reply,
        telemetry=telemetry,
        app=app,
    )


def build_control_plane(config: Config) -> tuple[FastAPI, HomeStatusRegistry, ConflictArbiter]:
    """Compose status registry, remote probe and arbiter behind the control-plane API."""
    telemetry = build_telemetry(config)
    registry = HomeStatusRegistry(stale_after_s=config.control_plane.stale_after_s)
    remote = build_remote(config.remote)
    if remote is None:
        logger.warning("Remote deployment not configured; conflict checks report it inactive")
    probe_timeout = (config.remote.connect_timeout_s + config.remote.command_timeout_s) * (
        config.remote.retries + 1
    )
    arbiter = ConflictArbiter(
        registry,
        remote,
        probe_timeout_s=probe_timeout,
        telemetry=telemetry,
    )
    app = create_control_plane_app(registry, arbiter, config.control_plane)
    return app, registry, arbiter
