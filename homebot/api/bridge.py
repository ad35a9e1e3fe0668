"""FastAPI surface of a running bridge.

Endpoints:
- GET /health - Connection state (no auth required)
- GET /status - Full snapshot incl. QR data URL and pairing code
- POST /start, /stop, /forget, /pairing - Operator commands (202)
- GET /metrics - Prometheus metrics

Security:
- Token auth via Bearer header (except /health)
- Rate limiting on all protected endpoints
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, HTTPException, Request, Response
from loguru import logger
from pydantic import BaseModel, Field

from homebot import __version__
from homebot.api.security import RateLimiter, check_bearer, rate_limit_key
from homebot.bridge.qr import qr_data_url
from homebot.config.loader import convert_to_camel
from homebot.config.schema import APIConfig
from homebot.telemetry.prometheus import PrometheusTelemetry

if TYPE_CHECKING:
    from homebot.bridge.reporter import StatusReporter
    from homebot.bridge.supervisor import ConnectionSupervisor
    from homebot.telemetry.base import TelemetryPort

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


class PairingRequest(BaseModel):
    phone_number: str = Field(alias="phoneNumber", min_length=1)


def create_app(
    supervisor: ConnectionSupervisor,
    reporter: StatusReporter | None = None,
    telemetry: TelemetryPort | None = None,
    api_config: APIConfig | None = None,
) -> FastAPI:
    """Create the bridge API application.

    Args:
        supervisor: The connection supervisor commands are forwarded to
        reporter: Optional status reporter (for last push age)
        telemetry: Optional telemetry backend for metrics
        api_config: API-specific configuration
    """
    api_config = api_config or APIConfig()
    limiter = RateLimiter(api_config.rate_limit_per_minute)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Bridge API starting on http://{api_config.host}:{api_config.port}")
        yield
        logger.info("Bridge API shutting down")

    app = FastAPI(
        title="homebot bridge",
        description="Connection state and operator commands for one messaging identity",
        version=__version__,
        lifespan=lifespan,
    )

    def verify_auth(request: Request) -> None:
        """Verify authentication for protected endpoints."""
        if not api_config.auth_token:
            # No auth token configured - allow all (development mode)
            return

        if not check_bearer(request.headers.get("Authorization"), api_config.auth_token):
            raise HTTPException(
                status_code=401,
                detail="Invalid or missing authentication token",
                headers={"WWW-Authenticate": "Bearer"},
            )

    def check_rate_limit(request: Request) -> None:
        allowed, _remaining = limiter.check(rate_limit_key(request))
        if not allowed:
            raise HTTPException(
                status_code=429,
                detail="Rate limit exceeded",
                headers={"Retry-After": "60", "X-RateLimit-Remaining": "0"},
            )

    def protect(request: Request) -> None:
        verify_auth(request)
        check_rate_limit(request)

    def audit(request: Request, command: str) -> None:
        client_ip = request.client.host if request.client else "unknown"
        logger.info(f"Operator command {command} from {client_ip}")

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, Any]:
        """Connection state (no auth required)."""
        snapshot = supervisor.snapshot()
        age = reporter.last_success_age() if reporter is not None else None
        return {
            "state": snapshot.state.value,
            "identity": snapshot.self_identity,
            "lastReportAgeSeconds": round(age, 1) if age is not None else None,
            "error": snapshot.last_error or None,
        }

    @app.get("/status", tags=["status"])
    async def get_status(request: Request) -> dict[str, Any]:
        protect(request)
        snapshot = supervisor.snapshot()
        status = convert_to_camel(snapshot.to_dict())
        status["qrDataUrl"] = qr_data_url(snapshot.qr_payload) if snapshot.qr_payload else None
        status["version"] = __version__
        return status

    @app.post("/start", status_code=202, tags=["commands"])
    async def start(request: Request) -> dict[str, str]:
        protect(request)
        audit(request, "start")
        supervisor.start()
        return {"status": "accepted"}

    @app.post("/stop", status_code=202, tags=["commands"])
    async def stop(request: Request) -> dict[str, str]:
        protect(request)
        audit(request, "stop")
        supervisor.stop()
        return {"status": "accepted"}

    @app.post("/forget", status_code=202, tags=["commands"])
    async def forget(request: Request) -> dict[str, str]:
        protect(request)
        audit(request, "forget")
        supervisor.forget_identity()
        return {"status": "accepted"}

    @app.post("/pairing", status_code=202, tags=["commands"])
    async def pairing(request: Request, body: PairingRequest) -> dict[str, str]:
        protect(request)
        audit(request, "pairing")
        try:
            supervisor.request_pairing(body.phone_number)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e
        return {"status": "accepted"}

    @app.get("/metrics", tags=["metrics"])
    async def get_metrics(request: Request) -> Response:
        """Get Prometheus metrics."""
        protect(request)
        if isinstance(telemetry, PrometheusTelemetry):
            return Response(content=telemetry.render(), media_type=PROMETHEUS_CONTENT_TYPE)
        return Response(
            content="# Prometheus backend not enabled (telemetry.backend = memory)\n",
            media_type=PROMETHEUS_CONTENT_TYPE,
        )

    return app
