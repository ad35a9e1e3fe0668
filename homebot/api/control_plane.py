"""Control-plane API: status intake from bridges and split-brain arbitration.

Endpoints:
- POST /status - Status push from a bridge (shared X-API-Key)
- GET /health - Resolved home bridge status (no auth required)
- GET /conflict - Run a fresh conflict check
- GET /conflict/latest - Last conflict report
- POST /conflict/remediate - Stop and disable the remote deployment
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from loguru import logger

from homebot import __version__
from homebot.api.security import RateLimiter, check_api_key, check_bearer, rate_limit_key
from homebot.config.schema import ControlPlaneConfig
from homebot.control.arbiter import ConflictArbiter
from homebot.control.registry import HomeStatusRegistry


def create_app(
    registry: HomeStatusRegistry,
    arbiter: ConflictArbiter,
    config: ControlPlaneConfig | None = None,
) -> FastAPI:
    config = config or ControlPlaneConfig()
    limiter = RateLimiter(config.rate_limit_per_minute)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Control plane starting on http://{config.host}:{config.port}")
        yield
        logger.info("Control plane shutting down")
        await arbiter.aclose()

    app = FastAPI(
        title="homebot control plane",
        description="Home bridge status intake and conflict arbitration",
        version=__version__,
        lifespan=lifespan,
    )

    def protect(request: Request) -> None:
        if config.auth_token and not check_bearer(
            request.headers.get("Authorization"), config.auth_token
        ):
            raise HTTPException(
                status_code=401,
                detail="Invalid or missing authentication token",
                headers={"WWW-Authenticate": "Bearer"},
            )
        allowed, _remaining = limiter.check(rate_limit_key(request))
        if not allowed:
            raise HTTPException(
                status_code=429,
                detail="Rate limit exceeded",
                headers={"Retry-After": "60", "X-RateLimit-Remaining": "0"},
            )

    @app.post("/status", tags=["intake"])
    async def receive_status(request: Request) -> dict[str, bool]:
        if not check_api_key(request.headers.get("X-API-Key"), config.api_key):
            raise HTTPException(status_code=401, detail="Invalid API key")
        try:
            payload = await request.json()
        except ValueError as e:
            raise HTTPException(status_code=400, detail="Body must be JSON") from e
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Body must be a JSON object")

        report = registry.record(payload)
        logger.debug(f"Status from {report.hostname}: {report.state.value}")
        return {"ok": True}

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, Any]:
        home = registry.resolve()
        if home is None:
            return {
                "state": "disconnected",
                "identity": None,
                "lastReportAgeSeconds": None,
                "error": "Home bot has never reported.",
                "hostname": None,
            }
        return {
            "state": home.state.value,
            "identity": home.identity,
            "lastReportAgeSeconds": round(home.age(registry.now()), 1),
            "error": home.error,
            "hostname": home.hostname,
        }

    @app.get("/conflict", tags=["conflict"])
    async def check_conflict(request: Request) -> dict[str, Any]:
        protect(request)
        report = await arbiter.evaluate()
        return report.to_dict()

    @app.get("/conflict/latest", tags=["conflict"])
    async def latest_conflict(request: Request) -> dict[str, Any]:
        protect(request)
        if arbiter.latest is None:
            raise HTTPException(status_code=404, detail="No conflict check has run yet")
        return arbiter.latest.to_dict()

    @app.post("/conflict/remediate", tags=["conflict"])
    async def remediate(request: Request) -> JSONResponse:
        protect(request)
        client_ip = request.client.host if request.client else "unknown"
        logger.warning(f"Remote remediation requested from {client_ip}")
        result = await arbiter.remediate()
        return JSONResponse(status_code=200 if result.success else 500, content=result.to_dict())

    return app
