"""Shared auth and rate limiting for the HTTP surfaces."""

from __future__ import annotations

import hmac
import time
from collections.abc import Callable
from typing import Any


def check_bearer(auth_header: str | None, expected_token: str) -> bool:
    """Validate Bearer token auth."""
    if not auth_header:
        return False
    if not auth_header.startswith("Bearer "):
        return False
    token = auth_header[7:]  # Remove "Bearer " prefix
    return hmac.compare_digest(token, expected_token)


def check_api_key(header: str | None, expected_key: str) -> bool:
    """Validate the shared ``X-API-Key`` header. An empty expected key allows all."""
    if not expected_key:
        return True
    return hmac.compare_digest(header or "", expected_key)


def rate_limit_key(request: Any) -> str:
    """Extract rate limit key from request."""
    if hasattr(request, "client") and request.client:
        return request.client.host
    return "unknown"


class RateLimiter:
    """Sliding-window request counter per client key (simple, in-memory)."""

    def __init__(
        self,
        limit: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, list[float]] = {}

    def check(self, key: str) -> tuple[bool, int]:
        """Check if request is within rate limit.

        Returns (allowed, remaining_requests).
        """
        now = self._clock()
        window_start = now - self.window_seconds

        hits = [t for t in self._hits.get(key, []) if t > window_start]
        self._hits[key] = hits

        if len(hits) >= self.limit:
            return False, 0

        hits.append(now)
        return True, self.limit - len(hits)
