"""HTTP client for the external reply capability."""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from homebot.config.schema import ReplyConfig
from homebot.telemetry.base import TelemetryPort


class HttpReplyClient:
    """``ReplyPort`` over ``POST {url}`` with ``{sender, text, displayName?}``.

    Any failure (non-2xx, timeout, transport error, malformed body) yields the
    configured fallback text, never an exception.
    """

    def __init__(
        self,
        config: ReplyConfig,
        *,
        client: httpx.AsyncClient | None = None,
        telemetry: TelemetryPort | None = None,
    ):
        self.config = config
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None
        self._telemetry = telemetry

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["X-API-Key"] = self.config.api_key
        return headers

    def _incr(self, outcome: str) -> None:
        if self._telemetry is not None:
            self._telemetry.incr("reply_requests_total", labels=(("outcome", outcome),))

    async def generate_reply(self, sender: str, text: str, display_name: str | None = None) -> str:
        body: dict[str, Any] = {"sender": sender, "text": text}
        if display_name:
            body["displayName"] = display_name

        try:
            response = await self._client.post(
                self.config.url,
                json=body,
                headers=self._headers(),
                timeout=self.config.timeout_s,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException:
            logger.warning(f"Reply capability timed out after {self.config.timeout_s:.0f}s")
            self._incr("timeout")
            return self.config.fallback_text
        except httpx.HTTPError as e:
            logger.warning(f"Reply capability failed: {e.__class__.__name__}: {e}")
            self._incr("error")
            return self.config.fallback_text
        except ValueError as e:
            logger.warning(f"Reply capability returned invalid JSON: {e}")
            self._incr("error")
            return self.config.fallback_text
        except Exception as e:
            logger.error(f"Reply capability raised {e.__class__.__name__}: {e}")
            self._incr("error")
            return self.config.fallback_text

        reply = data.get("reply") if isinstance(data, dict) else None
        if not isinstance(reply, str) or not reply.strip():
            self._incr("empty")
            return self.config.empty_reply_text

        self._incr("ok")
        return reply.strip()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
