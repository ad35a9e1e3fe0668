"""Reconnect policy: close-reason classification and retry delays."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

from homebot.core.models import RetryAction


class DisconnectReason(IntEnum):
    """Close codes reported by the messaging session library."""

    LOGGED_OUT = 401
    FORBIDDEN = 403
    CONNECTION_LOST = 408
    MULTIDEVICE_MISMATCH = 411
    CONNECTION_CLOSED = 428
    CONNECTION_REPLACED = 440
    BAD_SESSION = 500
    UNAVAILABLE_SERVICE = 503
    RESTART_REQUIRED = 515


_AUTH_INVALIDATING = frozenset({DisconnectReason.LOGGED_OUT, DisconnectReason.BAD_SESSION})


@dataclass(frozen=True, slots=True, kw_only=True)
class ReconnectPolicy:
    """Stateless retry configuration.

    Generic failures back off as ``min(base * multiplier ** (attempts - 1), cap)``.
    There is no jitter, so consecutive backoff delays never decrease.
    """

    base_delay_s: float = 5.0
    multiplier: float = 1.5
    max_delay_s: float = 120.0
    conflict_cooldown_s: float = 60.0
    immediate_delay_s: float = 1.0
    credential_reset_delay_s: float = 5.0

    @classmethod
    def from_config(cls, config) -> ReconnectPolicy:
        return cls(
            base_delay_s=config.base_delay_s,
            multiplier=config.multiplier,
            max_delay_s=config.max_delay_s,
            conflict_cooldown_s=config.conflict_cooldown_s,
            immediate_delay_s=config.immediate_delay_s,
            credential_reset_delay_s=config.credential_reset_delay_s,
        )

    def classify(self, code: int | None, message: str = "") -> RetryAction:
        if code in _AUTH_INVALIDATING:
            return RetryAction.CLEAR_CREDENTIALS_AND_RETRY
        if code == DisconnectReason.CONNECTION_REPLACED or "conflict" in (message or "").lower():
            return RetryAction.RETRY_AFTER_COOLDOWN
        if code == DisconnectReason.RESTART_REQUIRED:
            return RetryAction.RETRY_IMMEDIATE
        return RetryAction.RETRY_WITH_BACKOFF

    def backoff_delay(self, attempts: int) -> float:
        # exponent capped to keep the float finite
        exponent = min(max(0, attempts - 1), 64)
        return min(self.base_delay_s * (self.multiplier ** exponent), self.max_delay_s)

    def delay_for(self, action: RetryAction, attempts: int) -> float:
        match action:
            case RetryAction.CLEAR_CREDENTIALS_AND_RETRY:
                return self.credential_reset_delay_s
            case RetryAction.RETRY_AFTER_COOLDOWN:
                return self.conflict_cooldown_s
            case RetryAction.RETRY_IMMEDIATE:
                return self.immediate_delay_s
            case _:
                return self.backoff_delay(attempts)


def describe_close(code: int | None, message: str = "") -> str:
    """Human-readable close reason for logs and ``last_error``."""
    try:
        name = DisconnectReason(code).name.lower().replace("_", " ") if code is not None else ""
    except ValueError:
        name = ""
    parts = [p for p in (name, str(code) if code is not None else "", message.strip()) if p]
    return " / ".join(parts) or "unknown"
