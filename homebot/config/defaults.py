"""Centralized defaults for the connection manager."""

from __future__ import annotations

from typing import Any

DEFAULT_RECONNECT: dict[str, Any] = {
    "base_delay_s": 5.0,
    "multiplier": 1.5,
    "max_delay_s": 120.0,
    "conflict_cooldown_s": 60.0,
    "immediate_delay_s": 1.0,
    "credential_reset_delay_s": 5.0,
}

DEFAULT_KEEPALIVE: dict[str, Any] = {
    "interval_s": 25.0,
    "dead_after_intervals": 3,
    "probe_timeout_s": 10.0,
}

DEFAULT_SESSION: dict[str, Any] = {
    "max_qr_cycles": 5,
    "start_timeout_s": 45.0,
    "connect_timeout_s": 30.0,
    "pairing_timeout_s": 20.0,
}

DEFAULT_STATUS: dict[str, Any] = {
    "interval_s": 20.0,
    "timeout_s": 8.0,
    "runtime": "home",
}

DEFAULT_REPLY_FALLBACK = (
    "Sorry, I'm having trouble connecting to the AI service. Please try again."
)
DEFAULT_EMPTY_REPLY_FALLBACK = "I couldn't generate a response. Please try again."

DEFAULT_LEDGER: dict[str, Any] = {
    "max_entries": 500,
    "trim_to": 250,
}

DEFAULT_REMOTE_UNIT = "openclaw-whatsapp"
DEFAULT_REMOTE_PROCESS_PATTERNS: tuple[str, ...] = ("openclaw-whatsapp", "vps-bot/index.mjs")


def apply_missing_defaults(snake_config: dict[str, Any]) -> None:
    """Inject missing config defaults without overriding existing user values."""
    if not isinstance(snake_config, dict):
        return

    for section, defaults in (
        ("reconnect", DEFAULT_RECONNECT),
        ("keepalive", DEFAULT_KEEPALIVE),
        ("session", DEFAULT_SESSION),
        ("status", DEFAULT_STATUS),
        ("ledger", DEFAULT_LEDGER),
    ):
        current = snake_config.setdefault(section, {})
        if not isinstance(current, dict):
            current = {}
            snake_config[section] = current
        for key, value in defaults.items():
            current.setdefault(key, value)
