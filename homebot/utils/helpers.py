"""Utility functions for homebot."""

import os
import re
import socket
from datetime import UTC, datetime
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Get the homebot data directory.

    Respects HOMEBOT_HOME environment variable; falls back to ~/.homebot.
    """
    homebot_home = os.environ.get("HOMEBOT_HOME", "").strip()
    if homebot_home:
        return ensure_dir(Path(homebot_home))
    return ensure_dir(Path.home() / ".homebot")


def get_secrets_path() -> Path:
    """Get the secrets directory (~/.homebot/secrets), chmod 0700."""
    path = ensure_dir(get_data_path() / "secrets")
    try:
        path.chmod(0o700)
    except OSError:
        pass
    return path


def get_default_auth_path() -> Path:
    """Get the default session credential directory (~/.homebot/secrets/auth)."""
    return get_secrets_path() / "auth"


def get_hostname() -> str:
    return socket.gethostname() or "unknown"


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def normalize_phone(raw: str) -> str:
    """Strip everything but digits from a phone number.

    Raises:
        ValueError: If fewer than 7 digits remain.
    """
    digits = re.sub(r"\D", "", raw or "")
    if len(digits) < 7:
        raise ValueError("Invalid phone number")
    return digits


def format_pairing_code(code: str) -> str:
    """Group a raw pairing code in blocks of four (ABCD-EFGH)."""
    compact = re.sub(r"[^0-9A-Za-z]", "", code or "").upper()
    return "-".join(compact[i:i + 4] for i in range(0, len(compact), 4))


def identity_user(jid: str | None) -> str:
    """Return the user part of a network address (``123:4@s.whatsapp.net`` -> ``123``)."""
    if not jid:
        return ""
    return jid.split("@", 1)[0].split(":", 1)[0]
