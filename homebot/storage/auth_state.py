"""Multi-file credential store for one messaging identity.

Layout inside ``auth_dir``:
- ``creds.json`` (the registration document)
- ``{category}-{id}.json`` (signal keys: pre-keys, sessions, sender keys, ...)

Writes are atomic (tmp file + rename) with 0600 permissions; the directory is
kept at 0700.
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any

from loguru import logger

from homebot.core.models import AuthState

CREDS_FILE = "creds.json"
_UNSAFE_CHARS = re.compile(r"[/\\:]")


def _fix_file_name(name: str) -> str:
    return _UNSAFE_CHARS.sub(lambda m: "__" if m.group(0) == "/" else "-", name)


class FileAuthStateStore:
    """Filesystem-backed ``AuthStateStore``."""

    def __init__(self, auth_dir: Path):
        self.auth_dir = Path(auth_dir).expanduser()

    def _ensure_dir(self) -> Path:
        self.auth_dir.mkdir(parents=True, exist_ok=True)
        try:
            self.auth_dir.chmod(0o700)
        except OSError:
            pass
        return self.auth_dir

    def _key_path(self, key: str) -> Path:
        return self.auth_dir / f"{_fix_file_name(key)}.json"

    def _read_json(self, path: Path) -> dict[str, Any] | None:
        try:
            with open(path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable auth file {path.name}: {e}")
            return None
        return data if isinstance(data, dict) else None

    def _write_json(self, path: Path, data: dict[str, Any]) -> None:
        self._ensure_dir()
        tmp_path = path.with_name(f".{path.name}.tmp-{os.getpid()}")
        with open(tmp_path, "w") as f:
            json.dump(data, f)
        try:
            tmp_path.chmod(0o600)
        except OSError:
            pass
        os.replace(tmp_path, path)

    def has_credentials(self) -> bool:
        creds = self._read_json(self.auth_dir / CREDS_FILE)
        return bool(creds)

    def load(self) -> AuthState:
        if not self.auth_dir.exists():
            return AuthState()
        creds = self._read_json(self.auth_dir / CREDS_FILE)
        keys: dict[str, dict[str, Any]] = {}
        for path in sorted(self.auth_dir.glob("*.json")):
            if path.name == CREDS_FILE:
                continue
            data = self._read_json(path)
            if data is not None:
                keys[path.stem] = data
        return AuthState(creds=creds, keys=keys)

    def save_creds(self, creds: dict[str, Any]) -> None:
        self._write_json(self.auth_dir / CREDS_FILE, creds)

    def set_keys(self, keys: dict[str, dict[str, Any] | None]) -> None:
        for key, value in keys.items():
            path = self._key_path(key)
            if value is None:
                path.unlink(missing_ok=True)
            else:
                self._write_json(path, value)

    def clear(self) -> None:
        if not self.auth_dir.exists():
            return
        removed = 0
        for path in self.auth_dir.iterdir():
            if path.is_file():
                path.unlink(missing_ok=True)
                removed += 1
        logger.info(f"Cleared {removed} auth file(s) from {self.auth_dir}")
