"""Read and write ``~/.homebot/config.json``.

The file is camelCase JSON; the pydantic models are snake_case. Files written
by older releases are migrated in place (after a timestamped backup) and
always saved with mode 0600 because they hold the bridge token and API keys.
"""

from __future__ import annotations

import contextlib
import json
import os
import re
import shutil
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from homebot.config.defaults import apply_missing_defaults
from homebot.config.schema import Config
from homebot.utils.helpers import get_data_path

CONFIG_VERSION = 1

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def get_config_path() -> Path:
    return get_data_path() / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """Load the config file, migrating legacy layouts.

    A missing file yields ``Config()``, which picks up ``HOMEBOT_*``
    environment variables. An unreadable or invalid file also yields
    defaults, with a warning on stdout so ``homebot`` still starts.
    """
    path = config_path or get_config_path()
    if not path.exists():
        return Config()

    try:
        raw = json.loads(path.read_text())
        migrated, changed = migrate_config(raw)
        config = Config.model_validate(convert_keys(migrated))
    except (json.JSONDecodeError, ValueError) as e:
        print(f"Warning: Failed to load config from {path}: {e}")
        print("Using default configuration.")
        return Config()

    if changed:
        _backup(path)
        _write_secure(path, convert_to_camel(config.model_dump()))
    return config


def save_config(config: Config, config_path: Path | None = None) -> None:
    _write_secure(config_path or get_config_path(), convert_to_camel(config.model_dump()))


# ── Migration ────────────────────────────────────────────────────────


def _split_bridge_url(data: dict[str, Any]) -> None:
    """``bridge.bridgeUrl`` only: derive ``bridgeHost`` / ``bridgePort``."""
    bridge = data.get("bridge")
    if not isinstance(bridge, dict):
        return
    url = bridge.get("bridgeUrl")
    if not isinstance(url, str) or not url.strip():
        return
    parsed = urlparse(url)
    if parsed.hostname:
        bridge.setdefault("bridgeHost", parsed.hostname)
    if parsed.port is not None:
        bridge.setdefault("bridgePort", parsed.port)


def _single_status_url(data: dict[str, Any]) -> None:
    """``status.url`` (one control plane) becomes the first of ``status.urls``."""
    status = data.get("status")
    if not isinstance(status, dict) or "url" not in status:
        return
    single = status.pop("url")
    urls = status.get("urls") if isinstance(status.get("urls"), list) else []
    if isinstance(single, str) and single.strip() and single not in urls:
        urls.insert(0, single)
    status["urls"] = urls


_LEGACY_MIGRATIONS: tuple[Callable[[dict[str, Any]], None], ...] = (
    _split_bridge_url,
    _single_status_url,
)


def migrate_config(data: Any) -> tuple[dict[str, Any], bool]:
    """Bring a raw camelCase document to the current layout.

    Returns the migrated document and whether it differs from the input.
    """
    if not isinstance(data, dict):
        raise ValueError("Config root must be a JSON object")

    before = _canonical(data)
    doc = json.loads(before)
    for migration in _LEGACY_MIGRATIONS:
        migration(doc)

    snake = convert_keys(doc)
    apply_missing_defaults(snake)
    snake["config_version"] = CONFIG_VERSION
    migrated = convert_to_camel(snake)
    return migrated, _canonical(migrated) != before


def _canonical(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


# ── Files ────────────────────────────────────────────────────────────


def _backup(path: Path) -> None:
    stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    backup = path.with_name(f"{path.stem}.backup.{stamp}{path.suffix}")
    shutil.copy2(path, backup)
    with contextlib.suppress(OSError):
        backup.chmod(0o600)


def _write_secure(path: Path, data: dict[str, Any]) -> None:
    """Write through a temp file and ``os.replace``; readable by the owner only."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp-{os.getpid()}")
    tmp.write_text(json.dumps(data, indent=2))
    with contextlib.suppress(OSError):
        tmp.chmod(0o600)
    os.replace(tmp, path)
    with contextlib.suppress(OSError):
        path.chmod(0o600)


# ── Key style ────────────────────────────────────────────────────────


def camel_to_snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def snake_to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def convert_keys(data: Any) -> Any:
    """camelCase -> snake_case, recursively."""
    if isinstance(data, dict):
        return {camel_to_snake(k): convert_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def convert_to_camel(data: Any) -> Any:
    """snake_case -> camelCase, recursively."""
    if isinstance(data, dict):
        return {snake_to_camel(k): convert_to_camel(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    return data
