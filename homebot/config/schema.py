"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from homebot.config.defaults import (
    DEFAULT_EMPTY_REPLY_FALLBACK,
    DEFAULT_KEEPALIVE,
    DEFAULT_LEDGER,
    DEFAULT_RECONNECT,
    DEFAULT_REMOTE_PROCESS_PATTERNS,
    DEFAULT_REMOTE_UNIT,
    DEFAULT_REPLY_FALLBACK,
    DEFAULT_SESSION,
    DEFAULT_STATUS,
)


class BridgeConfig(BaseModel):
    """Messaging bridge sidecar connection (protocol v2 over websocket)."""

    model_config = ConfigDict(extra="ignore")

    bridge_url: str = ""  # full ws:// or wss:// URL; wins over host/port when set
    bridge_host: str = "127.0.0.1"
    bridge_port: int = 3001
    bridge_token: str = ""
    max_payload_bytes: int = 262144
    command_timeout_s: float = 20.0

    @field_validator("bridge_url")
    @classmethod
    def _check_bridge_url(cls, value: str) -> str:
        value = value.strip()
        if value:
            parsed = urlparse(value)
            if parsed.scheme not in ("ws", "wss") or not parsed.hostname:
                raise ValueError(f"bridgeUrl must be a ws:// or wss:// URL, got {value!r}")
        return value

    @property
    def resolved_bridge_url(self) -> str:
        if self.bridge_url:
            return self.bridge_url.rstrip("/")
        host = self.bridge_host.strip() or "127.0.0.1"
        return f"ws://{host}:{self.bridge_port}"


class SessionConfig(BaseModel):
    """Session lifecycle settings for the one identity this bridge holds."""

    model_config = ConfigDict(extra="ignore")

    auth_dir: str = ""  # empty means ~/.homebot/secrets/auth
    pairing_mode: bool = False
    phone_number: str = ""
    max_qr_cycles: int = Field(default=int(DEFAULT_SESSION["max_qr_cycles"]), ge=1)
    start_timeout_s: float = float(DEFAULT_SESSION["start_timeout_s"])
    connect_timeout_s: float = float(DEFAULT_SESSION["connect_timeout_s"])
    pairing_timeout_s: float = float(DEFAULT_SESSION["pairing_timeout_s"])

    @property
    def auth_path(self) -> Path:
        if self.auth_dir.strip():
            return Path(self.auth_dir).expanduser()
        from homebot.utils.helpers import get_default_auth_path
        return get_default_auth_path()


class ReconnectConfig(BaseModel):
    """Retry delays per close classification."""

    model_config = ConfigDict(extra="ignore")

    base_delay_s: float = Field(default=float(DEFAULT_RECONNECT["base_delay_s"]), gt=0)
    multiplier: float = Field(default=float(DEFAULT_RECONNECT["multiplier"]), ge=1.0)
    max_delay_s: float = Field(default=float(DEFAULT_RECONNECT["max_delay_s"]), gt=0)
    conflict_cooldown_s: float = Field(default=float(DEFAULT_RECONNECT["conflict_cooldown_s"]), ge=0)
    immediate_delay_s: float = Field(default=float(DEFAULT_RECONNECT["immediate_delay_s"]), ge=0)
    credential_reset_delay_s: float = Field(
        default=float(DEFAULT_RECONNECT["credential_reset_delay_s"]), ge=0
    )

    @model_validator(mode="after")
    def _validate_cap(self) -> "ReconnectConfig":
        if self.max_delay_s < self.base_delay_s:
            raise ValueError("reconnect.maxDelayS must be >= reconnect.baseDelayS")
        return self


class KeepaliveConfig(BaseModel):
    """Liveness watchdog settings."""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = True
    interval_s: float = Field(default=float(DEFAULT_KEEPALIVE["interval_s"]), gt=0)
    dead_after_intervals: int = Field(default=int(DEFAULT_KEEPALIVE["dead_after_intervals"]), ge=1)
    probe_timeout_s: float = Field(default=float(DEFAULT_KEEPALIVE["probe_timeout_s"]), gt=0)


class StatusConfig(BaseModel):
    """Status push to one or more control planes."""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = True
    urls: list[str] = Field(default_factory=list)
    api_key: str = ""
    interval_s: float = Field(default=float(DEFAULT_STATUS["interval_s"]), gt=0)
    timeout_s: float = Field(default=float(DEFAULT_STATUS["timeout_s"]), gt=0)
    hostname: str = ""  # empty means socket.gethostname()
    runtime: str = str(DEFAULT_STATUS["runtime"])


class ReplyConfig(BaseModel):
    """External reply capability."""

    model_config = ConfigDict(extra="ignore")

    url: str = "http://127.0.0.1:5000/reply"
    api_key: str = ""
    timeout_s: float = Field(default=120.0, gt=0)
    fallback_text: str = DEFAULT_REPLY_FALLBACK
    empty_reply_text: str = DEFAULT_EMPTY_REPLY_FALLBACK
    typing: bool = True
    presence_timeout_s: float = 6.0


class LedgerConfig(BaseModel):
    """Sent-message ledger bounds."""

    model_config = ConfigDict(extra="ignore")

    max_entries: int = Field(default=int(DEFAULT_LEDGER["max_entries"]), ge=1)
    trim_to: int = Field(default=int(DEFAULT_LEDGER["trim_to"]), ge=0)

    @model_validator(mode="after")
    def _validate_trim(self) -> "LedgerConfig":
        if self.trim_to > self.max_entries:
            raise ValueError("ledger.trimTo must be <= ledger.maxEntries")
        return self


class APIConfig(BaseModel):
    """Local bridge API (health + operator commands)."""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = True
    host: str = "127.0.0.1"  # localhost only by default
    port: int = 8787
    auth_token: str = ""  # Required for all endpoints except /health
    rate_limit_per_minute: int = 60


class ControlPlaneConfig(BaseModel):
    """Control-plane side: status intake and conflict arbitration."""

    model_config = ConfigDict(extra="ignore")

    host: str = "127.0.0.1"
    port: int = 8790
    api_key: str = ""  # shared key bridges send in X-API-Key
    auth_token: str = ""  # operator Bearer token
    rate_limit_per_minute: int = 60
    stale_after_s: float = Field(default=120.0, gt=0)


class RemoteConfig(BaseModel):
    """Rival (VPS) deployment: how to observe and disable it."""

    model_config = ConfigDict(extra="ignore")

    probe: Literal["ssh", "http"] = "ssh"
    host: str = ""
    port: int = 22
    username: str = "root"
    password: str = ""
    key_file: str = ""
    unit: str = DEFAULT_REMOTE_UNIT
    process_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_REMOTE_PROCESS_PATTERNS)
    )
    health_url: str = ""
    connect_timeout_s: float = 10.0
    command_timeout_s: float = 15.0
    retries: int = Field(default=1, ge=0)

    @property
    def configured(self) -> bool:
        if self.probe == "http":
            return bool(self.health_url.strip())
        return bool(self.host.strip())


class TelemetryConfig(BaseModel):
    """Metrics backend selection."""

    model_config = ConfigDict(extra="ignore")

    backend: Literal["memory", "prometheus"] = "memory"


class Config(BaseSettings):
    """Root configuration for homebot."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True, env_prefix="HOMEBOT_", env_nested_delimiter="__")

    config_version: int = 1
    bridge: BridgeConfig = Field(default_factory=BridgeConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    keepalive: KeepaliveConfig = Field(default_factory=KeepaliveConfig)
    status: StatusConfig = Field(default_factory=StatusConfig)
    reply: ReplyConfig = Field(default_factory=ReplyConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    control_plane: ControlPlaneConfig = Field(default_factory=ControlPlaneConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
