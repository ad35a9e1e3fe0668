"""Domain models for the bridge connection manager."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

type Jid = str
type MessageId = str


class ConnectionState(StrEnum):
    """The five states of one bridge session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    QR_READY = "qr_ready"
    PAIRING_CODE_READY = "pairing_code_ready"
    CONNECTED = "connected"


class RetryAction(StrEnum):
    """What to do after the transport reports a closed connection."""

    RETRY_IMMEDIATE = "retry_immediate"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    RETRY_AFTER_COOLDOWN = "retry_after_cooldown"
    CLEAR_CREDENTIALS_AND_RETRY = "clear_credentials_and_retry"


@dataclass(slots=True)
class BotConnection:
    """Mutable session record. Only the supervisor loop writes to it."""

    state: ConnectionState = ConnectionState.DISCONNECTED
    self_identity: str | None = None
    qr_payload: str | None = None
    pairing_code: str | None = None
    last_error: str = ""
    reconnect_attempts: int = 0
    last_liveness_at: float | None = None
    qr_cycles: int = 0
    next_retry_at: float | None = None
    retry_action: RetryAction | None = None
    updated_at: float = field(default_factory=time.time)

    def snapshot(self) -> ConnectionSnapshot:
        return ConnectionSnapshot(
            state=self.state,
            self_identity=self.self_identity,
            qr_payload=self.qr_payload,
            pairing_code=self.pairing_code,
            last_error=self.last_error,
            reconnect_attempts=self.reconnect_attempts,
            last_liveness_at=self.last_liveness_at,
            qr_cycles=self.qr_cycles,
            next_retry_at=self.next_retry_at,
            retry_action=self.retry_action,
            updated_at=self.updated_at,
        )


@dataclass(frozen=True, slots=True, kw_only=True)
class ConnectionSnapshot:
    """Immutable copy of ``BotConnection`` safe to hand to other components."""

    state: ConnectionState
    self_identity: str | None = None
    qr_payload: str | None = None
    pairing_code: str | None = None
    last_error: str = ""
    reconnect_attempts: int = 0
    last_liveness_at: float | None = None
    qr_cycles: int = 0
    next_retry_at: float | None = None
    retry_action: RetryAction | None = None
    updated_at: float = 0.0

    def to_status_payload(self) -> dict[str, Any]:
        """Wire shape pushed to the control plane (camelCase, no credentials)."""
        return {
            "state": self.state.value,
            "identity": self.self_identity,
            "error": self.last_error or None,
            "qrPayload": self.qr_payload,
            "pairingCode": self.pairing_code,
            "reconnectAttempts": self.reconnect_attempts,
        }

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["retry_action"] = self.retry_action.value if self.retry_action else None
        return data


@dataclass(frozen=True, slots=True, kw_only=True)
class InboundMessage:
    """One text message delivered by the transport."""

    message_id: MessageId
    chat_jid: Jid
    sender_jid: Jid
    text: str
    from_me: bool = False
    is_group: bool = False
    display_name: str | None = None
    timestamp: int = 0


@dataclass(frozen=True, slots=True, kw_only=True)
class HomeStatusReport:
    """Status report pushed by a bridge, as received by the control plane."""

    state: ConnectionState
    identity: str | None = None
    error: str | None = None
    hostname: str = "unknown"
    runtime: str = ""
    qr_payload: str | None = None
    qr_data_url: str | None = None
    pairing_code: str | None = None
    reconnect_attempts: int = 0
    received_at: float = 0.0

    def age(self, now: float) -> float:
        return max(0.0, now - self.received_at)


@dataclass(frozen=True, slots=True, kw_only=True)
class ConflictReport:
    """Derived split-brain verdict. Only the latest one is kept."""

    home_state: ConnectionState
    home_identity: str | None
    home_hostname: str | None
    home_error: str | None
    home_last_report_age_s: float | None
    home_online: bool
    remote_active: bool
    remote_error: str | None
    has_conflict: bool
    checked_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "homeState": self.home_state.value,
            "homeIdentity": self.home_identity,
            "homeHostname": self.home_hostname,
            "homeError": self.home_error,
            "homeLastReportAge": self.home_last_report_age_s,
            "homeOnline": self.home_online,
            "remoteActive": self.remote_active,
            "remoteError": self.remote_error,
            "hasConflict": self.has_conflict,
            "checkedAt": self.checked_at,
        }


@dataclass(frozen=True, slots=True, kw_only=True)
class CommandResult:
    """Outcome of one administrative command on a remote host."""

    ok: bool
    output: str = ""
    error: str | None = None
    exit_status: int | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class RemediationResult:
    """Outcome of disabling the rival deployment."""

    success: bool
    output: str = ""
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "output": self.output, "error": self.error}


@dataclass(slots=True)
class AuthState:
    """Credential material for one identity: ``creds`` plus ``{category}-{id}`` signal keys."""

    creds: dict[str, Any] | None = None
    keys: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def registered(self) -> bool:
        return bool(self.creds)
