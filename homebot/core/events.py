"""Typed events for the transport boundary and the supervisor loop."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from homebot.core.models import InboundMessage

# ── Transport events ─────────────────────────────────────────────────


@dataclass(frozen=True, slots=True, kw_only=True)
class QrCode:
    payload: str


@dataclass(frozen=True, slots=True, kw_only=True)
class ConnectionOpened:
    self_id: str


@dataclass(frozen=True, slots=True, kw_only=True)
class ConnectionClosed:
    code: int | None = None
    reason: str = ""


@dataclass(frozen=True, slots=True, kw_only=True)
class MessageReceived:
    message: InboundMessage


@dataclass(frozen=True, slots=True, kw_only=True)
class CredentialsUpdated:
    """Session library rotated credential material that must be persisted."""

    creds: dict[str, Any] | None = None
    keys: dict[str, dict[str, Any] | None] = field(default_factory=dict)


type TransportEvent = QrCode | ConnectionOpened | ConnectionClosed | MessageReceived | CredentialsUpdated
type TransportEventSink = Callable[[TransportEvent], None]

# ── Supervisor loop events ───────────────────────────────────────────


@dataclass(frozen=True, slots=True, kw_only=True)
class StartRequested:
    pass


@dataclass(frozen=True, slots=True, kw_only=True)
class StopRequested:
    pass


@dataclass(frozen=True, slots=True, kw_only=True)
class ForgetRequested:
    pass


@dataclass(frozen=True, slots=True, kw_only=True)
class PairingRequested:
    phone: str


@dataclass(frozen=True, slots=True, kw_only=True)
class TransportSignal:
    generation: int
    event: TransportEvent


@dataclass(frozen=True, slots=True, kw_only=True)
class ConnectFinished:
    generation: int
    error: BaseException | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class PairingCodeFinished:
    generation: int
    qr_payload: str
    code: str | None = None
    error: BaseException | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class RetryDue:
    token: int


@dataclass(frozen=True, slots=True, kw_only=True)
class StartTimedOut:
    generation: int


@dataclass(frozen=True, slots=True, kw_only=True)
class KeepaliveTick:
    generation: int


@dataclass(frozen=True, slots=True, kw_only=True)
class ProbeFinished:
    generation: int
    ok: bool
    error: BaseException | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class TaskFailed:
    """An unexpected exception escaped a background task."""

    generation: int
    name: str
    error: BaseException


type SupervisorEvent = (
    StartRequested
    | StopRequested
    | ForgetRequested
    | PairingRequested
    | TransportSignal
    | ConnectFinished
    | PairingCodeFinished
    | RetryDue
    | StartTimedOut
    | KeepaliveTick
    | ProbeFinished
    | TaskFailed
)
