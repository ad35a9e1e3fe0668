import asyncio
from typing import Any

import pytest

from homebot.core.events import TransportEvent, TransportEventSink
from homebot.core.models import AuthState, CommandResult
from homebot.telemetry import InMemoryTelemetry


class FakeTransport:
    """In-process ``MessagingTransport`` driven by the test."""

    def __init__(self) -> None:
        self.connects: list[AuthState] = []
        self.pairing_modes: list[bool] = []
        self.disconnects = 0
        self.on_event: TransportEventSink | None = None
        self.sent: list[tuple[str, str]] = []
        self.presence: list[tuple[str, str | None]] = []
        self.pairing_calls: list[str] = []
        self.pairing_code = "abcd1234"
        self.pairing_error: Exception | None = None
        self.pairing_gate: asyncio.Event | None = None
        self.connect_error: Exception | None = None
        self.send_error: Exception | None = None
        self.presence_hang = False
        self._next_id = 0

    async def connect(self, auth: AuthState, on_event: TransportEventSink, *, pairing_mode: bool = False) -> None:
        self.connects.append(auth)
        self.pairing_modes.append(pairing_mode)
        self.on_event = on_event
        if self.connect_error is not None:
            raise self.connect_error

    async def disconnect(self) -> None:
        self.disconnects += 1

    async def send_text(self, jid: str, text: str) -> str | None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((jid, text))
        self._next_id += 1
        return f"OUT{self._next_id}"

    async def request_pairing_code(self, phone: str) -> str:
        self.pairing_calls.append(phone)
        if self.pairing_gate is not None:
            await self.pairing_gate.wait()
        if self.pairing_error is not None:
            raise self.pairing_error
        return self.pairing_code

    async def send_presence(self, state: str, jid: str | None = None) -> None:
        if self.presence_hang:
            await asyncio.Event().wait()
        self.presence.append((state, jid))

    def emit(self, event: TransportEvent) -> None:
        assert self.on_event is not None, "transport not connected"
        self.on_event(event)


class MemoryAuthStore:
    """Dict-backed ``AuthStateStore``."""

    def __init__(self, creds: dict[str, Any] | None = None) -> None:
        self.creds = creds
        self.keys: dict[str, dict[str, Any]] = {}
        self.cleared = 0

    def has_credentials(self) -> bool:
        return bool(self.creds)

    def load(self) -> AuthState:
        return AuthState(creds=dict(self.creds) if self.creds else None, keys=dict(self.keys))

    def save_creds(self, creds: dict[str, Any]) -> None:
        self.creds = dict(creds)

    def set_keys(self, keys: dict[str, dict[str, Any] | None]) -> None:
        for key, value in keys.items():
            if value is None:
                self.keys.pop(key, None)
            else:
                self.keys[key] = value

    def clear(self) -> None:
        self.creds = None
        self.keys.clear()
        self.cleared += 1


class FakeRemote:
    """``RemoteDeploymentPort`` with a switchable active flag."""

    def __init__(self, active: bool = False, probe_error: Exception | None = None) -> None:
        self.active = active
        self.probe_error = probe_error
        self.disable_calls = 0
        self.closed = False

    async def is_active(self) -> bool:
        if self.probe_error is not None:
            raise self.probe_error
        return self.active

    async def disable(self) -> CommandResult:
        self.disable_calls += 1
        self.active = False
        return CommandResult(ok=True, output="DONE\n", exit_status=0)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def store() -> MemoryAuthStore:
    return MemoryAuthStore()


@pytest.fixture
def telemetry() -> InMemoryTelemetry:
    return InMemoryTelemetry()


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()
