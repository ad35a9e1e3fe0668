"""Port interfaces for the bridge connection manager."""

from __future__ import annotations

from typing import Any, Protocol

from homebot.core.events import TransportEventSink
from homebot.core.models import AuthState, CommandResult, ConnectionSnapshot


class MessagingTransport(Protocol):
    """The network session to the messaging service.

    ``connect`` returns once the session handshake has been started; progress
    (QR payloads, open, close, inbound messages, credential rotation) is
    reported through ``on_event``.
    """

    async def connect(
        self,
        auth: AuthState,
        on_event: TransportEventSink,
        *,
        pairing_mode: bool = False,
    ) -> None:
        """Open a session with the stored credentials (or none, to pair)."""

    async def disconnect(self) -> None:
        """Close the current session; safe to call when already closed."""

    async def send_text(self, jid: str, text: str) -> str | None:
        """Send one text message and return its message id when known."""

    async def request_pairing_code(self, phone: str) -> str:
        """Ask the network for a phone pairing code for ``phone`` (digits only)."""

    async def send_presence(self, state: str, jid: str | None = None) -> None:
        """Presence update (``available``, ``composing``, ``paused``)."""


class AuthStateStore(Protocol):
    """Credential persistence for one identity."""

    def has_credentials(self) -> bool:
        """Return True when a usable credential set is stored."""

    def load(self) -> AuthState:
        """Load creds and keys; empty state when none stored."""

    def save_creds(self, creds: dict[str, Any]) -> None:
        """Persist the credential document."""

    def set_keys(self, keys: dict[str, dict[str, Any] | None]) -> None:
        """Upsert (or delete, for ``None`` values) ``{category}-{id}`` key documents."""

    def clear(self) -> None:
        """Remove every stored credential artifact."""


class StatusSink(Protocol):
    """Receives every state transition. Must never block or raise."""

    def publish(self, snapshot: ConnectionSnapshot) -> None:
        """Queue one snapshot for delivery."""


class ReplyPort(Protocol):
    """External reply capability."""

    async def generate_reply(self, sender: str, text: str, display_name: str | None = None) -> str:
        """Return reply text; implementations substitute a fallback on failure."""


class RemoteDeploymentPort(Protocol):
    """Out-of-band view of (and control over) the rival deployment."""

    async def is_active(self) -> bool:
        """Return True when the rival bridge process is running."""

    async def disable(self) -> CommandResult:
        """Stop the rival and disable its auto-start. Idempotent."""

    async def aclose(self) -> None:
        """Release any client the implementation owns."""
