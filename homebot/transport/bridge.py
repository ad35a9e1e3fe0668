"""Messaging transport backed by the Node.js bridge sidecar (protocol v2).

The sidecar owns the actual network session library; this client drives it
over one websocket with request/response envelopes and receives session
events (QR payloads, open/close, inbound messages, credential rotation) as
unsolicited frames.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import uuid
from typing import Any

import websockets
from loguru import logger
from websockets.exceptions import ConnectionClosed as WebSocketClosed

from homebot.config.schema import BridgeConfig
from homebot.core.events import (
    ConnectionClosed,
    ConnectionOpened,
    CredentialsUpdated,
    MessageReceived,
    QrCode,
    TransportEvent,
    TransportEventSink,
)
from homebot.core.models import AuthState, InboundMessage

PROTOCOL_VERSION = 2
_SESSION_CLOSE_TIMEOUT_S = 3.0
_PRESENCE_TIMEOUT_S = 6.0


class TransportError(RuntimeError):
    """Transport-level failure (socket gone, command rejected)."""


class BridgeProtocolMismatchError(TransportError):
    """The sidecar speaks a different protocol version."""


class BridgeProtocolError(TransportError):
    """A command came back with ``ok: false``."""

    def __init__(self, code: str, message: str, retryable: bool):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.retryable = retryable


class BridgeTransport:
    """``MessagingTransport`` implementation speaking bridge protocol v2."""

    def __init__(self, config: BridgeConfig, *, connect_timeout_s: float = 30.0):
        self.config = config
        self._connect_timeout_s = connect_timeout_s
        self._ws: Any | None = None
        self._reader: asyncio.Task[None] | None = None
        self._on_event: TransportEventSink | None = None
        self._write_lock = asyncio.Lock()
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._closing = False
        # Older sidecars answer presence_update with ERR_UNSUPPORTED
        self._presence_ok = True

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def _token(self) -> str:
        token = (self.config.bridge_token or "").strip()
        if not token:
            raise TransportError("bridge.bridgeToken is required for protocol v2")
        return token

    # ── Session ──────────────────────────────────────────────────────

    async def connect(
        self,
        auth: AuthState,
        on_event: TransportEventSink,
        *,
        pairing_mode: bool = False,
    ) -> None:
        """Open the websocket, check the sidecar's protocol and open a session."""
        if self._ws is not None:
            await self.disconnect()

        url = self.config.resolved_bridge_url
        token = self._token()
        logger.info(f"Connecting to messaging bridge at {url}...")

        self._closing = False
        self._on_event = on_event
        self._ws = await asyncio.wait_for(
            websockets.connect(
                url,
                max_size=self.config.max_payload_bytes,
                ping_interval=20,
                ping_timeout=20,
            ),
            timeout=self._connect_timeout_s,
        )
        self._reader = asyncio.create_task(self._read_frames(self._ws))

        try:
            health = await self._request("health", {}, self._connect_timeout_s, token=token)
            remote_version = health.get("protocolVersion", health.get("version"))
            if remote_version != PROTOCOL_VERSION:
                raise BridgeProtocolMismatchError(
                    f"bridge speaks protocol {remote_version!r}, this client needs v{PROTOCOL_VERSION}"
                )
            await self._request(
                "session_open",
                {"creds": auth.creds, "keys": auth.keys, "pairingMode": pairing_mode},
                self._connect_timeout_s,
            )
        except BaseException:
            await self.disconnect()
            raise

        logger.info(
            "Bridge session opening ({})",
            "stored credentials" if auth.registered else "new pairing",
        )

    async def disconnect(self) -> None:
        """Close the session and the websocket. Idempotent; emits no close event."""
        self._closing = True
        ws, self._ws = self._ws, None
        if ws is not None:
            with contextlib.suppress(Exception):
                await self._write(ws, self._envelope("session_close", {}, uuid.uuid4().hex))

        if self._reader is not None:
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
            self._reader = None

        if ws is not None:
            with contextlib.suppress(Exception):
                await asyncio.wait_for(ws.close(), timeout=_SESSION_CLOSE_TIMEOUT_S)
        self._abandon_pending("Bridge connection closed")
        self._on_event = None

    # ── Commands ─────────────────────────────────────────────────────

    async def send_text(self, jid: str, text: str) -> str | None:
        result = await self._request(
            "send_text", {"to": jid, "text": text}, self.config.command_timeout_s
        )
        return str(result["messageId"]) if result.get("messageId") else None

    async def request_pairing_code(self, phone: str) -> str:
        result = await self._request(
            "request_pairing_code", {"phone": phone}, self.config.command_timeout_s
        )
        code = str(result.get("code") or "").strip()
        if not code:
            raise BridgeProtocolError("ERR_EMPTY", "Bridge returned no pairing code", True)
        return code

    async def send_presence(self, state: str, jid: str | None = None) -> None:
        """Presence update. On sidecars without presence support an
        ``available`` probe degrades to a ``health`` round-trip."""
        if self._presence_ok:
            payload: dict[str, Any] = {"state": state}
            if jid:
                payload["chatJid"] = jid
            try:
                await self._request("presence_update", payload, _PRESENCE_TIMEOUT_S)
                return
            except BridgeProtocolError as e:
                if e.code != "ERR_UNSUPPORTED":
                    raise
                self._presence_ok = False
                logger.warning("Bridge has no presence_update; typing indicator off until restart")

        if state == "available":
            await self._request("health", {}, self.config.command_timeout_s)

    # ── Wire ─────────────────────────────────────────────────────────

    def _envelope(
        self,
        command: str,
        payload: dict[str, Any],
        request_id: str,
        token: str | None = None,
    ) -> str:
        return json.dumps(
            {
                "version": PROTOCOL_VERSION,
                "type": command,
                "token": token or self._token(),
                "requestId": request_id,
                "accountId": "default",
                "payload": payload,
            }
        )

    async def _write(self, ws: Any, text: str) -> None:
        async with self._write_lock:
            await ws.send(text)

    async def _request(
        self,
        command: str,
        payload: dict[str, Any],
        timeout_s: float,
        *,
        token: str | None = None,
    ) -> dict[str, Any]:
        ws = self._ws
        if ws is None:
            raise TransportError("Bridge websocket not connected")

        request_id = uuid.uuid4().hex
        reply: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = reply
        try:
            await self._write(ws, self._envelope(command, payload, request_id, token))
            return await asyncio.wait_for(reply, timeout=timeout_s)
        finally:
            self._pending.pop(request_id, None)

    def _settle(self, request_id: str, payload: dict[str, Any]) -> None:
        reply = self._pending.get(request_id)
        if reply is None or reply.done():
            return
        if payload.get("ok"):
            result = payload.get("result")
            reply.set_result(result if isinstance(result, dict) else {})
            return
        error = payload.get("error")
        if not isinstance(error, dict):
            error = {}
        reply.set_exception(
            BridgeProtocolError(
                str(error.get("code") or "ERR_INTERNAL"),
                str(error.get("message") or "Bridge command failed"),
                bool(error.get("retryable", False)),
            )
        )

    def _abandon_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for reply in pending.values():
            if not reply.done():
                reply.set_exception(TransportError(reason))

    # ── Inbound frames ───────────────────────────────────────────────

    async def _read_frames(self, ws: Any) -> None:
        try:
            async for raw in ws:
                self._handle_bridge_message(raw)
        except WebSocketClosed as e:
            logger.warning(f"Bridge websocket closed: {e}")
        finally:
            # A drop we did not ask for is reported as a generic close
            if ws is self._ws and not self._closing:
                self._ws = None
                self._abandon_pending("Bridge connection closed")
                self._emit(ConnectionClosed(code=None, reason="bridge websocket closed"))

    def _emit(self, event: TransportEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)

    def _handle_bridge_message(self, raw: str | bytes) -> None:
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Bridge sent a frame that is not JSON")
            return
        if not isinstance(frame, dict):
            logger.warning("Bridge sent a frame that is not an object")
            return
        if frame.get("version") != PROTOCOL_VERSION:
            logger.warning(f"Ignoring bridge frame with version {frame.get('version')!r}")
            return

        payload = frame.get("payload")
        if not isinstance(payload, dict):
            payload = {}

        match frame.get("type"):
            case "response":
                request_id = frame.get("requestId")
                if isinstance(request_id, str):
                    self._settle(request_id, payload)
            case "qr":
                qr = str(payload.get("qr") or "").strip()
                if qr:
                    self._emit(QrCode(payload=qr))
            case "connection":
                self._on_connection_frame(payload)
            case "message":
                message = parse_inbound_message(payload)
                if message is not None:
                    self._emit(MessageReceived(message=message))
            case "creds_update":
                if isinstance(payload.get("creds"), dict):
                    self._emit(CredentialsUpdated(creds=payload["creds"]))
            case "keys_update":
                keys = payload.get("keys")
                if isinstance(keys, dict):
                    delta = {str(k): v if isinstance(v, dict) else None for k, v in keys.items()}
                    self._emit(CredentialsUpdated(keys=delta))
            case "status":
                logger.debug(f"Bridge status: {payload.get('status')}")
            case "error":
                logger.error(f"Messaging bridge error: {payload.get('error')}")
            case other:
                logger.debug(f"Unhandled bridge frame type {other!r}")

    def _on_connection_frame(self, payload: dict[str, Any]) -> None:
        match payload.get("connection"):
            case "open":
                self._emit(ConnectionOpened(self_id=str(payload.get("selfId") or "").strip()))
            case "close":
                status = payload.get("statusCode")
                self._emit(
                    ConnectionClosed(
                        code=int(status) if isinstance(status, (int, float)) else None,
                        reason=str(payload.get("reason") or ""),
                    )
                )


def parse_inbound_message(payload: dict[str, Any]) -> InboundMessage | None:
    """``message`` frame payload to ``InboundMessage``; None when ids are missing."""
    message_id = str(payload.get("messageId") or "").strip()
    chat = str(payload.get("chatJid") or "").strip()
    if not message_id or not chat:
        logger.warning(f"Dropping inbound message without ids: {sorted(payload)}")
        return None

    sender = str(payload.get("senderId") or payload.get("participantJid") or chat).strip()
    ts = payload.get("timestamp")
    return InboundMessage(
        message_id=message_id,
        chat_jid=chat,
        sender_jid=sender,
        text=str(payload.get("text") or "").strip(),
        from_me=bool(payload.get("fromMe")),
        is_group=bool(payload.get("isGroup")),
        display_name=str(payload.get("pushName") or "").strip() or None,
        timestamp=int(ts) if isinstance(ts, (int, float)) else 0,
    )
