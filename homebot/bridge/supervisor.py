"""Connection supervisor: the session state machine for one identity.

Every mutation of ``BotConnection`` happens inside one asyncio task that
consumes typed events from a queue. Transport callbacks, timers, background
I/O results and operator commands only ever enqueue events. Slow I/O
(connect, pairing code, keepalive probe) runs in separate tasks whose results
come back as events tagged with the connect-attempt generation; results from
an older generation are dropped.
"""

from __future__ import annotations

import asyncio
import contextlib
import threading
import time
from collections.abc import Callable, Coroutine
from functools import partial
from typing import TYPE_CHECKING, Any

from loguru import logger

from homebot.config.schema import KeepaliveConfig, SessionConfig
from homebot.core.events import (
    ConnectFinished,
    ConnectionClosed,
    ConnectionOpened,
    CredentialsUpdated,
    ForgetRequested,
    KeepaliveTick,
    MessageReceived,
    PairingCodeFinished,
    PairingRequested,
    ProbeFinished,
    QrCode,
    RetryDue,
    StartRequested,
    StartTimedOut,
    StopRequested,
    SupervisorEvent,
    TaskFailed,
    TransportEvent,
    TransportSignal,
)
from homebot.core.models import (
    AuthState,
    BotConnection,
    ConnectionSnapshot,
    ConnectionState,
    RetryAction,
)
from homebot.core.policy import ReconnectPolicy, describe_close
from homebot.core.ports import AuthStateStore, MessagingTransport, StatusSink
from homebot.telemetry.base import TelemetryPort
from homebot.utils.helpers import format_pairing_code, normalize_phone

if TYPE_CHECKING:
    from homebot.bridge.router import MessageRouter

_SESSION_STATES = (
    ConnectionState.CONNECTING,
    ConnectionState.QR_READY,
    ConnectionState.PAIRING_CODE_READY,
)
_TRANSPORT_CLOSE_TIMEOUT_S = 5.0


class ConnectionSupervisor:
    """Owns one ``BotConnection`` and drives it from transport events."""

    def __init__(
        self,
        transport: MessagingTransport,
        store: AuthStateStore,
        policy: ReconnectPolicy | None = None,
        *,
        reporter: StatusSink | None = None,
        session: SessionConfig | None = None,
        keepalive: KeepaliveConfig | None = None,
        telemetry: TelemetryPort | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        self._transport = transport
        self._store = store
        self.policy = policy or ReconnectPolicy()
        self._reporter = reporter
        self.session = session or SessionConfig()
        self.keepalive = keepalive or KeepaliveConfig()
        self._telemetry = telemetry
        self._clock = clock
        self._wall_clock = wall_clock
        self._router: MessageRouter | None = None

        self._conn = BotConnection()
        self._lock = threading.Lock()
        self._snapshot = self._conn.snapshot()
        self._queue: asyncio.Queue[SupervisorEvent] = asyncio.Queue()
        self._loop_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

        self._generation = 0
        self._in_flight = False
        self._connect_task: asyncio.Task[None] | None = None
        self._start_timeout_task: asyncio.Task[None] | None = None
        self._pairing_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._probe_task: asyncio.Task[None] | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._retry_token = 0

        self._pairing_mode = self.session.pairing_mode
        self._phone = ""
        if self.session.phone_number.strip():
            try:
                self._phone = normalize_phone(self.session.phone_number)
            except ValueError:
                logger.warning("Ignoring configured phone number: fewer than 7 digits")
        self._pairing_requested = False
        # Newest QR seen while a pairing-code request is in flight
        self._latest_qr: str | None = None

    # ── Lifecycle ────────────────────────────────────────────────────

    def attach_router(self, router: MessageRouter) -> None:
        self._router = router

    async def launch(self) -> None:
        """Start the event loop task. Does not connect; call ``start()`` for that."""
        if self._loop_task is None:
            self._loop_task = asyncio.create_task(self._run())
            self._publish()

    async def shutdown(self) -> None:
        """Stop the session and the event loop."""
        if self._loop_task is None:
            return
        self.stop()
        await self._queue.join()
        self._loop_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._loop_task
        self._loop_task = None
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    async def settle(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()

    # ── Operator commands (synchronous enqueue) ──────────────────────

    def start(self) -> None:
        self._queue.put_nowait(StartRequested())

    def stop(self) -> None:
        self._queue.put_nowait(StopRequested())

    def forget_identity(self) -> None:
        self._queue.put_nowait(ForgetRequested())

    def request_pairing(self, phone_number: str) -> None:
        """Switch to phone-code pairing for ``phone_number``.

        Raises:
            ValueError: If the number has fewer than 7 digits.
        """
        self._queue.put_nowait(PairingRequested(phone=normalize_phone(phone_number)))

    # ── Reads ────────────────────────────────────────────────────────

    def snapshot(self) -> ConnectionSnapshot:
        with self._lock:
            return self._snapshot

    @property
    def identity(self) -> str | None:
        return self.snapshot().self_identity

    # ── Event loop ───────────────────────────────────────────────────

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._handle(event)
            except Exception as e:
                logger.exception(f"Supervisor failed handling {type(event).__name__}: {e}")
            finally:
                self._queue.task_done()

    async def _handle(self, event: SupervisorEvent) -> None:
        match event:
            case TransportSignal():
                await self._on_transport_signal(event)
            case StartRequested():
                await self._on_start()
            case StopRequested():
                await self._on_stop(reason="Stopped")
            case ForgetRequested():
                await self._on_forget()
            case PairingRequested():
                await self._on_pairing_requested(event.phone)
            case ConnectFinished():
                await self._on_connect_finished(event)
            case PairingCodeFinished():
                self._on_pairing_finished(event)
            case RetryDue():
                await self._on_retry_due(event.token)
            case StartTimedOut():
                if self._is_current(event.generation) and self._in_flight and (
                    self._conn.state == ConnectionState.CONNECTING
                ):
                    logger.warning(
                        f"No QR or session within {self.session.start_timeout_s:.0f}s; restarting"
                    )
                    await self._fail_attempt("Connection start timed out")
            case KeepaliveTick():
                await self._on_keepalive_tick(event.generation)
            case ProbeFinished():
                self._on_probe_finished(event)
            case TaskFailed():
                if self._is_current(event.generation) and self._in_flight:
                    await self._fail_attempt(f"{event.name} task failed: {event.error}")

    def _is_current(self, generation: int) -> bool:
        if generation != self._generation:
            logger.debug(f"Dropping stale event from attempt {generation} (current {self._generation})")
            return False
        return True

    # ── Transport events ─────────────────────────────────────────────

    def _on_transport_event(self, generation: int, event: TransportEvent) -> None:
        self._queue.put_nowait(TransportSignal(generation=generation, event=event))

    async def _on_transport_signal(self, signal: TransportSignal) -> None:
        if not self._is_current(signal.generation):
            return
        if self._conn.state == ConnectionState.CONNECTED:
            self._conn.last_liveness_at = self._clock()
            self._commit()

        match signal.event:
            case QrCode(payload=payload):
                await self._on_qr(payload)
            case ConnectionOpened(self_id=self_id):
                self._on_opened(self_id)
            case ConnectionClosed(code=code, reason=reason):
                await self._on_closed(code, reason)
            case MessageReceived(message=message):
                if self._router is not None and self._conn.state == ConnectionState.CONNECTED:
                    self._router.dispatch(message)
            case CredentialsUpdated(creds=creds, keys=keys):
                self._persist_credentials(creds, keys)

    async def _on_qr(self, payload: str) -> None:
        state = self._conn.state
        if state not in _SESSION_STATES:
            return
        self._cancel_task("_start_timeout_task")
        if state == ConnectionState.PAIRING_CODE_READY:
            logger.debug("QR refresh ignored: pairing code already displayed")
            return
        self._latest_qr = payload
        if self._pairing_task is not None and not self._pairing_task.done():
            return

        self._conn.qr_cycles += 1
        if self._conn.qr_cycles > self.session.max_qr_cycles:
            logger.warning(f"QR not scanned after {self.session.max_qr_cycles} codes; giving up")
            await self._end_attempt()
            self._transition(
                ConnectionState.DISCONNECTED,
                last_error="QR code expired. Start again to get a new code.",
            )
            return

        if self._pairing_mode and self._phone and not self._pairing_requested:
            self._request_pairing_code(payload)
            return

        logger.info(f"QR code ready (scan {self._conn.qr_cycles}/{self.session.max_qr_cycles})")
        self._transition(ConnectionState.QR_READY, qr_payload=payload, pairing_code=None)

    def _request_pairing_code(self, qr_payload: str) -> None:
        self._pairing_requested = True
        logger.info(f"Requesting pairing code for {self._phone}")
        self._pairing_task = self._spawn(
            self._fetch_pairing_code(self._generation, self._phone, qr_payload),
            "pairing",
        )

    async def _fetch_pairing_code(self, generation: int, phone: str, qr_payload: str) -> None:
        try:
            code = await asyncio.wait_for(
                self._transport.request_pairing_code(phone),
                timeout=self.session.pairing_timeout_s,
            )
        except Exception as e:
            self._queue.put_nowait(
                PairingCodeFinished(generation=generation, qr_payload=qr_payload, error=e)
            )
            return
        self._queue.put_nowait(
            PairingCodeFinished(
                generation=generation,
                qr_payload=qr_payload,
                code=format_pairing_code(code),
            )
        )

    def _on_pairing_finished(self, event: PairingCodeFinished) -> None:
        if not self._is_current(event.generation):
            return
        if self._conn.state not in (ConnectionState.CONNECTING, ConnectionState.QR_READY):
            return
        if event.code:
            logger.info(f"Pairing code ready: {event.code}")
            self._transition(
                ConnectionState.PAIRING_CODE_READY,
                pairing_code=event.code,
                qr_payload=None,
                last_error="",
            )
            return
        logger.warning(f"Pairing code request failed, falling back to QR: {event.error}")
        self._transition(
            ConnectionState.QR_READY,
            qr_payload=self._latest_qr or event.qr_payload,
            pairing_code=None,
            last_error=f"Pairing code request failed: {event.error}",
        )

    def _on_opened(self, self_id: str) -> None:
        if self._conn.state not in _SESSION_STATES:
            return
        self._cancel_task("_start_timeout_task")
        self._cancel_task("_pairing_task")
        identity = self_id or self._conn.self_identity
        logger.info(f"Connected as {identity}")
        self._transition(
            ConnectionState.CONNECTED,
            self_identity=identity,
            reconnect_attempts=0,
            last_error="",
            qr_cycles=0,
            next_retry_at=None,
            retry_action=None,
            last_liveness_at=self._clock(),
        )
        self._start_keepalive()

    async def _on_closed(self, code: int | None, reason: str) -> None:
        if not self._in_flight:
            return
        detail = describe_close(code, reason)
        action = self.policy.classify(code, reason)
        logger.warning(f"Connection closed ({detail}) -> {action.value}")
        await self._end_attempt()
        self._schedule_retry(action, detail)

    def _persist_credentials(
        self,
        creds: dict[str, Any] | None,
        keys: dict[str, dict[str, Any] | None],
    ) -> None:
        try:
            if creds:
                self._store.save_creds(creds)
            if keys:
                self._store.set_keys(keys)
        except OSError as e:
            logger.error(f"Failed to persist session credentials: {e}")

    # ── Operator command handlers ────────────────────────────────────

    async def _on_start(self) -> None:
        if self._in_flight:
            logger.info(f"start() ignored: a session is already active ({self._conn.state.value})")
            return
        await self._begin_connect()

    async def _on_stop(self, *, reason: str) -> None:
        self._generation += 1
        self._in_flight = False
        self._cancel_retry()
        self._stop_keepalive()
        self._cancel_task("_start_timeout_task")
        self._cancel_task("_pairing_task")
        self._cancel_task("_connect_task")
        await self._close_transport()
        if self._router is not None:
            self._router.cancel_all()
        logger.info(f"Supervisor stopped ({reason})")
        self._transition(
            ConnectionState.DISCONNECTED,
            last_error=reason,
            qr_cycles=0,
            retry_action=None,
        )

    async def _on_forget(self) -> None:
        await self._on_stop(reason="Identity forgotten")
        self._clear_credentials()
        self._transition(ConnectionState.DISCONNECTED, self_identity=None)

    async def _on_pairing_requested(self, phone: str) -> None:
        state = self._conn.state
        if state == ConnectionState.CONNECTED:
            logger.warning("Pairing request ignored: session already connected")
            return

        self._pairing_mode = True
        self._phone = phone

        if state == ConnectionState.PAIRING_CODE_READY:
            logger.info("Pairing code already displayed; stop() and start() to get a new one")
            return

        self._pairing_requested = False
        if state == ConnectionState.QR_READY and self._conn.qr_payload:
            if self._pairing_task is None or self._pairing_task.done():
                self._request_pairing_code(self._conn.qr_payload)
            return
        if not self._in_flight:
            await self._begin_connect()

    # ── Connect attempts ─────────────────────────────────────────────

    async def _begin_connect(self) -> None:
        self._cancel_retry()
        self._generation += 1
        generation = self._generation
        self._in_flight = True
        self._pairing_requested = False
        self._latest_qr = None

        auth = self._store.load()
        logger.info(
            "Opening session (attempt {}, {})",
            self._conn.reconnect_attempts,
            "stored credentials" if auth.registered else "no credentials",
        )
        self._transition(ConnectionState.CONNECTING, qr_cycles=0, next_retry_at=None)
        self._connect_task = self._spawn(self._connect(generation, auth), "connect")
        self._start_timeout_task = self._spawn(
            self._timer(self.session.start_timeout_s, StartTimedOut(generation=generation)),
            "start-timeout",
        )

    async def _connect(self, generation: int, auth: AuthState) -> None:
        try:
            await asyncio.wait_for(
                self._transport.connect(
                    auth,
                    partial(self._on_transport_event, generation),
                    pairing_mode=self._pairing_mode,
                ),
                timeout=self.session.connect_timeout_s,
            )
        except Exception as e:
            self._queue.put_nowait(ConnectFinished(generation=generation, error=e))
            return
        self._queue.put_nowait(ConnectFinished(generation=generation))

    async def _on_connect_finished(self, event: ConnectFinished) -> None:
        if not self._is_current(event.generation) or not self._in_flight:
            return
        self._connect_task = None
        if event.error is None:
            logger.debug("Session handshake started")
            return
        logger.warning(f"Connect failed: {event.error.__class__.__name__}: {event.error}")
        await self._fail_attempt(f"Connect failed: {event.error}")

    async def _fail_attempt(self, detail: str) -> None:
        await self._end_attempt()
        self._schedule_retry(RetryAction.RETRY_WITH_BACKOFF, detail)

    async def _end_attempt(self) -> None:
        self._generation += 1
        self._in_flight = False
        self._stop_keepalive()
        self._cancel_task("_start_timeout_task")
        self._cancel_task("_pairing_task")
        self._cancel_task("_connect_task")
        await self._close_transport()

    def _schedule_retry(self, action: RetryAction, detail: str) -> None:
        attempts = self._conn.reconnect_attempts + 1
        delay = self.policy.delay_for(action, attempts)
        changes: dict[str, Any] = {}

        match action:
            case RetryAction.CLEAR_CREDENTIALS_AND_RETRY:
                self._clear_credentials()
                state = ConnectionState.DISCONNECTED
                changes["self_identity"] = None
                changes["last_error"] = "Session expired. Re-pairing automatically..."
            case RetryAction.RETRY_AFTER_COOLDOWN:
                state = ConnectionState.DISCONNECTED
                changes["last_error"] = (
                    "Session conflict: another instance is using this number. "
                    f"Retrying in {delay:.0f}s."
                )
            case RetryAction.RETRY_IMMEDIATE:
                state = ConnectionState.CONNECTING
                changes["last_error"] = "Restarting session..."
            case _:
                state = ConnectionState.CONNECTING
                changes["last_error"] = f"Reconnecting... ({detail})"

        self._retry_token += 1
        token = self._retry_token
        self._retry_task = self._spawn(self._timer(delay, RetryDue(token=token)), "retry")
        logger.info(f"Retry {attempts} ({action.value}) in {delay:.1f}s")
        if self._telemetry is not None:
            self._telemetry.incr("reconnects_scheduled_total", labels=(("action", action.value),))
        self._transition(
            state,
            reconnect_attempts=attempts,
            retry_action=action,
            next_retry_at=self._wall_clock() + delay,
            **changes,
        )

    async def _on_retry_due(self, token: int) -> None:
        if token != self._retry_token or self._in_flight:
            return
        self._retry_task = None
        await self._begin_connect()

    def _cancel_retry(self) -> None:
        self._retry_token += 1
        self._cancel_task("_retry_task")
        self._conn.next_retry_at = None

    def _clear_credentials(self) -> None:
        try:
            self._store.clear()
        except OSError as e:
            logger.error(f"Failed to clear stored credentials: {e}")
        self._pairing_requested = False

    async def _close_transport(self) -> None:
        try:
            await asyncio.wait_for(self._transport.disconnect(), timeout=_TRANSPORT_CLOSE_TIMEOUT_S)
        except Exception as e:
            logger.warning(f"Transport close failed: {e.__class__.__name__}: {e}")

    # ── Keepalive ────────────────────────────────────────────────────

    def _start_keepalive(self) -> None:
        self._stop_keepalive()
        if not self.keepalive.enabled:
            return
        self._keepalive_task = self._spawn(self._keepalive_loop(self._generation), "keepalive")

    def _stop_keepalive(self) -> None:
        self._cancel_task("_keepalive_task")
        self._cancel_task("_probe_task")

    async def _keepalive_loop(self, generation: int) -> None:
        while True:
            await asyncio.sleep(self.keepalive.interval_s)
            self._queue.put_nowait(KeepaliveTick(generation=generation))

    async def _on_keepalive_tick(self, generation: int) -> None:
        if not self._is_current(generation) or self._conn.state != ConnectionState.CONNECTED:
            return
        last = self._conn.last_liveness_at or 0.0
        silence = self._clock() - last
        dead_after = self.keepalive.interval_s * self.keepalive.dead_after_intervals
        if silence >= dead_after:
            logger.error(f"Connection dead: no liveness signal for {silence:.0f}s; forcing reconnect")
            if self._telemetry is not None:
                self._telemetry.incr("dead_connections_total")
            await self._fail_attempt(f"no liveness for {silence:.0f}s")
            return
        if self._probe_task is None or self._probe_task.done():
            self._probe_task = self._spawn(self._probe(generation), "keepalive-probe")

    async def _probe(self, generation: int) -> None:
        try:
            await asyncio.wait_for(
                self._transport.send_presence("available"),
                timeout=self.keepalive.probe_timeout_s,
            )
        except Exception as e:
            self._queue.put_nowait(ProbeFinished(generation=generation, ok=False, error=e))
            return
        self._queue.put_nowait(ProbeFinished(generation=generation, ok=True))

    def _on_probe_finished(self, event: ProbeFinished) -> None:
        if not self._is_current(event.generation) or self._conn.state != ConnectionState.CONNECTED:
            return
        if event.ok:
            self._conn.last_liveness_at = self._clock()
            self._commit()
            return
        silence = self._clock() - (self._conn.last_liveness_at or 0.0)
        logger.warning(f"Keepalive probe failed ({silence:.0f}s since last liveness): {event.error}")

    # ── Tasks ────────────────────────────────────────────────────────

    async def _timer(self, delay: float, event: SupervisorEvent) -> None:
        await asyncio.sleep(delay)
        self._queue.put_nowait(event)

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task[None]:
        task = asyncio.create_task(coro, name=f"supervisor-{name}")
        self._tasks.add(task)
        task.add_done_callback(partial(self._on_task_done, self._generation, name))
        return task

    def _on_task_done(self, generation: int, name: str, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Supervisor task {name} failed: {exc}")
            self._queue.put_nowait(TaskFailed(generation=generation, name=name, error=exc))

    def _cancel_task(self, attr: str) -> None:
        task = getattr(self, attr)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        setattr(self, attr, None)

    # ── State ────────────────────────────────────────────────────────

    def _transition(self, state: ConnectionState, **changes: Any) -> None:
        previous = self._conn.state
        for key, value in changes.items():
            setattr(self._conn, key, value)
        self._conn.state = state
        if state != ConnectionState.QR_READY:
            self._conn.qr_payload = None
        if state != ConnectionState.PAIRING_CODE_READY:
            self._conn.pairing_code = None
        self._conn.updated_at = self._wall_clock()
        self._commit()

        if previous != state:
            logger.info(f"Connection state: {previous.value} -> {state.value}")
            if self._telemetry is not None:
                self._telemetry.incr("state_transitions_total", labels=(("to", state.value),))
        if self._telemetry is not None:
            for candidate in ConnectionState:
                self._telemetry.gauge(
                    "connection_state",
                    1.0 if candidate == state else 0.0,
                    labels=(("state", candidate.value),),
                )
            self._telemetry.gauge("reconnect_attempts", float(self._conn.reconnect_attempts))
        self._publish()

    def _commit(self) -> None:
        snapshot = self._conn.snapshot()
        with self._lock:
            self._snapshot = snapshot

    def _publish(self) -> None:
        if self._reporter is None:
            return
        try:
            self._reporter.publish(self.snapshot())
        except Exception as e:
            logger.warning(f"Status publish failed: {e}")
