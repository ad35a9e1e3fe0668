"""Inbound message routing: filter, reply, send, remember what we sent."""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from collections.abc import Callable

from loguru import logger

from homebot.bridge.ledger import SentMessageLedger
from homebot.core.models import InboundMessage
from homebot.core.ports import MessagingTransport, ReplyPort
from homebot.telemetry.base import TelemetryPort
from homebot.utils.helpers import identity_user

INBOUND_DEDUPE_TTL_S = 20 * 60

_SYSTEM_SUFFIXES = ("@broadcast", "@newsletter")


def is_system_jid(jid: str) -> bool:
    """Broadcast lists, status updates and channels are never chat input."""
    return not jid or jid.endswith(_SYSTEM_SUFFIXES)


class RecentInbound:
    """Inbound message keys seen in the last ``ttl_s`` seconds, capped at ``max_entries``.

    The TTL is fixed, so insertion order is also expiry order and pruning only
    ever looks at the front.
    """

    def __init__(self, ttl_s: float, max_entries: int, clock: Callable[[], float]):
        self._ttl_s = ttl_s
        self._max_entries = max(1, max_entries)
        self._clock = clock
        self._expiry: OrderedDict[str, float] = OrderedDict()
        self.evictions = 0

    def seen(self, chat_jid: str, message_id: str) -> bool:
        """True if this message was already seen; otherwise remember it."""
        now = self._clock()
        while self._expiry and next(iter(self._expiry.values())) <= now:
            self._expiry.popitem(last=False)

        key = f"{chat_jid}:{message_id}"
        if key in self._expiry:
            return True
        if len(self._expiry) >= self._max_entries:
            self._expiry.popitem(last=False)
            self.evictions += 1
            if self.evictions == 1 or self.evictions % 500 == 0:
                logger.warning(f"Inbound dedupe cache full ({self._max_entries}); {self.evictions} evicted early")
        self._expiry[key] = now + self._ttl_s
        return False


class MessageRouter:
    """Turns genuine inbound chat text into replies.

    ``dispatch`` is called from the supervisor loop and returns immediately;
    each message is handled in its own task so a slow reply never delays
    state transitions.
    """

    def __init__(
        self,
        transport: MessagingTransport,
        reply: ReplyPort,
        ledger: SentMessageLedger,
        *,
        identity_provider: Callable[[], str | None],
        telemetry: TelemetryPort | None = None,
        typing: bool = True,
        presence_timeout_s: float = 6.0,
        max_dedupe_entries: int = 5000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._transport = transport
        self._reply = reply
        self.ledger = ledger
        self._identity_provider = identity_provider
        self._telemetry = telemetry
        self._typing = typing
        self._presence_timeout_s = presence_timeout_s
        self._recent = RecentInbound(INBOUND_DEDUPE_TTL_S, max_dedupe_entries, clock)
        self._tasks: set[asyncio.Task[str]] = set()

    def dispatch(self, message: InboundMessage) -> None:
        task = asyncio.create_task(self.handle(message))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[str]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Inbound message task failed: {exc}")

    async def drain(self) -> None:
        """Wait for in-flight message tasks."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    async def handle(self, message: InboundMessage) -> str:
        """Route one message and return the outcome label."""
        outcome = await self._route(message)
        if self._telemetry is not None:
            self._telemetry.incr("messages_total", labels=(("outcome", outcome),))
        return outcome

    async def _route(self, message: InboundMessage) -> str:
        if is_system_jid(message.chat_jid):
            return "system"

        if message.from_me:
            return self._classify_own_message(message)

        if self._recent.seen(message.chat_jid, message.message_id):
            return "duplicate"

        text = message.text.strip()
        if not text:
            logger.debug(f"Ignoring non-text message {message.message_id} from {message.sender_jid}")
            return "empty"

        sender = identity_user(message.sender_jid)
        logger.info(
            "Message from {} ({}): {!r}",
            sender,
            message.display_name or "?",
            text[:80],
        )

        await self._presence("composing", message.chat_jid)
        try:
            reply = await self._reply.generate_reply(sender, text, message.display_name)
            try:
                sent_id = await self._transport.send_text(message.chat_jid, reply)
            except Exception as e:
                logger.error(f"Failed to send reply to {sender}: {e.__class__.__name__}: {e}")
                return "send_failed"
            self.ledger.record(sent_id)
        finally:
            await self._presence("paused", message.chat_jid)

        logger.info(f"Reply sent to {sender} ({len(reply)} chars)")
        return "replied"

    def _classify_own_message(self, message: InboundMessage) -> str:
        if message.message_id in self.ledger:
            return "echo"

        # Heuristic: a direct-chat message flagged as ours whose sender is not
        # the connected identity was typed on another device of the account.
        own = identity_user(self._identity_provider())
        sender = identity_user(message.sender_jid)
        if not message.is_group and own and sender and sender != own:
            logger.info(f"Message from linked device {sender} (not treated as chat input)")
            return "linked_device"
        return "from_me"

    async def _presence(self, state: str, jid: str) -> None:
        if not self._typing:
            return
        try:
            await asyncio.wait_for(
                self._transport.send_presence(state, jid),
                timeout=self._presence_timeout_s,
            )
        except Exception as e:
            logger.debug(
                "Presence update failed ({}) for {}: {} {}",
                state,
                jid,
                e.__class__.__name__,
                e,
            )

