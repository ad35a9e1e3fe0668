"""Bounded record of message ids this process sent."""

from __future__ import annotations

from collections import OrderedDict


class SentMessageLedger:
    """Recency-ordered set of outbound message ids, used to spot own echoes.

    When the ledger grows past ``max_entries`` it keeps only the ``trim_to``
    most recent ids. This is an approximation, not an exactly-once guarantee:
    an echo that arrives after its id was trimmed is not recognised as ours.
    The router still drops every ``from_me`` event, so the worst case is a
    debug log line rather than a reply loop.
    """

    def __init__(self, max_entries: int = 500, trim_to: int = 250):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        if not 0 <= trim_to <= max_entries:
            raise ValueError("trim_to must be between 0 and max_entries")
        self.max_entries = max_entries
        self.trim_to = trim_to
        self._ids: OrderedDict[str, None] = OrderedDict()
        self.trims = 0

    def record(self, message_id: str | None) -> None:
        if not message_id:
            return
        self._ids[message_id] = None
        self._ids.move_to_end(message_id)
        if len(self._ids) > self.max_entries:
            while len(self._ids) > self.trim_to:
                self._ids.popitem(last=False)
            self.trims += 1

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)
