"""
Duplicate detection for usage events.

The same request can show up in several overlapping log segments. Events are
only ever collapsed when both the message id and the request id match; an
event lacking either identifier gets a key unique to its source line and is
always kept.
"""

import logging
from typing import Iterable, Iterator, Set

from ai_usage_ledger.storage.models import UsageEvent

logger = logging.getLogger(__name__)


def identity_key(event: UsageEvent) -> str:
    """Identity used for duplicate detection and the store's unique key.

    ``message_id:request_id`` when both are present, otherwise
    ``source_file#line_number``. The fallback is deterministic so that
    re-inserting the same line is idempotent.
    """
    if event.message_id and event.request_id:
        return f"{event.message_id}:{event.request_id}"
    return f"{event.source_file}#{event.line_number}"


def has_identity(event: UsageEvent) -> bool:
    return bool(event.message_id and event.request_id)


class Deduplicator:
    """First-seen-wins filter over a stream of events."""

    def __init__(self):
        self._seen: Set[str] = set()
        self.kept = 0
        self.discarded = 0

    def accept(self, event: UsageEvent) -> bool:
        """Return True if the event is the first of its identity group."""
        key = identity_key(event)
        if key in self._seen:
            self.discarded += 1
            logger.debug("Discarding duplicate event %s from %s", key, event.source_file)
            return False
        self._seen.add(key)
        self.kept += 1
        return True

    def deduplicate(self, events: Iterable[UsageEvent]) -> Iterator[UsageEvent]:
        for event in events:
            if self.accept(event):
                yield event

    def reset(self) -> None:
        self._seen.clear()
        self.kept = 0
        self.discarded = 0
