"""Reconciliation of messages arriving from the fetch, poll and realtime paths."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable
from uuid import UUID

from chat_delivery.domain.entities.message import Message

logger = logging.getLogger(__name__)


def _by_created_at(message: Message) -> datetime:
    return message.created_at


@dataclass
class ConversationState:
    """Merged view of one conversation.

    Invariants after every method returns: ``messages`` is sorted ascending by
    ``created_at``, ``seen_ids`` holds exactly the ids in ``messages`` and
    ``high_watermark`` never moves backwards.

    Mutators return ``True`` when ``messages`` changed and a new snapshot
    should be published.
    """

    other_user: int | None = None
    messages: list[Message] = field(default_factory=list)
    seen_ids: set[UUID] = field(default_factory=set)
    high_watermark: datetime | None = None
    generation: int = 0

    def reset(self, other_user: int | None) -> int:
        """Start over for ``other_user`` and return the new generation."""
        self.other_user = other_user
        self.messages = []
        self.seen_ids = set()
        self.high_watermark = None
        self.generation += 1
        return self.generation

    def is_current(self, generation: int) -> bool:
        return generation == self.generation and self.other_user is not None

    def advance_watermark(self, ts: datetime) -> None:
        if self.high_watermark is None or ts > self.high_watermark:
            self.high_watermark = ts

    def merge(self, incoming: Iterable[Message]) -> bool:
        """Add every message whose id has not been seen yet."""
        added = False
        for message in incoming:
            if message.id in self.seen_ids:
                continue
            self.messages.append(message)
            self.seen_ids.add(message.id)
            added = True
        if added:
            self.messages.sort(key=_by_created_at)
            self.advance_watermark(self.messages[-1].created_at)
        return added

    def apply_create(self, message: Message) -> bool:
        if message.id in self.seen_ids:
            logger.debug("Create for already seen message %s ignored", message.id)
            return False
        return self.merge([message])

    def apply_update(self, message: Message, *, insert_missing: bool = True) -> bool:
        """Replace ``message`` in place.

        An update for an unknown id is treated as a late create when
        ``insert_missing`` is set. This can bring back a message whose delete
        was seen before a delayed update.
        """
        for idx, existing in enumerate(self.messages):
            if existing.id == message.id:
                self.messages[idx] = message
                return True
        if not insert_missing:
            logger.info("Update for unknown message %s ignored", message.id)
            return False
        return self.apply_create(message)

    def apply_delete(self, message_id: UUID | None) -> bool:
        if message_id is None:
            logger.warning("Delete event without a message id ignored")
            return False
        remaining = [m for m in self.messages if m.id != message_id]
        if len(remaining) == len(self.messages):
            return False
        self.messages = remaining
        self.seen_ids.discard(message_id)
        return True
