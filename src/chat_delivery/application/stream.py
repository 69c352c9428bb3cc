"""Observable holder for the ordered message list of a conversation."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Sequence

from chat_delivery.domain.entities.message import Message

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Snapshot:
    """The message list as published, labelled with its conversation.

    ``other_user`` is ``None`` when no conversation is open.
    """

    other_user: int | None = None
    messages: tuple[Message, ...] = ()


class MessageStream:
    """Latest-value stream of message snapshots.

    Only the owning coordinator publishes. Every reader of :meth:`observe`
    gets the current snapshot first and then each later one, in order.
    """

    def __init__(self) -> None:
        self._value = Snapshot()
        self._queues: set[asyncio.Queue[Snapshot]] = set()

    @property
    def value(self) -> Snapshot:
        return self._value

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    def publish(self, other_user: int | None, messages: Sequence[Message]) -> None:
        self._value = Snapshot(other_user=other_user, messages=tuple(messages))
        for queue in self._queues:
            queue.put_nowait(self._value)
        logger.debug(
            "Published snapshot of %d messages (other_user=%s) to %d readers",
            len(self._value.messages), other_user, len(self._queues),
        )

    async def observe(self) -> AsyncIterator[Snapshot]:
        queue: asyncio.Queue[Snapshot] = asyncio.Queue()
        self._queues.add(queue)
        try:
            yield self._value
            while True:
                yield await queue.get()
        finally:
            self._queues.discard(queue)
