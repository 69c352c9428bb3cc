from __future__ import annotations

from typing import Protocol

from chat_delivery.domain.events.message_changed import MessageChanged


class EventPublisher(Protocol):
    async def publish(self, channel: str, event: MessageChanged) -> None: ...
