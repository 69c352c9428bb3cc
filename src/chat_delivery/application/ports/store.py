from __future__ import annotations

from typing import Protocol
from uuid import UUID

from chat_delivery.application.dto.query import MessageQuery
from chat_delivery.domain.entities.message import Message


class MessageStore(Protocol):
    async def create_message(
        self,
        sender_id: int,
        recipient_id: int,
        text: str,
    ) -> Message:
        """Persist a message. The store assigns ``id`` and ``created_at``."""
        ...

    async def query_messages(self, query: MessageQuery) -> list[Message]: ...

    async def update_text(self, message_id: UUID, text: str, *, sender_id: int) -> Message:
        """Raises NotFoundError unless ``sender_id`` wrote the message."""
        ...

    async def delete(self, message_id: UUID, *, sender_id: int) -> Message:
        """Raises NotFoundError unless ``sender_id`` wrote the message."""
        ...
