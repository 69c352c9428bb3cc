from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from chat_delivery.domain.entities.message import Message
from chat_delivery.domain.value_objects.conversation_key import ConversationKey


@dataclass(frozen=True, slots=True)
class MessageQuery:
    """Messages of one conversation, optionally newer than ``after``.

    Results are always ordered ascending by ``created_at``.
    """

    key: ConversationKey
    after: datetime | None = None
    limit: int | None = None

    def matches(self, message: Message) -> bool:
        if not self.key.contains(message):
            return False
        return self.after is None or message.created_at > self.after
