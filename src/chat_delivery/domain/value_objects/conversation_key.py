from __future__ import annotations

from dataclasses import dataclass

from chat_delivery.domain.entities.message import Message


@dataclass(frozen=True, slots=True)
class ConversationKey:
    """Unordered pair of the two users in a direct conversation.

    Build it with :meth:`of` so that ``of(a, b) == of(b, a)``.
    """

    low: int
    high: int

    @classmethod
    def of(cls, user_a: int, user_b: int) -> ConversationKey:
        return cls(low=min(user_a, user_b), high=max(user_a, user_b))

    def contains(self, message: Message) -> bool:
        return ConversationKey.of(message.sender_id, message.recipient_id) == self
