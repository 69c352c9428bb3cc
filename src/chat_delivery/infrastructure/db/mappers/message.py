from __future__ import annotations

from chat_delivery.domain.entities.message import Message
from chat_delivery.infrastructure.db.models.message import MessageModel


def model_to_entity(model: MessageModel) -> Message:
    return Message(
        id=model.id,
        sender_id=model.sender_id,
        recipient_id=model.recipient_id,
        text=model.text,
        created_at=model.created_at,
    )
