from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from chat_delivery.domain.entities.message import Message
from chat_delivery.domain.value_objects.enums import ChangeKind


@dataclass(frozen=True, slots=True)
class MessageChanged:
    """A create/update/delete notification for a single message.

    Delete notifications may arrive without the full message; ``message_id``
    is ``None`` when the payload carried no usable id.
    """

    kind: ChangeKind
    message: Message | None
    message_id: UUID | None

    @classmethod
    def for_message(cls, kind: ChangeKind, message: Message) -> MessageChanged:
        return cls(kind=kind, message=message, message_id=message.id)
