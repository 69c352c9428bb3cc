from __future__ import annotations

import json
from datetime import datetime
from typing import Any
from uuid import UUID

from chat_delivery.domain.entities.message import Message
from chat_delivery.domain.events.message_changed import MessageChanged
from chat_delivery.domain.value_objects.enums import ChangeKind

_EVENT_NAMES: dict[ChangeKind, str] = {
    ChangeKind.CREATE: "message.created",
    ChangeKind.UPDATE: "message.updated",
    ChangeKind.DELETE: "message.deleted",
}
_EVENT_KINDS = {name: kind for kind, name in _EVENT_NAMES.items()}


class _Encoder(json.JSONEncoder):
    def default(self, o: object) -> Any:
        if isinstance(o, UUID):
            return str(o)
        if isinstance(o, datetime):
            return o.isoformat()
        return super().default(o)


def _message_to_data(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "sender_id": message.sender_id,
        "recipient_id": message.recipient_id,
        "text": message.text,
        "created_at": message.created_at,
    }


def _message_from_data(data: dict[str, Any]) -> Message:
    return Message(
        id=UUID(data["id"]),
        sender_id=int(data["sender_id"]),
        recipient_id=int(data["recipient_id"]),
        text=data["text"],
        created_at=datetime.fromisoformat(data["created_at"]),
    )


def _parse_id(raw: Any) -> UUID | None:
    if not raw:
        return None
    try:
        return UUID(str(raw))
    except ValueError:
        return None


def serialize_event(event: MessageChanged) -> str:
    data: dict[str, Any] = {"id": event.message_id}
    if event.message is not None:
        data = _message_to_data(event.message)
    envelope = {"event": _EVENT_NAMES[event.kind], "data": data}
    return json.dumps(envelope, cls=_Encoder)


def deserialize_event(raw: str | bytes) -> MessageChanged:
    """Decode an envelope.

    Create and update envelopes must carry a full message. A delete envelope
    may carry only an id; an unusable id decodes to ``message_id=None``.
    Raises ``ValueError``/``KeyError`` for anything else malformed.
    """
    envelope = json.loads(raw)
    kind = _EVENT_KINDS.get(envelope["event"])
    if kind is None:
        raise ValueError(f"unknown event {envelope['event']!r}")
    data = envelope.get("data") or {}

    if kind == ChangeKind.DELETE:
        message_id = _parse_id(data.get("id"))
        message = None
        if message_id is not None and "created_at" in data:
            message = _message_from_data(data)
        return MessageChanged(kind=kind, message=message, message_id=message_id)

    message = _message_from_data(data)
    return MessageChanged.for_message(kind, message)
