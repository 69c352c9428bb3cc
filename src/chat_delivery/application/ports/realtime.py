from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Protocol
from uuid import UUID

from chat_delivery.application.dto.query import MessageQuery
from chat_delivery.domain.entities.message import Message

OnMessageCallback = Callable[[Message], Coroutine[Any, Any, None]]
OnDeleteCallback = Callable[[UUID | None], Coroutine[Any, Any, None]]


@dataclass(frozen=True, slots=True)
class SubscriptionHandlers:
    on_create: OnMessageCallback
    on_update: OnMessageCallback
    on_delete: OnDeleteCallback


@dataclass(frozen=True, slots=True)
class SubscriptionHandle:
    """Ownership token for one live subscription."""

    query: MessageQuery
    id: UUID = field(default_factory=uuid.uuid4)


class RealtimeChannel(Protocol):
    async def subscribe(
        self,
        query: MessageQuery,
        handlers: SubscriptionHandlers,
    ) -> SubscriptionHandle:
        """Start delivering create/update/delete events matching ``query``.

        Raises if the subscription cannot be established.
        """
        ...

    async def unsubscribe(self, handle: SubscriptionHandle) -> None: ...
