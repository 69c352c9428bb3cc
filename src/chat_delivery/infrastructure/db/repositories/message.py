from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import and_, delete, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chat_delivery.application.dto.query import MessageQuery
from chat_delivery.application.exceptions import NotFoundError
from chat_delivery.application.ports.bus import EventPublisher
from chat_delivery.domain.entities.message import Message
from chat_delivery.domain.events.message_changed import MessageChanged
from chat_delivery.domain.value_objects.enums import ChangeKind
from chat_delivery.infrastructure.db.mappers import message as mapper
from chat_delivery.infrastructure.db.models.message import MessageModel

logger = logging.getLogger(__name__)


def _pair_clause(query: MessageQuery):
    a, b = query.key.low, query.key.high
    return or_(
        and_(MessageModel.sender_id == a, MessageModel.recipient_id == b),
        and_(MessageModel.sender_id == b, MessageModel.recipient_id == a),
    )


class SqlAlchemyMessageStore:
    """Implements application.ports.store.MessageStore.

    Every committed change is handed to ``publisher`` (when given) so realtime
    subscribers learn about it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: EventPublisher | None = None,
        channel: str = "chat.messages",
    ) -> None:
        self._session_factory = session_factory
        self._publisher = publisher
        self._channel = channel

    async def create_message(self, sender_id: int, recipient_id: int, text: str) -> Message:
        stmt = (
            insert(MessageModel)
            .values(sender_id=sender_id, recipient_id=recipient_id, text=text)
            .returning(MessageModel)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            message = mapper.model_to_entity(result.scalar_one())
            await session.commit()
        await self._notify(MessageChanged.for_message(ChangeKind.CREATE, message))
        return message

    async def query_messages(self, query: MessageQuery) -> list[Message]:
        stmt = (
            select(MessageModel)
            .where(_pair_clause(query))
            .order_by(MessageModel.created_at.asc())
        )
        if query.after is not None:
            stmt = stmt.where(MessageModel.created_at > query.after)
        if query.limit is not None:
            stmt = stmt.limit(query.limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [mapper.model_to_entity(m) for m in result.scalars().all()]

    async def update_text(self, message_id: UUID, text: str, *, sender_id: int) -> Message:
        stmt = (
            update(MessageModel)
            .where(MessageModel.id == message_id, MessageModel.sender_id == sender_id)
            .values(text=text)
            .returning(MessageModel)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                raise NotFoundError(f"message {message_id} not found")
            message = mapper.model_to_entity(model)
            await session.commit()
        await self._notify(MessageChanged.for_message(ChangeKind.UPDATE, message))
        return message

    async def delete(self, message_id: UUID, *, sender_id: int) -> Message:
        stmt = (
            delete(MessageModel)
            .where(MessageModel.id == message_id, MessageModel.sender_id == sender_id)
            .returning(MessageModel)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                raise NotFoundError(f"message {message_id} not found")
            message = mapper.model_to_entity(model)
            await session.commit()
        await self._notify(MessageChanged.for_message(ChangeKind.DELETE, message))
        return message

    async def _notify(self, event: MessageChanged) -> None:
        if self._publisher is None:
            return
        try:
            await self._publisher.publish(self._channel, event)
        except Exception:
            logger.exception("Failed to publish %s for message %s", event.kind, event.message_id)
