"""Redis Pub/Sub: publish side + per-conversation realtime subscriptions."""
from __future__ import annotations

import asyncio
import logging

import redis.asyncio as aioredis

from chat_delivery.application.dto.query import MessageQuery
from chat_delivery.application.ports.realtime import SubscriptionHandle, SubscriptionHandlers
from chat_delivery.domain.events.message_changed import MessageChanged
from chat_delivery.domain.value_objects.enums import ChangeKind
from chat_delivery.infrastructure.bus.serializer import deserialize_event, serialize_event

logger = logging.getLogger(__name__)


class RedisPubSubPublisher:
    """Implements application.ports.bus.EventPublisher."""

    def __init__(self, redis: aioredis.Redis) -> None:
        self._redis = redis

    async def publish(self, channel: str, event: MessageChanged) -> None:
        await self._redis.publish(channel, serialize_event(event))


class RedisRealtimeChannel:
    """Implements application.ports.realtime.RealtimeChannel.

    Each subscription gets its own Pub/Sub connection and listener task.
    Events that do not match the subscription query are dropped here.
    """

    def __init__(self, redis: aioredis.Redis, channel: str) -> None:
        self._redis = redis
        self._channel = channel
        self._subscriptions: dict[
            SubscriptionHandle, tuple[asyncio.Task[None], aioredis.client.PubSub]
        ] = {}

    async def subscribe(
        self,
        query: MessageQuery,
        handlers: SubscriptionHandlers,
    ) -> SubscriptionHandle:
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(self._channel)
        except BaseException:
            await pubsub.aclose()
            raise

        handle = SubscriptionHandle(query=query)
        task = asyncio.create_task(
            self._listen(pubsub, query, handlers),
            name=f"realtime-{handle.id}",
        )
        self._subscriptions[handle] = (task, pubsub)
        logger.debug("Realtime subscription %s opened on channel=%s", handle.id, self._channel)
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        entry = self._subscriptions.pop(handle, None)
        if entry is None:
            return
        task, pubsub = entry
        task.cancel()
        try:
            await asyncio.wait([task])
            await pubsub.unsubscribe(self._channel)
        except Exception:
            logger.warning("Unsubscribe failed for %s", handle.id, exc_info=True)
        finally:
            await pubsub.aclose()
        logger.debug("Realtime subscription %s closed", handle.id)

    async def close(self) -> None:
        for handle in list(self._subscriptions):
            await self.unsubscribe(handle)

    async def _listen(
        self,
        pubsub: aioredis.client.PubSub,
        query: MessageQuery,
        handlers: SubscriptionHandlers,
    ) -> None:
        try:
            async for raw in pubsub.listen():
                if raw["type"] != "message":
                    continue
                try:
                    event = deserialize_event(raw["data"])
                    await _dispatch(event, query, handlers)
                except Exception:
                    logger.exception("Error processing realtime message")
        except Exception:
            logger.exception("Realtime listener on %s stopped", self._channel)


async def _dispatch(
    event: MessageChanged,
    query: MessageQuery,
    handlers: SubscriptionHandlers,
) -> None:
    if event.kind == ChangeKind.DELETE:
        # Id-only deletes cannot be filtered by participants; let the owner decide.
        if event.message is None or query.key.contains(event.message):
            await handlers.on_delete(event.message_id)
        return

    message = event.message
    if message is None or not query.matches(message):
        return
    if event.kind == ChangeKind.CREATE:
        await handlers.on_create(message)
    else:
        await handlers.on_update(message)
