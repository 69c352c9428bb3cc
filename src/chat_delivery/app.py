from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis
from fastapi import FastAPI

from chat_delivery.api.v1.routers import chat_ws, health
from chat_delivery.config import settings
from chat_delivery.infrastructure.bus.redis_pubsub import RedisPubSubPublisher, RedisRealtimeChannel
from chat_delivery.infrastructure.db.repositories.message import SqlAlchemyMessageStore
from chat_delivery.infrastructure.db.session import AsyncSessionLocal, engine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle."""
    app.state.redis = aioredis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
    )
    logger.info("Redis connection pool created")

    app.state.message_store = SqlAlchemyMessageStore(
        AsyncSessionLocal,
        RedisPubSubPublisher(app.state.redis),
        settings.REDIS_PUBSUB_CHANNEL,
    )
    app.state.realtime_channel = RedisRealtimeChannel(
        app.state.redis,
        settings.REDIS_PUBSUB_CHANNEL,
    )

    yield

    await app.state.realtime_channel.close()
    await app.state.redis.aclose()
    await engine.dispose()
    logger.info("Redis and database connections closed")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Chat Delivery Service",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(health.router)
    app.include_router(chat_ws.router)

    return app
