"""FastAPI dependency injection helpers."""
from __future__ import annotations

from typing import Callable

from fastapi import WebSocket

from chat_delivery.application.ports.auth import UserDirectory
from chat_delivery.config import settings
from chat_delivery.infrastructure.auth.hs256_directory import JwtUserDirectory
from chat_delivery.services.delivery_coordinator import MessageDeliveryCoordinator

CoordinatorFactory = Callable[[UserDirectory], MessageDeliveryCoordinator]


def authenticate(token: str) -> UserDirectory:
    """Raises AuthError for a bad token."""
    return JwtUserDirectory.from_token(token, settings.JWT_SECRET, settings.JWT_ALGORITHM)


def get_coordinator_factory(websocket: WebSocket) -> CoordinatorFactory:
    """One coordinator per connected UI surface, sharing the app's collaborators."""
    store = websocket.app.state.message_store
    channel = websocket.app.state.realtime_channel

    def _factory(directory: UserDirectory) -> MessageDeliveryCoordinator:
        return MessageDeliveryCoordinator(store, channel, directory)

    return _factory
