"""WebSocket message envelope models."""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class WsInbound(BaseModel):
    """Client → Server."""

    type: str  # open | send | edit | delete | refresh | pause | resume | close | ping
    data: dict[str, Any] = {}


class WsOutbound(BaseModel):
    """Server → Client."""

    type: str  # messages.snapshot | error | pong
    data: dict[str, Any] = {}


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    sender_id: int
    recipient_id: int
    text: str
    created_at: datetime
