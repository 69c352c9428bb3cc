from __future__ import annotations

from enum import StrEnum


class ChangeKind(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class DeliveryState(StrEnum):
    IDLE = "idle"
    LOADING = "loading"
    LIVE = "live"
