from __future__ import annotations

from typing import Protocol


class UserDirectory(Protocol):
    def current_user(self) -> int: ...
