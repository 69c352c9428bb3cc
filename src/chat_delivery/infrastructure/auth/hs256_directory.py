from __future__ import annotations

import jwt

from chat_delivery.application.exceptions import AuthError


class JwtUserDirectory:
    """User directory for a caller identified by an HS256-signed JWT."""

    def __init__(self, user_id: int) -> None:
        self._user_id = user_id

    @classmethod
    def from_token(cls, token: str, secret: str, algorithm: str = "HS256") -> JwtUserDirectory:
        try:
            payload = jwt.decode(token, secret, algorithms=[algorithm])
            return cls(int(payload["sub"]))
        except (jwt.PyJWTError, KeyError, ValueError) as exc:
            raise AuthError(f"invalid token: {exc}") from exc

    def current_user(self) -> int:
        return self._user_id
