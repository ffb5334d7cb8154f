from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class AuthorizationCode:
    code: str
    client_id: str
    user_id: str
    redirect_uri: str
    scope: str  # space-delimited
    expires_at: int
    used_at: int | None = None

    @property
    def is_used(self) -> bool:
        return self.used_at is not None
