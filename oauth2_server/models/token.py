from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class AccessToken:
    token: str
    client_id: str
    user_id: str | None  # None for client_credentials
    scope: str
    expires_at: int
    # refresh token issued alongside this one, revoked together with it
    refresh_token: str | None = None

    def scopes(self) -> frozenset[str]:
        return frozenset(self.scope.split())


@dataclass(frozen=True, slots=True)
class RefreshToken:
    token: str
    client_id: str
    user_id: str | None
    scope: str
    expires_at: int | None  # None: never expires
    revoked_at: int | None = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def scopes(self) -> frozenset[str]:
        return frozenset(self.scope.split())
