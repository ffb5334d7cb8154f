"""Storage contract for the authorization server.

OAuthStorage is the capability set a persistence backend must provide.
The grant engine and the authorization flow receive an OAuthStorage
instance and never know which backend is behind it:

  InMemoryOAuthStorage   this module; tests and local dev
  SqlOAuthStorage        sql_oauth_storage.py; PostgreSQL / SQLite
  RedisOAuthStorage      redis_oauth_storage.py; key-value

Two guarantees every backend owes the engine:

  1. Create operations never silently overwrite.  A token string that
     already exists raises DuplicateTokenError; the engine generates a
     new string and tries again.
  2. Consumption is atomic.  mark_authorization_code_used and
     revoke_refresh_token return True for exactly one caller, however
     many race on the same string.  This is what stops code and refresh
     token replay.

Expiry is NOT enforced here: expired records are still returned and the
engine rejects them on read.

commit() makes everything written so far durable.  The HTTP layer calls it
before a response leaves, so a client never holds a code or token that
storage does not.  Backends that write through (memory, Redis) treat it as
a no-op.
"""

from __future__ import annotations

import dataclasses
from typing import Protocol

from oauth2_server.models.authorization_code import AuthorizationCode
from oauth2_server.models.client import OAuthClient
from oauth2_server.models.token import AccessToken, RefreshToken
from oauth2_server.models.user import User
from oauth2_server.services import password_service, token_codec


class DuplicateTokenError(Exception):
    """A create operation hit an existing token string."""


class DuplicateClientError(Exception):
    """add_client was called with a client_id that is already registered."""


class OAuthStorage(Protocol):
    # --- clients ---
    async def add_client(self, client: OAuthClient) -> None: ...
    async def get_client(self, client_id: str) -> OAuthClient | None: ...
    async def update_client_secret(self, client_id: str, secret_hash: str) -> bool: ...
    async def check_client_credentials(
        self, client_id: str, client_secret: str | None
    ) -> bool: ...
    async def check_restricted_grant_type(
        self, client_id: str, grant_type: str
    ) -> bool: ...
    async def get_redirect_uri(self, client_id: str) -> str | None: ...

    # --- authorization codes ---
    async def create_authorization_code(
        self,
        code: str,
        client_id: str,
        user_id: str,
        redirect_uri: str,
        scope: str,
        expires_at: int,
    ) -> None: ...
    async def get_authorization_code(self, code: str) -> AuthorizationCode | None: ...
    async def mark_authorization_code_used(self, code: str) -> bool: ...

    # --- access tokens ---
    async def create_access_token(
        self,
        token: str,
        client_id: str,
        user_id: str | None,
        scope: str,
        expires_at: int,
        refresh_token: str | None = None,
    ) -> None: ...
    async def get_access_token(self, token: str) -> AccessToken | None: ...
    async def revoke_access_token(self, token: str) -> bool: ...

    # --- refresh tokens ---
    async def create_refresh_token(
        self,
        token: str,
        client_id: str,
        user_id: str | None,
        scope: str,
        expires_at: int | None,
    ) -> None: ...
    async def get_refresh_token(self, token: str) -> RefreshToken | None: ...
    async def revoke_refresh_token(self, token: str) -> bool: ...

    # --- resource owners ---
    async def add_user(self, user: User) -> None: ...
    async def check_user_credentials(self, username: str, password: str) -> str | None: ...

    # --- unit of work ---
    async def commit(self) -> None: ...


class InMemoryOAuthStorage:
    """Dict-backed OAuthStorage.

    Every method body runs without an await between its read and its
    write, so on a single event loop each operation is atomic.  State is
    per-process: two API instances do not see each other's tokens.
    """

    def __init__(self) -> None:
        self._clients: dict[str, OAuthClient] = {}
        self._codes: dict[str, AuthorizationCode] = {}
        self._access_tokens: dict[str, AccessToken] = {}
        self._refresh_tokens: dict[str, RefreshToken] = {}
        self._users: dict[str, User] = {}

    def clear(self) -> None:
        self._clients.clear()
        self._codes.clear()
        self._access_tokens.clear()
        self._refresh_tokens.clear()
        self._users.clear()

    async def add_client(self, client: OAuthClient) -> None:
        if client.client_id in self._clients:
            raise DuplicateClientError(client.client_id)
        self._clients[client.client_id] = client

    async def get_client(self, client_id: str) -> OAuthClient | None:
        return self._clients.get(client_id)

    async def update_client_secret(self, client_id: str, secret_hash: str) -> bool:
        client = self._clients.get(client_id)
        if client is None:
            return False
        self._clients[client_id] = dataclasses.replace(
            client, client_secret_hash=secret_hash
        )
        return True

    async def check_client_credentials(
        self, client_id: str, client_secret: str | None
    ) -> bool:
        client = self._clients.get(client_id)
        if client is None:
            return False
        return client.verify_secret(client_secret)

    async def check_restricted_grant_type(self, client_id: str, grant_type: str) -> bool:
        client = self._clients.get(client_id)
        return client is not None and client.allows_grant_type(grant_type)

    async def get_redirect_uri(self, client_id: str) -> str | None:
        client = self._clients.get(client_id)
        if client is None or not client.redirect_uris:
            return None
        return client.redirect_uris[0]

    async def create_authorization_code(
        self,
        code: str,
        client_id: str,
        user_id: str,
        redirect_uri: str,
        scope: str,
        expires_at: int,
    ) -> None:
        if code in self._codes:
            raise DuplicateTokenError("authorization code")
        self._codes[code] = AuthorizationCode(
            code=code,
            client_id=client_id,
            user_id=user_id,
            redirect_uri=redirect_uri,
            scope=scope,
            expires_at=expires_at,
        )

    async def get_authorization_code(self, code: str) -> AuthorizationCode | None:
        return self._codes.get(code)

    async def mark_authorization_code_used(self, code: str) -> bool:
        record = self._codes.get(code)
        if record is None or record.used_at is not None:
            return False
        self._codes[code] = dataclasses.replace(record, used_at=token_codec.now())
        return True

    async def create_access_token(
        self,
        token: str,
        client_id: str,
        user_id: str | None,
        scope: str,
        expires_at: int,
        refresh_token: str | None = None,
    ) -> None:
        if token in self._access_tokens:
            raise DuplicateTokenError("access token")
        self._access_tokens[token] = AccessToken(
            token=token,
            client_id=client_id,
            user_id=user_id,
            scope=scope,
            expires_at=expires_at,
            refresh_token=refresh_token,
        )

    async def get_access_token(self, token: str) -> AccessToken | None:
        return self._access_tokens.get(token)

    async def revoke_access_token(self, token: str) -> bool:
        return self._access_tokens.pop(token, None) is not None

    async def create_refresh_token(
        self,
        token: str,
        client_id: str,
        user_id: str | None,
        scope: str,
        expires_at: int | None,
    ) -> None:
        if token in self._refresh_tokens:
            raise DuplicateTokenError("refresh token")
        self._refresh_tokens[token] = RefreshToken(
            token=token,
            client_id=client_id,
            user_id=user_id,
            scope=scope,
            expires_at=expires_at,
        )

    async def get_refresh_token(self, token: str) -> RefreshToken | None:
        return self._refresh_tokens.get(token)

    async def revoke_refresh_token(self, token: str) -> bool:
        record = self._refresh_tokens.get(token)
        if record is None or record.revoked_at is not None:
            return False
        self._refresh_tokens[token] = dataclasses.replace(
            record, revoked_at=token_codec.now()
        )
        return True

    async def add_user(self, user: User) -> None:
        if user.username in self._users:
            raise ValueError("username already exists")
        self._users[user.username] = user

    async def check_user_credentials(self, username: str, password: str) -> str | None:
        user = self._users.get(username.strip().lower())
        if user is None or not user.is_active:
            password_service.verify_password(password, None)
            return None
        if not password_service.verify_password(password, user.password_hash):
            return None
        return str(user.id)

    async def commit(self) -> None:
        """Writes land in the dicts immediately; nothing to flush."""
