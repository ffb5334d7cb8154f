"""Redis implementation of OAuthStorage.

Key layout (all values are JSON strings):

  oauth:client:{client_id}            client registration, no TTL
  oauth:user:{username}               resource owner, no TTL
  oauth:code:{code}                   authorization code
  oauth:code:{code}:used              consumption marker
  oauth:access:{token}                access token
  oauth:refresh:{token}               refresh token
  oauth:refresh:{token}:revoked       revocation marker

Creates use SET NX, so an existing token string is never overwritten.
Consumption writes a separate marker key with SET NX: Redis executes
commands one at a time, so exactly one caller's SET NX succeeds.

Codes and tokens get a TTL of their remaining lifetime plus a short
grace period.  Expiry is still decided by the engine on read; the TTL
only keeps dead keys from piling up.
"""

from __future__ import annotations

import json
from typing import Any

from oauth2_server.models.authorization_code import AuthorizationCode
from oauth2_server.models.client import OAuthClient
from oauth2_server.models.token import AccessToken, RefreshToken
from oauth2_server.models.user import User
from oauth2_server.repos.oauth_storage import DuplicateClientError, DuplicateTokenError
from oauth2_server.services import password_service, token_codec

_PREFIX = "oauth:"
_GRACE_SEC = 60


def _ttl(expires_at: int | None) -> int | None:
    if expires_at is None:
        return None
    return max(expires_at - token_codec.now(), 0) + _GRACE_SEC


def _optional_set(values: list[str] | None) -> frozenset[str] | None:
    return frozenset(values) if values is not None else None


class RedisOAuthStorage:
    """Satisfies the OAuthStorage Protocol using Redis.

    Expects a client created with decode_responses=True.
    """

    def __init__(self, redis_client: Any) -> None:
        self._redis = redis_client

    async def _create(self, key: str, payload: dict, ttl: int | None, what: str) -> None:
        created = await self._redis.set(key, json.dumps(payload), nx=True, ex=ttl)
        if not created:
            raise DuplicateTokenError(what)

    async def _load(self, key: str) -> dict | None:
        raw = await self._redis.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    # --- clients ---

    async def add_client(self, client: OAuthClient) -> None:
        created = await self._redis.set(
            f"{_PREFIX}client:{client.client_id}",
            json.dumps(_client_to_dict(client)),
            nx=True,
        )
        if not created:
            raise DuplicateClientError(client.client_id)

    async def get_client(self, client_id: str) -> OAuthClient | None:
        data = await self._load(f"{_PREFIX}client:{client_id}")
        if data is None:
            return None
        return OAuthClient(
            client_id=data["client_id"],
            client_secret_hash=data["client_secret_hash"],
            redirect_uris=tuple(data["redirect_uris"]),
            grant_types=_optional_set(data["grant_types"]),
            allowed_scopes=_optional_set(data["allowed_scopes"]),
        )

    async def update_client_secret(self, client_id: str, secret_hash: str) -> bool:
        key = f"{_PREFIX}client:{client_id}"
        data = await self._load(key)
        if data is None:
            return False
        data["client_secret_hash"] = secret_hash
        # XX: only overwrite, never resurrect a client deleted meanwhile
        return bool(await self._redis.set(key, json.dumps(data), xx=True))

    async def check_client_credentials(
        self, client_id: str, client_secret: str | None
    ) -> bool:
        client = await self.get_client(client_id)
        if client is None:
            return False
        return client.verify_secret(client_secret)

    async def check_restricted_grant_type(self, client_id: str, grant_type: str) -> bool:
        client = await self.get_client(client_id)
        return client is not None and client.allows_grant_type(grant_type)

    async def get_redirect_uri(self, client_id: str) -> str | None:
        client = await self.get_client(client_id)
        if client is None or not client.redirect_uris:
            return None
        return client.redirect_uris[0]

    # --- authorization codes ---

    async def create_authorization_code(
        self,
        code: str,
        client_id: str,
        user_id: str,
        redirect_uri: str,
        scope: str,
        expires_at: int,
    ) -> None:
        payload = {
            "client_id": client_id,
            "user_id": user_id,
            "redirect_uri": redirect_uri,
            "scope": scope,
            "expires_at": expires_at,
        }
        await self._create(
            f"{_PREFIX}code:{code}", payload, _ttl(expires_at), "authorization code"
        )

    async def get_authorization_code(self, code: str) -> AuthorizationCode | None:
        raw, used_at = await self._redis.mget(
            f"{_PREFIX}code:{code}", f"{_PREFIX}code:{code}:used"
        )
        if raw is None:
            return None
        data = json.loads(raw)
        return AuthorizationCode(
            code=code,
            client_id=data["client_id"],
            user_id=data["user_id"],
            redirect_uri=data["redirect_uri"],
            scope=data["scope"],
            expires_at=data["expires_at"],
            used_at=int(used_at) if used_at is not None else None,
        )

    async def mark_authorization_code_used(self, code: str) -> bool:
        data = await self._load(f"{_PREFIX}code:{code}")
        if data is None:
            return False
        marked = await self._redis.set(
            f"{_PREFIX}code:{code}:used",
            str(token_codec.now()),
            nx=True,
            ex=_ttl(data["expires_at"]),
        )
        return bool(marked)

    # --- access tokens ---

    async def create_access_token(
        self,
        token: str,
        client_id: str,
        user_id: str | None,
        scope: str,
        expires_at: int,
        refresh_token: str | None = None,
    ) -> None:
        payload = {
            "client_id": client_id,
            "user_id": user_id,
            "scope": scope,
            "expires_at": expires_at,
            "refresh_token": refresh_token,
        }
        await self._create(
            f"{_PREFIX}access:{token}", payload, _ttl(expires_at), "access token"
        )

    async def get_access_token(self, token: str) -> AccessToken | None:
        data = await self._load(f"{_PREFIX}access:{token}")
        if data is None:
            return None
        return AccessToken(token=token, **data)

    async def revoke_access_token(self, token: str) -> bool:
        return bool(await self._redis.delete(f"{_PREFIX}access:{token}"))

    # --- refresh tokens ---

    async def create_refresh_token(
        self,
        token: str,
        client_id: str,
        user_id: str | None,
        scope: str,
        expires_at: int | None,
    ) -> None:
        payload = {
            "client_id": client_id,
            "user_id": user_id,
            "scope": scope,
            "expires_at": expires_at,
        }
        await self._create(
            f"{_PREFIX}refresh:{token}", payload, _ttl(expires_at), "refresh token"
        )

    async def get_refresh_token(self, token: str) -> RefreshToken | None:
        raw, revoked_at = await self._redis.mget(
            f"{_PREFIX}refresh:{token}", f"{_PREFIX}refresh:{token}:revoked"
        )
        if raw is None:
            return None
        return RefreshToken(
            token=token,
            revoked_at=int(revoked_at) if revoked_at is not None else None,
            **json.loads(raw),
        )

    async def revoke_refresh_token(self, token: str) -> bool:
        data = await self._load(f"{_PREFIX}refresh:{token}")
        if data is None:
            return False
        marked = await self._redis.set(
            f"{_PREFIX}refresh:{token}:revoked",
            str(token_codec.now()),
            nx=True,
            ex=_ttl(data["expires_at"]),
        )
        return bool(marked)

    # --- resource owners ---

    async def add_user(self, user: User) -> None:
        payload = {
            "id": str(user.id),
            "password_hash": user.password_hash,
            "is_active": user.is_active,
        }
        created = await self._redis.set(
            f"{_PREFIX}user:{user.username}", json.dumps(payload), nx=True
        )
        if not created:
            raise ValueError("username already exists")

    async def check_user_credentials(self, username: str, password: str) -> str | None:
        data = await self._load(f"{_PREFIX}user:{username.strip().lower()}")
        if data is None or not data["is_active"]:
            password_service.verify_password(password, None)
            return None
        if not password_service.verify_password(password, data["password_hash"]):
            return None
        return data["id"]

    async def commit(self) -> None:
        # every command above is applied by Redis as it is sent
        return None


def _client_to_dict(client: OAuthClient) -> dict[str, Any]:
    return {
        "client_id": client.client_id,
        "client_secret_hash": client.client_secret_hash,
        "redirect_uris": list(client.redirect_uris),
        "grant_types": (
            sorted(client.grant_types) if client.grant_types is not None else None
        ),
        "allowed_scopes": (
            sorted(client.allowed_scopes) if client.allowed_scopes is not None else None
        ),
    }
