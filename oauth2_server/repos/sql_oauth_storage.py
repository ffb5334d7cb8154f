"""SQLAlchemy implementation of OAuthStorage.

One instance wraps one request-scoped AsyncSession; the caller owns the
transaction (db/engine.py: session_scope).  Only commit() commits.

Duplicate detection: inserts are INSERT statements run inside a
SAVEPOINT, so a primary-key violation rolls back only that insert and
leaves the request transaction usable for the engine's retry.  They
bypass the session's identity map, so the database alone decides what a
duplicate is.

Atomic consumption: a conditional UPDATE (``WHERE used_at IS NULL``)
lets the database pick the single winner.  Under concurrent redemption
on PostgreSQL the second UPDATE blocks on the first one's row lock, then
re-evaluates the WHERE clause after it commits and matches zero rows.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from oauth2_server.db.engine import Base
from oauth2_server.db.tables import (
    AccessTokenRow,
    AuthorizationCodeRow,
    OAuthClientRow,
    RefreshTokenRow,
    UserRow,
)
from oauth2_server.models.authorization_code import AuthorizationCode
from oauth2_server.models.client import OAuthClient
from oauth2_server.models.token import AccessToken, RefreshToken
from oauth2_server.models.user import User
from oauth2_server.repos.oauth_storage import DuplicateClientError, DuplicateTokenError
from oauth2_server.services import password_service, token_codec


class SqlOAuthStorage:
    """Satisfies the OAuthStorage Protocol using SQLAlchemy."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _insert(
        self, model: type[Base], values: dict[str, Any], error: Exception
    ) -> None:
        try:
            async with self._session.begin_nested():
                await self._session.execute(insert(model).values(**values))
        except IntegrityError:
            raise error from None

    # --- clients ---

    async def add_client(self, client: OAuthClient) -> None:
        values = {
            "client_id": client.client_id,
            "client_secret_hash": client.client_secret_hash,
            "redirect_uris": list(client.redirect_uris),
            "grant_types": (
                sorted(client.grant_types) if client.grant_types is not None else None
            ),
            "allowed_scopes": (
                sorted(client.allowed_scopes)
                if client.allowed_scopes is not None
                else None
            ),
        }
        await self._insert(OAuthClientRow, values, DuplicateClientError(client.client_id))

    async def get_client(self, client_id: str) -> OAuthClient | None:
        stmt = select(OAuthClientRow).where(OAuthClientRow.client_id == client_id)
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _row_to_client(row)

    async def update_client_secret(self, client_id: str, secret_hash: str) -> bool:
        stmt = (
            update(OAuthClientRow)
            .where(OAuthClientRow.client_id == client_id)
            .values(client_secret_hash=secret_hash)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

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
        values = {
            "code": code,
            "client_id": client_id,
            "user_id": user_id,
            "redirect_uri": redirect_uri,
            "scope": scope,
            "expires_at": expires_at,
            "used_at": None,
        }
        await self._insert(
            AuthorizationCodeRow, values, DuplicateTokenError("authorization code")
        )

    async def get_authorization_code(self, code: str) -> AuthorizationCode | None:
        stmt = select(AuthorizationCodeRow).where(AuthorizationCodeRow.code == code)
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return AuthorizationCode(
            code=row.code,
            client_id=row.client_id,
            user_id=row.user_id,
            redirect_uri=row.redirect_uri,
            scope=row.scope,
            expires_at=row.expires_at,
            used_at=row.used_at,
        )

    async def mark_authorization_code_used(self, code: str) -> bool:
        stmt = (
            update(AuthorizationCodeRow)
            .where(AuthorizationCodeRow.code == code)
            .where(AuthorizationCodeRow.used_at.is_(None))
            .values(used_at=token_codec.now())
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

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
        values = {
            "token": token,
            "client_id": client_id,
            "user_id": user_id,
            "scope": scope,
            "expires_at": expires_at,
            "refresh_token": refresh_token,
        }
        await self._insert(AccessTokenRow, values, DuplicateTokenError("access token"))

    async def get_access_token(self, token: str) -> AccessToken | None:
        stmt = select(AccessTokenRow).where(AccessTokenRow.token == token)
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return AccessToken(
            token=row.token,
            client_id=row.client_id,
            user_id=row.user_id,
            scope=row.scope,
            expires_at=row.expires_at,
            refresh_token=row.refresh_token,
        )

    async def revoke_access_token(self, token: str) -> bool:
        stmt = delete(AccessTokenRow).where(AccessTokenRow.token == token)
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    # --- refresh tokens ---

    async def create_refresh_token(
        self,
        token: str,
        client_id: str,
        user_id: str | None,
        scope: str,
        expires_at: int | None,
    ) -> None:
        values = {
            "token": token,
            "client_id": client_id,
            "user_id": user_id,
            "scope": scope,
            "expires_at": expires_at,
            "revoked_at": None,
        }
        await self._insert(RefreshTokenRow, values, DuplicateTokenError("refresh token"))

    async def get_refresh_token(self, token: str) -> RefreshToken | None:
        stmt = select(RefreshTokenRow).where(RefreshTokenRow.token == token)
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return RefreshToken(
            token=row.token,
            client_id=row.client_id,
            user_id=row.user_id,
            scope=row.scope,
            expires_at=row.expires_at,
            revoked_at=row.revoked_at,
        )

    async def revoke_refresh_token(self, token: str) -> bool:
        stmt = (
            update(RefreshTokenRow)
            .where(RefreshTokenRow.token == token)
            .where(RefreshTokenRow.revoked_at.is_(None))
            .values(revoked_at=token_codec.now())
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    # --- resource owners ---

    async def add_user(self, user: User) -> None:
        values = {
            "id": user.id,
            "username": user.username,
            "password_hash": user.password_hash,
            "is_active": user.is_active,
        }
        await self._insert(UserRow, values, ValueError("username already exists"))

    async def check_user_credentials(self, username: str, password: str) -> str | None:
        stmt = select(UserRow).where(UserRow.username == username.strip().lower())
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None or not row.is_active:
            password_service.verify_password(password, None)
            return None
        if not password_service.verify_password(password, row.password_hash):
            return None
        return str(row.id)

    # --- unit of work ---

    async def commit(self) -> None:
        """Commit the request transaction now instead of at session teardown.

        session_scope still commits (a no-op by then) or rolls back on exit.
        """
        await self._session.commit()


def _row_to_client(row: OAuthClientRow) -> OAuthClient:
    return OAuthClient(
        client_id=row.client_id,
        client_secret_hash=row.client_secret_hash,
        redirect_uris=tuple(row.redirect_uris) if row.redirect_uris else (),
        grant_types=frozenset(row.grant_types) if row.grant_types is not None else None,
        allowed_scopes=(
            frozenset(row.allowed_scopes) if row.allowed_scopes is not None else None
        ),
    )
