"""FastAPI dependencies: storage selection, engine wiring, request identity.

Storage backend, chosen once from configuration:

  DATABASE_URL set  -> SqlOAuthStorage over a session opened for this
                       request; handlers that write call commit_storage()
                       before responding, teardown rolls back on error
  REDIS_URL set     -> RedisOAuthStorage over the shared pool
  neither           -> the process-wide InMemoryOAuthStorage

The engine and the flow are cheap, stateless wrappers, so they are built
per request around whichever storage the request got.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncIterator
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from oauth2_server.core.config import SETTINGS, OAuthConfig
from oauth2_server.core.errors import InvalidToken
from oauth2_server.db import engine as db_engine
from oauth2_server.db.redis import redis_pool
from oauth2_server.models.client import OAuthClient
from oauth2_server.models.token import AccessToken
from oauth2_server.models.user import User
from oauth2_server.repos.oauth_storage import InMemoryOAuthStorage, OAuthStorage
from oauth2_server.repos.redis_oauth_storage import RedisOAuthStorage
from oauth2_server.repos.sql_oauth_storage import SqlOAuthStorage
from oauth2_server.services import password_service, session_service
from oauth2_server.services.authorization_flow import AuthorizationFlow
from oauth2_server.services.grant_engine import GrantEngine, server_errors

logger = logging.getLogger(__name__)

OAUTH_CONFIG = OAuthConfig.from_settings(SETTINGS)

# Used only when neither DATABASE_URL nor REDIS_URL is configured
memory_storage = InMemoryOAuthStorage()

bearer_scheme = HTTPBearer(auto_error=False)


async def get_storage() -> AsyncIterator[OAuthStorage]:
    if db_engine.async_session_factory is not None:
        async with db_engine.session_scope() as session:
            yield SqlOAuthStorage(session)
    elif redis_pool is not None:
        yield RedisOAuthStorage(redis_pool)
    else:
        yield memory_storage


StorageDep = Annotated[OAuthStorage, Depends(get_storage)]


async def commit_storage(storage: OAuthStorage) -> None:
    """Make this request's writes durable before its response is built.

    session_scope commits in dependency teardown, which FastAPI runs after
    the response has been sent.  A code or token must never reach the
    client ahead of its row.
    """
    with server_errors("storage commit"):
        await storage.commit()


def get_grant_engine(storage: StorageDep) -> GrantEngine:
    return GrantEngine(storage, OAUTH_CONFIG)


def get_authorization_flow(storage: StorageDep) -> AuthorizationFlow:
    return AuthorizationFlow(storage, OAUTH_CONFIG)


def get_interactive_user(request: Request) -> str | None:
    """Return user_id from the session cookie, or None if not logged in.

    Used by /oauth/authorize; the caller decides what to do with None
    (redirect to /login).
    """
    cookie = request.cookies.get("session")
    if not cookie:
        return None
    try:
        claims = session_service.decode_session_token(cookie)
    except jwt.ExpiredSignatureError:
        logger.debug("Session cookie expired")
        return None
    except jwt.InvalidTokenError:
        logger.debug("Invalid session cookie")
        return None
    return claims["sub"]


def require_scope(scope: str | None = None):
    """Dependency factory: demand a valid bearer token, optionally with a scope.

    Usage: Depends(require_scope("profile"))
    Raises InvalidToken / InsufficientScope, rendered by the OAuth error
    handler with a WWW-Authenticate header.
    """

    async def _guard(
        credentials: Annotated[
            HTTPAuthorizationCredentials | None, Depends(bearer_scheme)
        ],
        engine: Annotated[GrantEngine, Depends(get_grant_engine)],
    ) -> AccessToken:
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise InvalidToken("bearer token required")
        return await engine.verify_access_token(credentials.credentials, scope)

    return _guard


def require_admin(
    x_admin_key: Annotated[str | None, Header()] = None,
) -> None:
    """Guard for client registration.

    Open when ADMIN_API_KEY is unset (dev), otherwise the X-Admin-Key
    header must match.
    """
    expected = SETTINGS.admin_api_key
    if expected is None:
        return
    if x_admin_key is None or not hmac.compare_digest(x_admin_key, expected):
        logger.warning("Admin request rejected: bad or missing X-Admin-Key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin key required",
        )


DEMO_USERNAME = "demo"
DEMO_PASSWORD = "demo-password"
DEMO_CLIENT_ID = "demo-client"
DEMO_CLIENT_SECRET = "demo-secret"
DEMO_REDIRECT_URI = "http://localhost:8080/callback"


async def seed_demo_data(storage: OAuthStorage) -> None:
    """Seed a demo user and client for local development. Skip if present."""
    if await storage.get_client(DEMO_CLIENT_ID) is None:
        await storage.add_client(
            OAuthClient.new(
                client_id=DEMO_CLIENT_ID,
                client_secret=DEMO_CLIENT_SECRET,
                redirect_uris=(DEMO_REDIRECT_URI,),
            )
        )
    try:
        await storage.add_user(
            User.new(
                username=DEMO_USERNAME,
                password_hash=password_service.hash_password(DEMO_PASSWORD),
            )
        )
    except ValueError:
        return
    logger.info(
        "Seeded demo data  username=%s client_id=%s", DEMO_USERNAME, DEMO_CLIENT_ID
    )
