"""Token endpoint logic: one validate-then-issue pipeline per grant type.

Supported grants (RFC 6749):

  authorization_code  redeem a single-use code from the authorize flow
  client_credentials  confidential client acting on its own behalf
  refresh_token       trade a refresh token for a new access token
  password            resource owner credentials, for trusted clients

Every request goes through the same gate first:

  1. grant_type present and supported
  2. client authenticated (secret checked in constant time by storage)
  3. client allowed to use this grant type

then the grant-specific checks, then issuance.  The engine keeps no state
between calls; everything it knows comes from OAuthStorage, so any number
of instances can run side by side.

Replay protection does not live here.  The engine asks storage to consume
a code or refresh token and trusts the boolean: storage guarantees only
one concurrent caller gets True.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from oauth2_server.core.config import OAuthConfig
from oauth2_server.core.errors import (
    InsufficientScope,
    InvalidClient,
    InvalidGrant,
    InvalidRequest,
    InvalidScope,
    InvalidToken,
    OAuth2Error,
    ServerError,
    UnauthorizedClient,
    UnsupportedGrantType,
)
from oauth2_server.core.metrics import (
    GRANT_FAILURES,
    TOKEN_COLLISIONS,
    TOKENS_ISSUED,
    TOKENS_REVOKED,
)
from oauth2_server.models.client import GRANT_TYPES, OAuthClient
from oauth2_server.models.token import AccessToken
from oauth2_server.repos.oauth_storage import DuplicateTokenError, OAuthStorage
from oauth2_server.services import token_codec

logger = logging.getLogger(__name__)

TOKEN_TYPE = "bearer"


@dataclass(frozen=True, slots=True)
class TokenRequest:
    grant_type: str | None
    client_id: str | None
    client_secret: str | None = None
    code: str | None = None
    redirect_uri: str | None = None
    refresh_token: str | None = None
    username: str | None = None
    password: str | None = None
    scope: str | None = None


@dataclass(frozen=True, slots=True)
class TokenGrant:
    access_token: str
    expires_in: int
    token_type: str = TOKEN_TYPE
    refresh_token: str | None = None
    scope: str | None = None

    def as_dict(self) -> dict[str, str | int]:
        body: dict[str, str | int] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }
        if self.refresh_token is not None:
            body["refresh_token"] = self.refresh_token
        if self.scope:
            body["scope"] = self.scope
        return body


def parse_scope(scope: str | None) -> frozenset[str]:
    return frozenset(scope.split()) if scope else frozenset()


def format_scope(scopes: frozenset[str]) -> str:
    # sorted so the same grant always serializes the same way
    return " ".join(sorted(scopes))


def check_supported_scopes(config: OAuthConfig, scopes: frozenset[str]) -> None:
    if config.supported_scopes is None:
        return
    unsupported = scopes - config.supported_scopes
    if unsupported:
        raise InvalidScope(f"unsupported scope: {format_scope(unsupported)}")


def resolve_client_scope(
    config: OAuthConfig, client: OAuthClient, requested: str | None
) -> str:
    """Requested scope validated against the server and narrowed to the client."""
    scopes = parse_scope(requested)
    check_supported_scopes(config, scopes)
    granted = client.allowed_scope(scopes)
    if scopes and not granted:
        raise InvalidScope("none of the requested scopes are allowed for this client")
    return format_scope(granted)


async def create_unique(
    kind: str,
    create: Callable[[str], Awaitable[None]],
    *,
    generate: Callable[[], str] = token_codec.generate,
    attempts: int = 3,
) -> str:
    """Generate a token string and persist it, regenerating on collision.

    ``create`` receives the candidate string and must raise
    DuplicateTokenError when storage already holds it.
    """
    for attempt in range(1, attempts + 1):
        value = generate()
        try:
            await create(value)
        except DuplicateTokenError:
            TOKEN_COLLISIONS.labels(kind=kind).inc()
            logger.warning(
                "Generated %s token collided  attempt=%d/%d", kind, attempt, attempts
            )
            continue
        return value
    raise ServerError(f"could not generate a unique {kind} token")


@contextmanager
def server_errors(operation: str) -> Iterator[None]:
    """Let OAuth2Error through; turn anything else into ServerError."""
    try:
        yield
    except OAuth2Error:
        raise
    except Exception as exc:
        logger.exception("Unexpected failure during %s", operation)
        raise ServerError(f"{operation} failed") from exc


class GrantEngine:
    def __init__(
        self,
        storage: OAuthStorage,
        config: OAuthConfig | None = None,
        *,
        clock: Callable[[], int] = token_codec.now,
        generate: Callable[[], str] = token_codec.generate,
    ) -> None:
        self._storage = storage
        self._config = config or OAuthConfig()
        self._clock = clock
        self._generate = generate
        self._handlers: dict[
            str, Callable[[OAuthClient, TokenRequest], Awaitable[TokenGrant]]
        ] = {
            "authorization_code": self._grant_authorization_code,
            "client_credentials": self._grant_client_credentials,
            "refresh_token": self._grant_refresh_token,
            "password": self._grant_password,
        }

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    async def token(self, request: TokenRequest) -> TokenGrant:
        """Run the pipeline for request.grant_type and return the issued tokens.

        Raises an OAuth2Error subclass on every failure; storage or codec
        exceptions surface as ServerError.
        """
        grant_label = (
            request.grant_type if request.grant_type in GRANT_TYPES else "unsupported"
        )
        context = {"client_id": request.client_id, "grant_type": grant_label}
        try:
            with server_errors("token request"):
                grant = await self._dispatch(request)
        except OAuth2Error as exc:
            GRANT_FAILURES.labels(grant_type=grant_label, error=exc.error).inc()
            logger.warning(
                "Token request rejected  client_id=%s grant_type=%s error=%s",
                request.client_id,
                grant_label,
                exc.error,
                extra={**context, "error": exc.error},
            )
            raise

        TOKENS_ISSUED.labels(grant_type=grant_label).inc()
        logger.info(
            "Token issued  client_id=%s grant_type=%s scope=%r refresh=%s",
            request.client_id,
            grant_label,
            grant.scope or "",
            grant.refresh_token is not None,
            extra=context,
        )
        return grant

    async def _dispatch(self, request: TokenRequest) -> TokenGrant:
        if not request.grant_type:
            raise InvalidRequest("grant_type is required")
        handler = self._handlers.get(request.grant_type)
        if handler is None:
            raise UnsupportedGrantType(
                f"grant_type {request.grant_type!r} is not supported"
            )

        client = await self.authenticate_client(request.client_id, request.client_secret)

        if not await self._storage.check_restricted_grant_type(
            client.client_id, request.grant_type
        ):
            raise UnauthorizedClient(
                f"client is not allowed to use grant_type {request.grant_type}"
            )
        return await handler(client, request)

    async def authenticate_client(
        self, client_id: str | None, client_secret: str | None
    ) -> OAuthClient:
        if not client_id:
            raise InvalidClient("client authentication required")
        if not await self._storage.check_client_credentials(client_id, client_secret):
            raise InvalidClient("client authentication failed")
        client = await self._storage.get_client(client_id)
        if client is None:
            # credentials checked out but the client vanished in between
            raise InvalidClient("client authentication failed")
        return client

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    async def _grant_authorization_code(
        self, client: OAuthClient, request: TokenRequest
    ) -> TokenGrant:
        if not request.code:
            raise InvalidRequest("code is required")

        record = await self._storage.get_authorization_code(request.code)
        if record is None:
            raise InvalidGrant("authorization code not found")
        if record.client_id != client.client_id:
            raise InvalidGrant("authorization code was issued to another client")
        if token_codec.is_expired(record.expires_at, self._clock()):
            raise InvalidGrant("authorization code expired")

        # Omitting redirect_uri is only unambiguous when the client has a
        # single registered URI and the code was issued for it.
        if request.redirect_uri is not None:
            redirect_ok = request.redirect_uri == record.redirect_uri
        else:
            redirect_ok = client.redirect_uris == (record.redirect_uri,)
        if not redirect_ok:
            raise InvalidGrant("redirect_uri does not match the authorization request")

        if record.is_used or not await self._storage.mark_authorization_code_used(
            record.code
        ):
            raise InvalidGrant("authorization code already used")

        return await self._issue(
            client,
            record.user_id,
            record.scope,
            with_refresh=self._config.issue_refresh_tokens
            and client.allows_grant_type("refresh_token"),
        )

    async def _grant_client_credentials(
        self, client: OAuthClient, request: TokenRequest
    ) -> TokenGrant:
        if client.is_public:
            raise UnauthorizedClient("public clients cannot use client_credentials")
        scope = resolve_client_scope(self._config, client, request.scope)
        # no user, and nothing to refresh: the client can simply ask again
        return await self._issue(client, None, scope, with_refresh=False)

    async def _grant_refresh_token(
        self, client: OAuthClient, request: TokenRequest
    ) -> TokenGrant:
        if not request.refresh_token:
            raise InvalidRequest("refresh_token is required")

        record = await self._storage.get_refresh_token(request.refresh_token)
        if record is None:
            raise InvalidGrant("refresh token not found")
        if record.client_id != client.client_id:
            raise InvalidGrant("refresh token was issued to another client")
        if record.is_revoked:
            raise InvalidGrant("refresh token revoked")
        if token_codec.is_expired(record.expires_at, self._clock()):
            raise InvalidGrant("refresh token expired")

        scope = record.scope
        requested = parse_scope(request.scope)
        if requested:
            if not requested <= record.scopes():
                raise InvalidScope("requested scope exceeds the original grant")
            scope = format_scope(requested)

        if not self._config.refresh_token_rotation:
            return await self._issue(
                client,
                record.user_id,
                scope,
                with_refresh=False,
                existing_refresh=record.token,
            )

        if not await self._storage.revoke_refresh_token(record.token):
            raise InvalidGrant("refresh token already used")
        TOKENS_REVOKED.labels(kind="refresh").inc()

        # The new refresh token keeps the original scope (RFC 6749 section 6);
        # only the access token is narrowed.
        return await self._issue(
            client,
            record.user_id,
            scope,
            with_refresh=True,
            refresh_scope=record.scope,
        )

    async def _grant_password(
        self, client: OAuthClient, request: TokenRequest
    ) -> TokenGrant:
        if not request.username or not request.password:
            raise InvalidRequest("username and password are required")

        user_id = await self._storage.check_user_credentials(
            request.username, request.password
        )
        if user_id is None:
            raise InvalidGrant("invalid resource owner credentials")

        scope = resolve_client_scope(self._config, client, request.scope)
        return await self._issue(
            client,
            user_id,
            scope,
            with_refresh=client.allows_grant_type("refresh_token"),
        )

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    async def _issue(
        self,
        client: OAuthClient,
        user_id: str | None,
        scope: str,
        *,
        with_refresh: bool,
        refresh_scope: str | None = None,
        existing_refresh: str | None = None,
    ) -> TokenGrant:
        now = self._clock()
        refresh_token = existing_refresh

        if with_refresh:
            ttl = self._config.refresh_token_ttl
            refresh_expires = token_codec.expiry(now, ttl) if ttl else None
            refresh_scope = scope if refresh_scope is None else refresh_scope

            async def _create_refresh(value: str) -> None:
                await self._storage.create_refresh_token(
                    value, client.client_id, user_id, refresh_scope, refresh_expires
                )

            refresh_token = await create_unique(
                "refresh",
                _create_refresh,
                generate=self._generate,
                attempts=self._config.token_generation_attempts,
            )

        access_expires = token_codec.expiry(now, self._config.access_token_ttl)

        async def _create_access(value: str) -> None:
            await self._storage.create_access_token(
                value,
                client.client_id,
                user_id,
                scope,
                access_expires,
                refresh_token=refresh_token,
            )

        access_token = await create_unique(
            "access",
            _create_access,
            generate=self._generate,
            attempts=self._config.token_generation_attempts,
        )

        return TokenGrant(
            access_token=access_token,
            expires_in=token_codec.expires_in(access_expires, now),
            refresh_token=refresh_token,
            scope=scope or None,
        )

    # ------------------------------------------------------------------
    # Resource server and revocation
    # ------------------------------------------------------------------

    async def verify_access_token(
        self, token: str | None, required_scope: str | None = None
    ) -> AccessToken:
        """Look up a bearer token for a protected resource.

        Expired tokens are rejected here even while storage still holds
        them.  Raises InvalidToken or InsufficientScope.
        """
        if not token:
            raise InvalidToken("access token required")
        with server_errors("access token lookup"):
            record = await self._storage.get_access_token(token)
        if record is None:
            raise InvalidToken("access token not found")
        if token_codec.is_expired(record.expires_at, self._clock()):
            raise InvalidToken("access token expired")

        missing = parse_scope(required_scope) - record.scopes()
        if missing:
            raise InsufficientScope(f"token lacks scope: {format_scope(missing)}")
        return record

    async def revoke(
        self,
        token: str | None,
        client_id: str | None,
        client_secret: str | None,
        token_type_hint: str | None = None,
    ) -> None:
        """Revoke an access or refresh token owned by the calling client.

        Revoking an access token also revokes the refresh token issued with
        it.  Unknown tokens and tokens of other clients are ignored, as
        RFC 7009 section 2.2 asks.
        """
        with server_errors("token revocation"):
            client = await self.authenticate_client(client_id, client_secret)
            if not token:
                raise InvalidRequest("token is required")

            kinds = ("access", "refresh")
            if token_type_hint == "refresh_token":
                kinds = ("refresh", "access")

            for kind in kinds:
                if kind == "access":
                    access = await self._storage.get_access_token(token)
                    if access is None or access.client_id != client.client_id:
                        continue
                    if await self._storage.revoke_access_token(token):
                        TOKENS_REVOKED.labels(kind="access").inc()
                    if access.refresh_token and await self._storage.revoke_refresh_token(
                        access.refresh_token
                    ):
                        TOKENS_REVOKED.labels(kind="refresh").inc()
                    logger.info("Access token revoked  client_id=%s", client.client_id)
                    return

                refresh = await self._storage.get_refresh_token(token)
                if refresh is None or refresh.client_id != client.client_id:
                    continue
                if await self._storage.revoke_refresh_token(token):
                    TOKENS_REVOKED.labels(kind="refresh").inc()
                logger.info("Refresh token revoked  client_id=%s", client.client_id)
                return

        logger.info(
            "Revocation request for unknown token ignored  client_id=%s", client_id
        )
