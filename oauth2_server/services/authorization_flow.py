"""Interactive authorization-code flow, in two stateless phases.

Phase 1, get_authorize_params(): validate the incoming authorize request
and hand back the parameter set the front end renders into a consent
form (as hidden fields).

Phase 2, finish_client_authorization(): the front end posts the user's
decision together with the echoed parameters.  We keep nothing between
the phases, so phase 2 re-runs every phase 1 check on the echoed values.
A tampered redirect_uri fails again exactly as it would have the first
time; it is never trusted because it came back from our own form.

Error routing (RFC 6749 section 4.1.2.1): until client_id and
redirect_uri are verified, errors carry no redirect_uri and must be shown
to the user directly.  After that point errors carry the verified
redirect_uri and state and go back to the client.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from oauth2_server.core.config import OAuthConfig
from oauth2_server.core.errors import (
    AccessDenied,
    InvalidClient,
    InvalidRequest,
    InvalidScope,
    OAuth2Error,
    RedirectUriMismatch,
    UnauthorizedClient,
    UnsupportedResponseType,
    append_query,
)
from oauth2_server.core.metrics import AUTHORIZATION_DECISIONS
from oauth2_server.repos.oauth_storage import OAuthStorage
from oauth2_server.services import token_codec
from oauth2_server.services.grant_engine import (
    create_unique,
    resolve_client_scope,
    server_errors,
)

logger = logging.getLogger(__name__)

SUPPORTED_RESPONSE_TYPES = ("code",)


@dataclass(frozen=True, slots=True)
class AuthorizeParams:
    """A validated authorize request.

    redirect_uri is always filled in, with the client's single registered
    URI when the request omitted it.
    """

    response_type: str
    client_id: str
    redirect_uri: str
    state: str | None
    scope: str

    def as_form_fields(self) -> dict[str, str]:
        """Fields for the consent form, echoed back in phase 2."""
        fields = {
            "response_type": self.response_type,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
        }
        if self.state is not None:
            fields["state"] = self.state
        return fields


class AuthorizationFlow:
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

    async def get_authorize_params(
        self,
        *,
        response_type: str | None,
        client_id: str | None,
        redirect_uri: str | None = None,
        state: str | None = None,
        scope: str | None = None,
    ) -> AuthorizeParams:
        """Validate an authorize request (phase 1).

        Raises OAuth2Error; check ``is_redirectable`` before sending the
        user agent anywhere.
        """
        with server_errors("authorize request validation"):
            return await self._validate(
                response_type=response_type,
                client_id=client_id,
                redirect_uri=redirect_uri,
                state=state,
                scope=scope,
            )

    async def _validate(
        self,
        *,
        response_type: str | None,
        client_id: str | None,
        redirect_uri: str | None,
        state: str | None,
        scope: str | None,
    ) -> AuthorizeParams:
        # --- shown to the user: nothing about the client is trusted yet ---
        if not client_id:
            raise InvalidRequest("client_id is required")

        client = await self._storage.get_client(client_id)
        if client is None:
            logger.warning("Authorize request for unknown client_id=%s", client_id)
            raise InvalidClient("unknown client_id")

        if redirect_uri:
            if redirect_uri not in client.redirect_uris:
                logger.warning(
                    "Authorize redirect_uri not registered  client_id=%s", client_id
                )
                raise RedirectUriMismatch(
                    "redirect_uri does not match a registered redirect URI"
                )
        else:
            if len(client.redirect_uris) != 1:
                raise RedirectUriMismatch(
                    "redirect_uri is required when the client does not have "
                    "exactly one registered redirect URI"
                )
            redirect_uri = await self._storage.get_redirect_uri(client_id)
            if redirect_uri is None:
                raise RedirectUriMismatch("client has no registered redirect URI")

        # --- redirect_uri verified: errors go back to the client ---
        back = {"redirect_uri": redirect_uri, "state": state}

        if response_type not in SUPPORTED_RESPONSE_TYPES:
            raise UnsupportedResponseType(
                f"response_type must be one of: {', '.join(SUPPORTED_RESPONSE_TYPES)}",
                **back,
            )
        if not client.allows_grant_type("authorization_code"):
            raise UnauthorizedClient(
                "client is not allowed to use the authorization code grant", **back
            )
        try:
            granted_scope = resolve_client_scope(self._config, client, scope)
        except InvalidScope as exc:
            raise InvalidScope(exc.description, **back) from None
        if self._config.enforce_state and not state:
            raise InvalidRequest("state is required", **back)

        return AuthorizeParams(
            response_type=response_type,
            client_id=client_id,
            redirect_uri=redirect_uri,
            state=state,
            scope=granted_scope,
        )

    async def finish_client_authorization(
        self,
        is_authorized: bool,
        user_id: str,
        params: dict[str, str | None],
    ) -> str:
        """Turn the user's consent decision into the client redirect URL (phase 2).

        ``params`` are the fields echoed back from the consent form.
        """
        validated = await self.get_authorize_params(
            response_type=params.get("response_type"),
            client_id=params.get("client_id"),
            redirect_uri=params.get("redirect_uri"),
            state=params.get("state"),
            scope=params.get("scope"),
        )

        if not is_authorized:
            AUTHORIZATION_DECISIONS.labels(decision="denied").inc()
            logger.info(
                "Authorization denied by user  client_id=%s user_id=%s",
                validated.client_id,
                user_id,
            )
            return AccessDenied(
                redirect_uri=validated.redirect_uri, state=validated.state
            ).redirect_url()

        if not user_id:
            # an authenticated user is a precondition, not a client error
            raise ValueError("user_id is required to grant authorization")

        expires_at = token_codec.expiry(self._clock(), self._config.auth_code_ttl)

        async def _create_code(value: str) -> None:
            await self._storage.create_authorization_code(
                value,
                validated.client_id,
                user_id,
                validated.redirect_uri,
                validated.scope,
                expires_at,
            )

        try:
            with server_errors("authorization code issuance"):
                code = await create_unique(
                    "code",
                    _create_code,
                    generate=self._generate,
                    attempts=self._config.token_generation_attempts,
                )
        except OAuth2Error as exc:
            # redirect_uri is verified, so even server errors go to the client
            exc.redirect_uri = validated.redirect_uri
            exc.state = validated.state
            raise

        AUTHORIZATION_DECISIONS.labels(decision="granted").inc()
        logger.info(
            "Authorization code issued  client_id=%s user_id=%s scope=%r",
            validated.client_id,
            user_id,
            validated.scope,
        )

        query = {"code": code}
        if validated.state is not None:
            query["state"] = validated.state
        return append_query(validated.redirect_uri, query)
