"""Grant engine tests against the in-memory store.

The engine takes its clock and token generator as arguments, so expiry
and collision behaviour is driven deterministically from here.
"""

from __future__ import annotations

import asyncio
import logging

import pytest

from oauth2_server.core.config import OAuthConfig
from oauth2_server.core.errors import (
    InsufficientScope,
    InvalidClient,
    InvalidGrant,
    InvalidRequest,
    InvalidScope,
    InvalidToken,
    ServerError,
    UnauthorizedClient,
    UnsupportedGrantType,
)
from oauth2_server.models.client import OAuthClient
from oauth2_server.models.user import User
from oauth2_server.repos.oauth_storage import DuplicateTokenError, InMemoryOAuthStorage
from oauth2_server.services import password_service
from oauth2_server.services.grant_engine import (
    GrantEngine,
    TokenRequest,
    create_unique,
)

CLIENT_ID = "c1"
SECRET = "s3cret"
REDIRECT_URI = "https://app.example/cb"
NOW = 1_700_000_000


class FakeClock:
    def __init__(self, now: int = NOW) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


def _storage(**client_kwargs) -> InMemoryOAuthStorage:
    storage = InMemoryOAuthStorage()
    asyncio.run(
        storage.add_client(
            OAuthClient.new(
                client_id=CLIENT_ID,
                client_secret=client_kwargs.pop("client_secret", SECRET),
                redirect_uris=client_kwargs.pop("redirect_uris", (REDIRECT_URI,)),
                **client_kwargs,
            )
        )
    )
    return storage


def _seed_code(
    storage: InMemoryOAuthStorage,
    code: str = "code-1",
    *,
    scope: str = "read",
    expires_at: int = NOW + 300,
    client_id: str = CLIENT_ID,
) -> str:
    asyncio.run(
        storage.create_authorization_code(
            code, client_id, "user-1", REDIRECT_URI, scope, expires_at
        )
    )
    return code


def _code_request(code: str, **overrides) -> TokenRequest:
    fields = {
        "grant_type": "authorization_code",
        "client_id": CLIENT_ID,
        "client_secret": SECRET,
        "code": code,
        "redirect_uri": REDIRECT_URI,
    }
    fields.update(overrides)
    return TokenRequest(**fields)


# ---------------------------------------------------------------------------
# authorization_code
# ---------------------------------------------------------------------------


def test_code_exchange_returns_bearer_tokens() -> None:
    storage = _storage()
    engine = GrantEngine(storage, clock=FakeClock())
    code = _seed_code(storage)

    grant = asyncio.run(engine.token(_code_request(code)))

    body = grant.as_dict()
    assert body["token_type"] == "bearer"
    assert body["expires_in"] == 3600
    assert body["scope"] == "read"
    assert "refresh_token" in body
    stored = asyncio.run(storage.get_access_token(grant.access_token))
    assert stored is not None
    assert stored.user_id == "user-1"
    assert stored.refresh_token == grant.refresh_token


def test_code_replay_fails_invalid_grant() -> None:
    storage = _storage()
    engine = GrantEngine(storage, clock=FakeClock())
    code = _seed_code(storage)

    asyncio.run(engine.token(_code_request(code)))
    with pytest.raises(InvalidGrant, match="already used"):
        asyncio.run(engine.token(_code_request(code)))
    # every later attempt fails too
    with pytest.raises(InvalidGrant):
        asyncio.run(engine.token(_code_request(code)))


def test_concurrent_code_redemption_yields_exactly_one_success() -> None:
    storage = _storage()
    engine = GrantEngine(storage, clock=FakeClock())
    code = _seed_code(storage)

    async def _race():
        return await asyncio.gather(
            engine.token(_code_request(code)),
            engine.token(_code_request(code)),
            return_exceptions=True,
        )

    results = asyncio.run(_race())
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], InvalidGrant)


def test_expired_code_is_rejected() -> None:
    storage = _storage()
    clock = FakeClock()
    engine = GrantEngine(storage, clock=clock)
    code = _seed_code(storage, expires_at=NOW + 300)

    clock.now = NOW + 300
    with pytest.raises(InvalidGrant, match="expired"):
        asyncio.run(engine.token(_code_request(code)))


def test_code_issued_to_another_client_is_rejected() -> None:
    storage = _storage()
    asyncio.run(
        storage.add_client(
            OAuthClient.new(
                client_id="c2", client_secret="other", redirect_uris=(REDIRECT_URI,)
            )
        )
    )
    engine = GrantEngine(storage, clock=FakeClock())
    code = _seed_code(storage)

    with pytest.raises(InvalidGrant, match="another client"):
        asyncio.run(
            engine.token(_code_request(code, client_id="c2", client_secret="other"))
        )
    # the failed attempt did not consume the code
    asyncio.run(engine.token(_code_request(code)))


def test_code_redirect_uri_must_match() -> None:
    storage = _storage(redirect_uris=(REDIRECT_URI, "https://app.example/other"))
    engine = GrantEngine(storage, clock=FakeClock())
    code = _seed_code(storage)

    with pytest.raises(InvalidGrant, match="redirect_uri"):
        asyncio.run(
            engine.token(_code_request(code, redirect_uri="https://app.example/other"))
        )
    # omitted redirect_uri is ambiguous with two registered URIs
    with pytest.raises(InvalidGrant, match="redirect_uri"):
        asyncio.run(engine.token(_code_request(code, redirect_uri=None)))


def test_code_redirect_uri_may_be_omitted_with_single_registration() -> None:
    storage = _storage()
    engine = GrantEngine(storage, clock=FakeClock())
    code = _seed_code(storage)

    grant = asyncio.run(engine.token(_code_request(code, redirect_uri=None)))
    assert grant.access_token


def test_code_exchange_without_refresh_when_disabled() -> None:
    storage = _storage()
    engine = GrantEngine(
        storage, OAuthConfig(issue_refresh_tokens=False), clock=FakeClock()
    )
    code = _seed_code(storage)

    grant = asyncio.run(engine.token(_code_request(code)))
    assert grant.refresh_token is None
    assert "refresh_token" not in grant.as_dict()


def test_code_exchange_without_refresh_when_client_cannot_refresh() -> None:
    storage = _storage(grant_types=frozenset({"authorization_code"}))
    engine = GrantEngine(storage, clock=FakeClock())
    code = _seed_code(storage)

    grant = asyncio.run(engine.token(_code_request(code)))
    assert grant.refresh_token is None
    stored = asyncio.run(storage.get_access_token(grant.access_token))
    assert stored is not None and stored.refresh_token is None


# ---------------------------------------------------------------------------
# request gate: grant type and client authentication
# ---------------------------------------------------------------------------


def test_missing_grant_type_is_invalid_request() -> None:
    engine = GrantEngine(_storage())
    with pytest.raises(InvalidRequest):
        asyncio.run(engine.token(TokenRequest(grant_type=None, client_id=CLIENT_ID)))


def test_unknown_grant_type_is_unsupported() -> None:
    engine = GrantEngine(_storage())
    with pytest.raises(UnsupportedGrantType):
        asyncio.run(
            engine.token(
                TokenRequest(
                    grant_type="implicit", client_id=CLIENT_ID, client_secret=SECRET
                )
            )
        )


@pytest.mark.parametrize(
    ("client_id", "secret"),
    [(None, None), ("c1", "wrong"), ("c1", None), ("nope", SECRET)],
)
def test_bad_client_credentials_are_invalid_client(
    client_id: str | None, secret: str | None
) -> None:
    storage = _storage()
    engine = GrantEngine(storage, clock=FakeClock())
    code = _seed_code(storage)
    with pytest.raises(InvalidClient):
        asyncio.run(
            engine.token(_code_request(code, client_id=client_id, client_secret=secret))
        )


def test_client_restricted_from_grant_type_is_unauthorized() -> None:
    storage = _storage(grant_types=frozenset({"authorization_code", "refresh_token"}))
    engine = GrantEngine(storage)
    with pytest.raises(UnauthorizedClient):
        asyncio.run(
            engine.token(
                TokenRequest(
                    grant_type="client_credentials",
                    client_id=CLIENT_ID,
                    client_secret=SECRET,
                )
            )
        )


# ---------------------------------------------------------------------------
# client_credentials
# ---------------------------------------------------------------------------


def test_client_credentials_issues_access_token_only() -> None:
    storage = _storage(allowed_scopes=frozenset({"read", "write"}))
    engine = GrantEngine(storage, clock=FakeClock())

    grant = asyncio.run(
        engine.token(
            TokenRequest(
                grant_type="client_credentials",
                client_id=CLIENT_ID,
                client_secret=SECRET,
                scope="read",
            )
        )
    )
    assert grant.refresh_token is None
    assert grant.scope == "read"
    stored = asyncio.run(storage.get_access_token(grant.access_token))
    assert stored is not None
    assert stored.user_id is None


def test_client_credentials_rejected_for_public_client() -> None:
    storage = _storage(client_secret="")
    engine = GrantEngine(storage)
    with pytest.raises(UnauthorizedClient):
        asyncio.run(
            engine.token(
                TokenRequest(grant_type="client_credentials", client_id=CLIENT_ID)
            )
        )


def test_client_credentials_scope_outside_client_allowance() -> None:
    storage = _storage(allowed_scopes=frozenset({"read"}))
    engine = GrantEngine(storage)
    with pytest.raises(InvalidScope):
        asyncio.run(
            engine.token(
                TokenRequest(
                    grant_type="client_credentials",
                    client_id=CLIENT_ID,
                    client_secret=SECRET,
                    scope="admin",
                )
            )
        )


def test_unsupported_scope_rejected_by_server_policy() -> None:
    engine = GrantEngine(
        _storage(), OAuthConfig(supported_scopes=frozenset({"read"}))
    )
    with pytest.raises(InvalidScope, match="unsupported scope"):
        asyncio.run(
            engine.token(
                TokenRequest(
                    grant_type="client_credentials",
                    client_id=CLIENT_ID,
                    client_secret=SECRET,
                    scope="read delete",
                )
            )
        )


# ---------------------------------------------------------------------------
# refresh_token
# ---------------------------------------------------------------------------


def _refresh_request(token: str, **overrides) -> TokenRequest:
    fields = {
        "grant_type": "refresh_token",
        "client_id": CLIENT_ID,
        "client_secret": SECRET,
        "refresh_token": token,
    }
    fields.update(overrides)
    return TokenRequest(**fields)


def _issue_via_code(engine: GrantEngine, storage, scope: str = "read write"):
    code = _seed_code(storage, scope=scope)
    return asyncio.run(engine.token(_code_request(code)))


def test_refresh_rotates_refresh_token() -> None:
    storage = _storage()
    engine = GrantEngine(storage, clock=FakeClock())
    first = _issue_via_code(engine, storage)

    second = asyncio.run(engine.token(_refresh_request(first.refresh_token)))

    assert second.refresh_token is not None
    assert second.refresh_token != first.refresh_token
    old = asyncio.run(storage.get_refresh_token(first.refresh_token))
    assert old is not None and old.is_revoked
    # the rotated-out token cannot be used again
    with pytest.raises(InvalidGrant, match="revoked"):
        asyncio.run(engine.token(_refresh_request(first.refresh_token)))


def test_refresh_without_rotation_reuses_refresh_token() -> None:
    storage = _storage()
    engine = GrantEngine(
        storage, OAuthConfig(refresh_token_rotation=False), clock=FakeClock()
    )
    first = _issue_via_code(engine, storage)

    second = asyncio.run(engine.token(_refresh_request(first.refresh_token)))
    third = asyncio.run(engine.token(_refresh_request(first.refresh_token)))

    assert second.refresh_token == first.refresh_token
    assert third.refresh_token == first.refresh_token
    assert third.access_token != second.access_token


def test_refresh_can_narrow_but_not_widen_scope() -> None:
    storage = _storage()
    engine = GrantEngine(storage, clock=FakeClock())
    first = _issue_via_code(engine, storage, scope="read write")

    narrowed = asyncio.run(engine.token(_refresh_request(first.refresh_token, scope="read")))
    assert narrowed.scope == "read"
    # the new refresh token still carries the original grant
    rotated = asyncio.run(storage.get_refresh_token(narrowed.refresh_token))
    assert rotated is not None and rotated.scope == "read write"

    with pytest.raises(InvalidScope):
        asyncio.run(
            engine.token(_refresh_request(narrowed.refresh_token, scope="read admin"))
        )


def test_expired_refresh_token_is_rejected() -> None:
    storage = _storage()
    clock = FakeClock()
    engine = GrantEngine(storage, OAuthConfig(refresh_token_ttl=60), clock=clock)
    first = _issue_via_code(engine, storage)

    clock.now = NOW + 60
    with pytest.raises(InvalidGrant, match="expired"):
        asyncio.run(engine.token(_refresh_request(first.refresh_token)))


def test_refresh_token_without_ttl_never_expires() -> None:
    storage = _storage()
    clock = FakeClock()
    engine = GrantEngine(storage, OAuthConfig(refresh_token_ttl=None), clock=clock)
    first = _issue_via_code(engine, storage)

    clock.now = NOW + 10 * 365 * 86400
    grant = asyncio.run(engine.token(_refresh_request(first.refresh_token)))
    assert grant.access_token


# ---------------------------------------------------------------------------
# password
# ---------------------------------------------------------------------------


def _add_user(storage: InMemoryOAuthStorage) -> User:
    user = User.new(
        username="Alice", password_hash=password_service.hash_password("pw-alice")
    )
    asyncio.run(storage.add_user(user))
    return user


def test_password_grant_issues_tokens_for_valid_owner() -> None:
    storage = _storage()
    user = _add_user(storage)
    engine = GrantEngine(storage, clock=FakeClock())

    grant = asyncio.run(
        engine.token(
            TokenRequest(
                grant_type="password",
                client_id=CLIENT_ID,
                client_secret=SECRET,
                username="alice",
                password="pw-alice",
            )
        )
    )
    assert grant.refresh_token is not None
    stored = asyncio.run(storage.get_access_token(grant.access_token))
    assert stored is not None and stored.user_id == str(user.id)


def test_password_grant_without_refresh_when_client_cannot_refresh() -> None:
    storage = _storage(grant_types=frozenset({"password"}))
    _add_user(storage)
    engine = GrantEngine(storage, clock=FakeClock())

    grant = asyncio.run(
        engine.token(
            TokenRequest(
                grant_type="password",
                client_id=CLIENT_ID,
                client_secret=SECRET,
                username="alice",
                password="pw-alice",
            )
        )
    )
    assert grant.refresh_token is None
    assert "refresh_token" not in grant.as_dict()


def test_password_grant_wrong_password_is_invalid_grant() -> None:
    storage = _storage()
    _add_user(storage)
    engine = GrantEngine(storage)

    with pytest.raises(InvalidGrant):
        asyncio.run(
            engine.token(
                TokenRequest(
                    grant_type="password",
                    client_id=CLIENT_ID,
                    client_secret=SECRET,
                    username="alice",
                    password="nope",
                )
            )
        )


# ---------------------------------------------------------------------------
# uniqueness and collisions
# ---------------------------------------------------------------------------


def test_forced_collision_regenerates_token() -> None:
    storage = _storage()
    asyncio.run(storage.create_access_token("taken", CLIENT_ID, None, "", NOW + 10))
    values = iter(["taken", "fresh"])
    engine = GrantEngine(storage, clock=FakeClock(), generate=lambda: next(values))

    grant = asyncio.run(
        engine.token(
            TokenRequest(
                grant_type="client_credentials", client_id=CLIENT_ID, client_secret=SECRET
            )
        )
    )
    assert grant.access_token == "fresh"
    # the pre-existing token was not overwritten
    existing = asyncio.run(storage.get_access_token("taken"))
    assert existing is not None and existing.expires_at == NOW + 10


def test_collision_retries_are_bounded() -> None:
    storage = _storage()
    asyncio.run(storage.create_access_token("taken", CLIENT_ID, None, "", NOW + 10))
    engine = GrantEngine(storage, clock=FakeClock(), generate=lambda: "taken")

    with pytest.raises(ServerError):
        asyncio.run(
            engine.token(
                TokenRequest(
                    grant_type="client_credentials",
                    client_id=CLIENT_ID,
                    client_secret=SECRET,
                )
            )
        )


def test_create_unique_returns_first_free_value() -> None:
    seen: set[str] = {"a", "b"}

    async def _create(value: str) -> None:
        if value in seen:
            raise DuplicateTokenError(value)
        seen.add(value)

    values = iter(["a", "b", "c"])
    result = asyncio.run(
        create_unique("code", _create, generate=lambda: next(values), attempts=3)
    )
    assert result == "c"


def test_storage_failure_surfaces_as_server_error() -> None:
    storage = _storage()

    async def _boom(*_args, **_kwargs):
        raise RuntimeError("connection reset")

    storage.get_authorization_code = _boom  # type: ignore[method-assign]
    engine = GrantEngine(storage)
    with pytest.raises(ServerError):
        asyncio.run(engine.token(_code_request("code-1")))


# ---------------------------------------------------------------------------
# access token validation and revocation
# ---------------------------------------------------------------------------


def test_expired_access_token_rejected_while_still_stored() -> None:
    storage = _storage()
    clock = FakeClock()
    engine = GrantEngine(storage, clock=clock)
    grant = _issue_via_code(engine, storage)

    clock.now = NOW + 3600
    assert asyncio.run(storage.get_access_token(grant.access_token)) is not None
    with pytest.raises(InvalidToken, match="expired"):
        asyncio.run(engine.verify_access_token(grant.access_token))


def test_verify_access_token_checks_scope() -> None:
    storage = _storage()
    engine = GrantEngine(storage, clock=FakeClock())
    grant = _issue_via_code(engine, storage, scope="read")

    record = asyncio.run(engine.verify_access_token(grant.access_token, "read"))
    assert record.client_id == CLIENT_ID
    with pytest.raises(InsufficientScope):
        asyncio.run(engine.verify_access_token(grant.access_token, "write"))


def test_verify_unknown_access_token() -> None:
    engine = GrantEngine(_storage())
    with pytest.raises(InvalidToken):
        asyncio.run(engine.verify_access_token("does-not-exist"))


def test_revoking_access_token_also_revokes_its_refresh_token() -> None:
    storage = _storage()
    engine = GrantEngine(storage, clock=FakeClock())
    grant = _issue_via_code(engine, storage)

    asyncio.run(engine.revoke(grant.access_token, CLIENT_ID, SECRET))

    assert asyncio.run(storage.get_access_token(grant.access_token)) is None
    refresh = asyncio.run(storage.get_refresh_token(grant.refresh_token))
    assert refresh is not None and refresh.is_revoked


def test_revoke_refresh_token_with_hint() -> None:
    storage = _storage()
    engine = GrantEngine(storage, clock=FakeClock())
    grant = _issue_via_code(engine, storage)

    asyncio.run(engine.revoke(grant.refresh_token, CLIENT_ID, SECRET, "refresh_token"))

    with pytest.raises(InvalidGrant):
        asyncio.run(engine.token(_refresh_request(grant.refresh_token)))


def test_revoke_ignores_unknown_and_foreign_tokens() -> None:
    storage = _storage()
    asyncio.run(
        storage.add_client(
            OAuthClient.new(client_id="c2", client_secret="other", redirect_uris=())
        )
    )
    engine = GrantEngine(storage, clock=FakeClock())
    grant = _issue_via_code(engine, storage)

    asyncio.run(engine.revoke("unknown-token", CLIENT_ID, SECRET))
    asyncio.run(engine.revoke(grant.access_token, "c2", "other"))

    assert asyncio.run(storage.get_access_token(grant.access_token)) is not None


def test_revoke_requires_client_authentication() -> None:
    engine = GrantEngine(_storage())
    with pytest.raises(InvalidClient):
        asyncio.run(engine.revoke("anything", CLIENT_ID, "wrong"))


# ---------------------------------------------------------------------------
# logging
# ---------------------------------------------------------------------------


def test_failures_are_logged_with_error_code_but_no_secrets(
    caplog: pytest.LogCaptureFixture,
) -> None:
    storage = _storage()
    engine = GrantEngine(storage, clock=FakeClock())
    code = _seed_code(storage, "very-secret-code")

    with caplog.at_level(logging.DEBUG, logger="oauth2_server"):
        asyncio.run(engine.token(_code_request(code)))
        with pytest.raises(InvalidGrant):
            asyncio.run(engine.token(_code_request(code)))

    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert warnings
    assert warnings[-1].error == "invalid_grant"  # type: ignore[attr-defined]
    assert warnings[-1].client_id == CLIENT_ID  # type: ignore[attr-defined]
    text = " ".join(caplog.messages)
    assert "very-secret-code" not in text
    assert SECRET not in text
