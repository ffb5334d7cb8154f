from __future__ import annotations

import jwt
import pytest

from oauth2_server.services import session_service


def test_session_token_roundtrip() -> None:
    token = session_service.create_session_token(sub="user-123")
    claims = session_service.decode_session_token(token)
    assert claims["sub"] == "user-123"
    assert claims["iss"] == session_service.ISSUER
    assert claims["aud"] == session_service.SESSION_AUDIENCE


def test_tampered_session_token_is_rejected() -> None:
    token = session_service.create_session_token(sub="user-123")
    header, payload, signature = token.split(".")
    forged = ".".join([header, payload, signature[::-1]])
    with pytest.raises(jwt.InvalidTokenError):
        session_service.decode_session_token(forged)
