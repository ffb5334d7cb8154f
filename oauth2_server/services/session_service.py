"""Signed session cookies for the interactive authorize flow.

A session JWT proves "this browser logged in to the authorization
server".  It is NOT an OAuth token: access and refresh tokens are opaque
strings looked up in storage, while the session cookie is self-contained
and verified by signature alone.

Key management: ES256 (ECDSA P-256).  SESSION_SIGNING_KEY_PEM supplies
the private key in production; without it an ephemeral key is generated
at import, so every restart logs all browsers out.  Fine for dev and
tests, not for multiple instances.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from oauth2_server.core.config import SETTINGS

ALGORITHM = "ES256"
ISSUER = "oauth2-server"
SESSION_AUDIENCE = "oauth2-server-session"
SESSION_TTL_MIN = 30


def _load_private_key(pem: str | None) -> ec.EllipticCurvePrivateKey:
    if pem is None:
        return ec.generate_private_key(ec.SECP256R1())
    key = serialization.load_pem_private_key(pem.encode(), password=None)
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise ValueError("SESSION_SIGNING_KEY_PEM must be an EC private key")
    return key


_private_key = _load_private_key(SETTINGS.session_signing_key_pem)
_public_key = _private_key.public_key()


def create_session_token(*, sub: str) -> str:
    """Build and sign a session JWT for the session cookie."""
    now = datetime.now(UTC)
    payload = {
        "sub": sub,
        "iss": ISSUER,
        "aud": SESSION_AUDIENCE,
        "exp": now + timedelta(minutes=SESSION_TTL_MIN),
        "iat": now,
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, _private_key, algorithm=ALGORITHM)


def decode_session_token(token: str) -> dict:
    """Verify a session JWT and return its claims.

    Pins the algorithm (no alg:none / alg switching) and the audience.
    Raises jwt.ExpiredSignatureError, jwt.InvalidTokenError on failure.
    """
    return jwt.decode(
        token,
        _public_key,
        algorithms=[ALGORITHM],
        issuer=ISSUER,
        audience=SESSION_AUDIENCE,
        options={"require": ["sub", "exp", "iat", "jti"]},
    )
