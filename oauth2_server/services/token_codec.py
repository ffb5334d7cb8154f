"""Opaque token generation and expiry arithmetic.

Codes, access tokens and refresh tokens are bare random strings: nothing
is encoded in them, every fact about a token lives in storage and is
looked up by the string.  That keeps revocation trivial (delete the row)
at the cost of one storage read per validation.

32 random bytes = 256 bits of entropy, well past the 160-bit floor for
unguessable bearer credentials (RFC 6749 section 10.10).  Collisions are
astronomically unlikely but storage still enforces uniqueness; the grant
engine retries generation when a create reports a duplicate.
"""

from __future__ import annotations

import secrets
from datetime import UTC, datetime

from oauth2_server.core.errors import EntropyUnavailable

TOKEN_BYTES = 32


def generate() -> str:
    """Return a new URL-safe opaque token (43 chars, no padding)."""
    try:
        return secrets.token_urlsafe(TOKEN_BYTES)
    except (OSError, NotImplementedError) as exc:
        raise EntropyUnavailable("secure random source unavailable") from exc


def now() -> int:
    """Current UTC time as integer Unix seconds."""
    return int(datetime.now(UTC).timestamp())


def expiry(now_ts: int, ttl: int) -> int:
    if ttl <= 0:
        raise ValueError(f"ttl must be positive (got {ttl})")
    return now_ts + ttl


def is_expired(expires_at: int | None, now_ts: int) -> bool:
    # An expiry equal to now is already expired, so a token is never
    # handed out with expires_in == 0.
    if expires_at is None:
        return False
    return expires_at <= now_ts


def expires_in(expires_at: int, now_ts: int) -> int:
    return max(expires_at - now_ts, 0)
