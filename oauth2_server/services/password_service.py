"""Argon2 password hashing for resource owners.

Used by the password grant and the login form, both through
OAuthStorage.check_user_credentials.
"""

from __future__ import annotations

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

# Argon2 hash strings encode parameters + salt, so the defaults can be
# raised later without invalidating stored hashes.
_ph = PasswordHasher()

# Verified when the username is unknown so the response time does not
# reveal whether an account exists.
_DUMMY_HASH = _ph.hash("not-a-real-password")


def hash_password(plain_password: str) -> str:
    if not plain_password:
        raise ValueError("password must be non-empty")
    return _ph.hash(plain_password)


def verify_password(plain_password: str, password_hash: str | None) -> bool:
    """Return True when plain_password matches; never raises on bad input."""
    if password_hash is None:
        try:
            _ph.verify(_DUMMY_HASH, plain_password or "-")
        except (VerifyMismatchError, VerificationError, InvalidHash):
            pass
        return False
    if not plain_password or not password_hash:
        return False
    try:
        return _ph.verify(password_hash, plain_password)
    except (VerifyMismatchError, VerificationError, InvalidHash):
        return False
