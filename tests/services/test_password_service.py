from __future__ import annotations

import pytest

from oauth2_server.services import password_service


def test_hash_and_verify_roundtrip() -> None:
    hashed = password_service.hash_password("correct horse")
    assert hashed.startswith("$argon2")
    assert password_service.verify_password("correct horse", hashed)
    assert not password_service.verify_password("wrong horse", hashed)


def test_hash_password_rejects_empty() -> None:
    with pytest.raises(ValueError):
        password_service.hash_password("")


def test_verify_password_unknown_user_returns_false() -> None:
    assert password_service.verify_password("anything", None) is False


def test_verify_password_garbage_hash_returns_false() -> None:
    assert password_service.verify_password("pw", "not-an-argon2-hash") is False
