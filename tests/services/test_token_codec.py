from __future__ import annotations

import secrets

import pytest

from oauth2_server.core.errors import EntropyUnavailable
from oauth2_server.services import token_codec


def test_generate_is_url_safe_and_256_bits() -> None:
    token = token_codec.generate()
    assert len(token) == 43
    assert all(c.isalnum() or c in "-_" for c in token)


def test_generate_produces_no_duplicates() -> None:
    tokens = {token_codec.generate() for _ in range(1_000_000)}
    assert len(tokens) == 1_000_000


def test_generate_raises_entropy_unavailable_when_os_source_fails(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _broken(_nbytes: int) -> str:
        raise OSError("getrandom failed")

    monkeypatch.setattr(secrets, "token_urlsafe", _broken)
    with pytest.raises(EntropyUnavailable):
        token_codec.generate()


def test_expiry_adds_ttl() -> None:
    assert token_codec.expiry(1_000, 300) == 1_300


@pytest.mark.parametrize("ttl", [0, -5])
def test_expiry_rejects_non_positive_ttl(ttl: int) -> None:
    with pytest.raises(ValueError):
        token_codec.expiry(1_000, ttl)


def test_is_expired_boundary() -> None:
    assert not token_codec.is_expired(1_001, 1_000)
    # expiring exactly now counts as expired
    assert token_codec.is_expired(1_000, 1_000)
    assert token_codec.is_expired(999, 1_000)


def test_is_expired_never_for_missing_expiry() -> None:
    assert not token_codec.is_expired(None, 10**12)


def test_expires_in_never_negative() -> None:
    assert token_codec.expires_in(1_300, 1_000) == 300
    assert token_codec.expires_in(900, 1_000) == 0
