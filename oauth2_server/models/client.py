from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from urllib.parse import urlsplit

GRANT_TYPES = frozenset(
    {"authorization_code", "client_credentials", "refresh_token", "password"}
)

# Width of the client_id columns in db/tables.py
MAX_CLIENT_ID_LENGTH = 128


def hash_client_secret(secret: str) -> str:
    # Empty secret marks a public client; keep it empty rather than hashing ""
    if not secret:
        return ""
    return hashlib.sha256(secret.encode()).hexdigest()


def validate_redirect_uri(uri: str) -> None:
    """Registered redirect URIs must be absolute http(s) URIs with no fragment."""
    parts = urlsplit(uri)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValueError(f"redirect_uri must be an absolute http(s) URI: {uri!r}")
    if parts.fragment:
        raise ValueError(f"redirect_uri must not contain a fragment: {uri!r}")


@dataclass(frozen=True, slots=True)
class OAuthClient:
    client_id: str
    client_secret_hash: str
    redirect_uris: tuple[str, ...]
    grant_types: frozenset[str] | None = None
    allowed_scopes: frozenset[str] | None = None

    @staticmethod
    def new(
        *,
        client_id: str,
        client_secret: str = "",
        redirect_uris: tuple[str, ...] = (),
        grant_types: frozenset[str] | None = None,
        allowed_scopes: frozenset[str] | None = None,
    ) -> OAuthClient:
        if not client_id:
            raise ValueError("client_id must be non-empty")
        if len(client_id) > MAX_CLIENT_ID_LENGTH:
            raise ValueError(
                f"client_id must be at most {MAX_CLIENT_ID_LENGTH} characters"
            )
        for uri in redirect_uris:
            validate_redirect_uri(uri)
        if grant_types is not None:
            unknown = set(grant_types) - GRANT_TYPES
            if unknown:
                raise ValueError(f"unknown grant types: {sorted(unknown)}")
        return OAuthClient(
            client_id=client_id,
            client_secret_hash=hash_client_secret(client_secret),
            redirect_uris=tuple(redirect_uris),
            grant_types=frozenset(grant_types) if grant_types is not None else None,
            allowed_scopes=(
                frozenset(allowed_scopes) if allowed_scopes is not None else None
            ),
        )

    @property
    def is_public(self) -> bool:
        return not self.client_secret_hash

    def verify_secret(self, client_secret: str | None) -> bool:
        """Constant-time check of a presented secret.

        Public clients authenticate with no secret at all; presenting one to
        a public client fails rather than being ignored.
        """
        presented = hash_client_secret(client_secret or "")
        return hmac.compare_digest(presented, self.client_secret_hash)

    def allows_grant_type(self, grant_type: str) -> bool:
        return self.grant_types is None or grant_type in self.grant_types

    def allowed_scope(self, requested: frozenset[str]) -> frozenset[str]:
        """Requested scopes narrowed to what this client may hold.

        An empty request means "everything the client is allowed".
        """
        if self.allowed_scopes is None:
            return requested
        if not requested:
            return self.allowed_scopes
        return requested & self.allowed_scopes
