"""SQLAlchemy table definitions.

These map to the frozen dataclass domain models in oauth2_server/models/.
SqlOAuthStorage converts between rows and dataclasses.

Column types are dialect-neutral (JSON instead of ARRAY, generic Uuid) so
the same schema runs on PostgreSQL in production and SQLite in tests.
Token strings are primary keys: the database, not the application,
enforces uniqueness.
"""

from __future__ import annotations

import uuid

from sqlalchemy import JSON, BigInteger, Boolean, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from oauth2_server.db.engine import Base
from oauth2_server.models.client import MAX_CLIENT_ID_LENGTH


class OAuthClientRow(Base):
    __tablename__ = "oauth_clients"

    client_id: Mapped[str] = mapped_column(
        String(MAX_CLIENT_ID_LENGTH), primary_key=True
    )
    client_secret_hash: Mapped[str] = mapped_column(
        String(64), nullable=False, default=""
    )
    redirect_uris: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    # NULL = unrestricted
    grant_types: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    allowed_scopes: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)


class AuthorizationCodeRow(Base):
    __tablename__ = "oauth_authorization_codes"

    code: Mapped[str] = mapped_column(String(128), primary_key=True)
    client_id: Mapped[str] = mapped_column(
        String(MAX_CLIENT_ID_LENGTH), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(320), nullable=False)
    redirect_uri: Mapped[str] = mapped_column(Text, nullable=False)
    scope: Mapped[str] = mapped_column(Text, nullable=False, default="")
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    used_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)


class AccessTokenRow(Base):
    __tablename__ = "oauth_access_tokens"

    token: Mapped[str] = mapped_column(String(128), primary_key=True)
    client_id: Mapped[str] = mapped_column(
        String(MAX_CLIENT_ID_LENGTH), nullable=False
    )
    user_id: Mapped[str | None] = mapped_column(String(320), nullable=True)
    scope: Mapped[str] = mapped_column(Text, nullable=False, default="")
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(String(128), nullable=True)

    __table_args__ = (Index("ix_oauth_access_tokens_expires_at", "expires_at"),)


class RefreshTokenRow(Base):
    __tablename__ = "oauth_refresh_tokens"

    token: Mapped[str] = mapped_column(String(128), primary_key=True)
    client_id: Mapped[str] = mapped_column(
        String(MAX_CLIENT_ID_LENGTH), nullable=False
    )
    user_id: Mapped[str | None] = mapped_column(String(320), nullable=True)
    scope: Mapped[str] = mapped_column(Text, nullable=False, default="")
    expires_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    revoked_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    username: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
