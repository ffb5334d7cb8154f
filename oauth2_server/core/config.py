from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


def _getenv(name: str, default: str) -> str:
    return os.environ.get(name, default).strip()


def _getbool(name: str, default: bool) -> bool:
    raw = _getenv(name, "true" if default else "false").lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean (got {raw!r})")


def _getint(name: str, default: int, *, minimum: int = 0) -> int:
    raw = _getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum} (got {value})")
    return value


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    database_url: str | None
    redis_url: str | None
    access_token_ttl_sec: int
    refresh_token_ttl_sec: int
    auth_code_ttl_sec: int
    refresh_token_rotation: bool
    issue_refresh_tokens: bool
    supported_scopes: frozenset[str] | None
    enforce_state: bool
    admin_api_key: str | None
    session_signing_key_pem: str | None

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    scopes_raw = _getenv("SUPPORTED_SCOPES", "")
    supported_scopes = frozenset(scopes_raw.split()) if scopes_raw else None

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=_getbool("LOG_JSON", False),
        port=_getint("PORT", 8000, minimum=1),
        database_url=_getenv("DATABASE_URL", "") or None,
        redis_url=_getenv("REDIS_URL", "") or None,
        access_token_ttl_sec=_getint("ACCESS_TOKEN_TTL_SEC", 3600, minimum=1),
        # 0 disables refresh token expiry
        refresh_token_ttl_sec=_getint("REFRESH_TOKEN_TTL_SEC", 1209600),
        auth_code_ttl_sec=_getint("AUTH_CODE_TTL_SEC", 300, minimum=1),
        refresh_token_rotation=_getbool("REFRESH_TOKEN_ROTATION", True),
        issue_refresh_tokens=_getbool("ISSUE_REFRESH_TOKENS", True),
        supported_scopes=supported_scopes,
        enforce_state=_getbool("ENFORCE_STATE", False),
        admin_api_key=_getenv("ADMIN_API_KEY", "") or None,
        session_signing_key_pem=_getenv("SESSION_SIGNING_KEY_PEM", "") or None,
    )


@dataclass(frozen=True)
class OAuthConfig:
    """Policy knobs consumed by the grant engine and the authorization flow.

    Kept apart from Settings so the engine can be built in tests without
    touching the environment.
    """

    access_token_ttl: int = 3600
    refresh_token_ttl: int | None = 1209600
    auth_code_ttl: int = 300
    refresh_token_rotation: bool = True
    issue_refresh_tokens: bool = True
    supported_scopes: frozenset[str] | None = None
    enforce_state: bool = False
    token_generation_attempts: int = 3

    @staticmethod
    def from_settings(settings: Settings) -> OAuthConfig:
        return OAuthConfig(
            access_token_ttl=settings.access_token_ttl_sec,
            refresh_token_ttl=settings.refresh_token_ttl_sec or None,
            auth_code_ttl=settings.auth_code_ttl_sec,
            refresh_token_rotation=settings.refresh_token_rotation,
            issue_refresh_tokens=settings.issue_refresh_tokens,
            supported_scopes=settings.supported_scopes,
            enforce_state=settings.enforce_state,
        )


SETTINGS = load_settings()
