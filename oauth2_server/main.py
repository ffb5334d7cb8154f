from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from oauth2_server.api.clients import router as clients_router
from oauth2_server.api.dependencies import memory_storage, seed_demo_data
from oauth2_server.api.health import router as health_router
from oauth2_server.api.login import router as login_router
from oauth2_server.api.metrics_endpoint import router as metrics_router
from oauth2_server.api.oauth import NO_STORE_HEADERS
from oauth2_server.api.oauth import router as oauth_router
from oauth2_server.api.resource import router as resource_router
from oauth2_server.core.config import SETTINGS
from oauth2_server.core.errors import (
    InsufficientScope,
    InvalidClient,
    InvalidToken,
    OAuth2Error,
)
from oauth2_server.core.logging import setup_logging
from oauth2_server.db.engine import engine, lifespan_db
from oauth2_server.db.redis import lifespan_redis, redis_pool
from oauth2_server.middleware.metrics import MetricsMiddleware
from oauth2_server.middleware.request_context import RequestContextMiddleware

# Configure logging before anything else runs.
setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)

logger = logging.getLogger(__name__)

REALM = "oauth2-server"


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    # Nested so teardown runs in reverse order even if one fails
    async with lifespan_db():
        async with lifespan_redis():
            if SETTINGS.is_dev and engine is None and redis_pool is None:
                await seed_demo_data(memory_storage)
            yield


app = FastAPI(
    title="oauth2-server",
    lifespan=lifespan,
    docs_url="/docs" if SETTINGS.is_dev else None,
    redoc_url="/redoc" if SETTINGS.is_dev else None,
)


def _www_authenticate(exc: OAuth2Error) -> str | None:
    """Challenge header for 401/403 (RFC 6749 section 5.2, RFC 6750 section 3)."""
    if isinstance(exc, InvalidClient):
        return f'Basic realm="{REALM}"'
    if isinstance(exc, (InvalidToken, InsufficientScope)):
        challenge = f'Bearer realm="{REALM}", error="{exc.error}"'
        if exc.description:
            description = exc.description.replace('"', "'")
            challenge += f', error_description="{description}"'
        return challenge
    return None


@app.exception_handler(OAuth2Error)
async def oauth2_error_handler(request: Request, exc: OAuth2Error) -> Response:
    # Only errors raised after the redirect_uri was verified carry one
    if exc.is_redirectable:
        return RedirectResponse(url=exc.redirect_url(), status_code=302)

    if exc.status_code >= 500:
        logger.error("OAuth server error on %s: %s", request.url.path, exc)
    else:
        logger.warning(
            "OAuth error on %s: %s",
            request.url.path,
            exc.error,
            extra={"error": exc.error},
        )

    headers = dict(NO_STORE_HEADERS)
    challenge = _www_authenticate(exc)
    if challenge is not None:
        headers["WWW-Authenticate"] = challenge
    return JSONResponse(exc.as_dict(), status_code=exc.status_code, headers=headers)


# Middleware execution order: last-added runs first (outermost layer).
# RequestContext (outermost) -> Metrics -> route handler
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestContextMiddleware)

app.include_router(metrics_router)
app.include_router(health_router)
app.include_router(login_router)
app.include_router(oauth_router)
app.include_router(clients_router)
app.include_router(resource_router)

logger.info(
    "oauth2-server started  env=%s log_level=%s port=%d docs=%s",
    SETTINGS.app_env,
    SETTINGS.log_level,
    SETTINGS.port,
    "on" if SETTINGS.is_dev else "off",
)
