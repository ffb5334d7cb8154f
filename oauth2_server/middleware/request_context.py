"""Request context middleware: a unique ID and timing for every request.

The ID comes from the X-Request-ID header when the caller sent one,
otherwise a fresh UUID.  It lives in a ContextVar (per-task, so safe for
concurrent requests on one event loop) and the handler filter installed by
setup_logging copies it onto every LogRecord, so all lines logged while
serving a request share it.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from oauth2_server.core.logging import request_id_var

logger = logging.getLogger(__name__)

# Caller-supplied IDs longer than this are replaced, not trusted
MAX_REQUEST_ID_LEN = 128


def _incoming_request_id(request: Request) -> str:
    req_id = request.headers.get("x-request-id")
    if not req_id or len(req_id) > MAX_REQUEST_ID_LEN or not req_id.isprintable():
        return str(uuid.uuid4())
    return req_id


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assign a request ID, time the request, log one summary line.

    The ID is echoed in the X-Request-ID response header for correlation.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        req_id = _incoming_request_id(request)
        token = request_id_var.set(req_id)
        try:
            start = time.monotonic()
            response = await call_next(request)
            duration_ms = round((time.monotonic() - start) * 1000, 1)

            # Path only: query strings on /oauth/authorize carry state and
            # redirect targets, and must stay out of logs.
            logger.info(
                "%s %s -> %d (%.1fms)",
                request.method,
                request.url.path,
                response.status_code,
                duration_ms,
                extra={
                    "request_id": req_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                },
            )
            response.headers["X-Request-ID"] = req_id
            return response
        finally:
            request_id_var.reset(token)
