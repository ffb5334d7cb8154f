"""Prometheus metrics endpoint.

Plain text in Prometheus exposition format, scraped by the Prometheus
server.  Besides the HTTP metrics it carries the OAuth counters:

  oauth_tokens_issued_total{grant_type="authorization_code"} 12.0
  oauth_grant_failures_total{grant_type="refresh_token",error="invalid_grant"} 3.0

Restrict access in production (internal port or network policy).
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Expose all Prometheus metrics in text exposition format."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
