"""Prometheus metrics inventory.

Every metric the service exports is declared here; the modules that own
the behavior import and increment them.  Prometheus scrapes /metrics.

HTTP metrics are recorded by MetricsMiddleware for every request.  The
OAuth metrics below answer the operational questions an authorization
server gets asked:

  - how many tokens are we issuing, and through which grant?
  - which clients fail, and with what error code?  A spike of
    invalid_grant on authorization_code usually means codes are being
    replayed or a client is slow to redeem them.
  - how often do users decline consent?
  - does token generation ever collide?  This should stay at zero; a
    non-zero value means the random source or the storage uniqueness
    check is broken.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    # token requests with Argon2 password checks land in the 50-250ms range
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# OAuth metrics
# ---------------------------------------------------------------------------

TOKENS_ISSUED = Counter(
    "oauth_tokens_issued_total",
    "Access tokens issued by grant type",
    ["grant_type"],
)

GRANT_FAILURES = Counter(
    "oauth_grant_failures_total",
    "Token requests rejected, by grant type and OAuth error code",
    ["grant_type", "error"],
)

AUTHORIZATION_DECISIONS = Counter(
    "oauth_authorization_decisions_total",
    "Consent decisions on the authorize endpoint",
    ["decision"],  # "granted" or "denied"
)

TOKEN_COLLISIONS = Counter(
    "oauth_token_collisions_total",
    "Generated token strings rejected by storage as duplicates",
    ["kind"],  # "code", "access", "refresh"
)

TOKENS_REVOKED = Counter(
    "oauth_tokens_revoked_total",
    "Tokens revoked explicitly or by refresh rotation",
    ["kind"],  # "access" or "refresh"
)
