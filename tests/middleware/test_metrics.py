"""Tests for Prometheus metrics middleware and the OAuth counters.

The prometheus-client library uses a global default registry.  Counters
can only go up and cannot be reset between tests, so assert on DELTAS:
read the value before the action, perform it, read it again.
"""

from __future__ import annotations

from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

from tests.conftest import CLIENT_ID, CLIENT_SECRET, register_client


def _get_sample(name: str, labels: dict | None = None) -> float:
    """Read a metric sample's current value from the global registry."""
    value = REGISTRY.get_sample_value(name, labels=labels or {})
    return value if value is not None else 0.0


def test_request_counter_increments(client: TestClient) -> None:
    labels = {"method": "GET", "endpoint": "/health", "status_code": "200"}
    before = _get_sample("http_requests_total", labels)
    client.get("/health")
    after = _get_sample("http_requests_total", labels)
    assert after - before >= 1


def test_request_duration_histogram_observes(client: TestClient) -> None:
    labels = {"method": "GET", "endpoint": "/health"}
    before = _get_sample("http_request_duration_seconds_count", labels)
    client.get("/health")
    after = _get_sample("http_request_duration_seconds_count", labels)
    assert after - before >= 1


def test_endpoint_label_is_route_template(client: TestClient) -> None:
    """Path parameters must not become label values."""
    labels = {
        "method": "POST",
        "endpoint": "/oauth/clients/{client_id}/secret",
        "status_code": "404",
    }
    before = _get_sample("http_requests_total", labels)
    client.post("/oauth/clients/some-unknown-client/secret")
    after = _get_sample("http_requests_total", labels)
    assert after - before >= 1


def test_unmatched_paths_share_one_label(client: TestClient) -> None:
    labels = {"method": "GET", "endpoint": "unmatched", "status_code": "404"}
    before = _get_sample("http_requests_total", labels)
    client.get("/no/such/path/abc123")
    after = _get_sample("http_requests_total", labels)
    assert after - before >= 1


def test_metrics_endpoint_returns_prometheus_format(client: TestClient) -> None:
    client.get("/health")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "http_requests_total" in resp.text
    assert "http_request_duration_seconds" in resp.text


def test_metrics_endpoint_not_self_instrumented(client: TestClient) -> None:
    labels = {"method": "GET", "endpoint": "/metrics", "status_code": "200"}
    before = _get_sample("http_requests_total", labels)
    client.get("/metrics")
    client.get("/metrics")
    assert _get_sample("http_requests_total", labels) == before


def test_token_issue_and_failure_counters(client: TestClient) -> None:
    register_client()
    issued = {"grant_type": "client_credentials"}
    failed = {"grant_type": "client_credentials", "error": "invalid_client"}
    issued_before = _get_sample("oauth_tokens_issued_total", issued)
    failed_before = _get_sample("oauth_grant_failures_total", failed)

    client.post(
        "/oauth/token",
        data={"grant_type": "client_credentials"},
        auth=(CLIENT_ID, CLIENT_SECRET),
    )
    client.post(
        "/oauth/token",
        data={"grant_type": "client_credentials"},
        auth=(CLIENT_ID, "wrong"),
    )

    assert _get_sample("oauth_tokens_issued_total", issued) - issued_before == 1
    assert _get_sample("oauth_grant_failures_total", failed) - failed_before == 1
