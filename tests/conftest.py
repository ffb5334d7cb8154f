from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from oauth2_server.api.dependencies import memory_storage
from oauth2_server.main import app
from oauth2_server.models.client import OAuthClient
from oauth2_server.models.user import User
from oauth2_server.services import password_service

# Ensure repo root is on sys.path so `import oauth2_server` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

CLIENT_ID = "test-client"
CLIENT_SECRET = "test-secret"
REDIRECT_URI = "http://localhost/callback"
TEST_USERNAME = "alice"
TEST_PASSWORD = "alice-password"


@pytest.fixture(autouse=True)
def reset_memory_storage() -> None:
    """Clear the in-memory OAuth store between tests."""
    memory_storage.clear()


@pytest.fixture
def client() -> TestClient:
    return TestClient(app, follow_redirects=False)


def register_client(
    client_id: str = CLIENT_ID,
    client_secret: str = CLIENT_SECRET,
    redirect_uris: tuple[str, ...] = (REDIRECT_URI,),
    **kwargs,
) -> OAuthClient:
    """Register a client directly in the in-memory store."""
    oauth_client = OAuthClient.new(
        client_id=client_id,
        client_secret=client_secret,
        redirect_uris=redirect_uris,
        **kwargs,
    )
    asyncio.run(memory_storage.add_client(oauth_client))
    return oauth_client


def register_user(
    username: str = TEST_USERNAME, password: str = TEST_PASSWORD
) -> User:
    user = User.new(
        username=username, password_hash=password_service.hash_password(password)
    )
    asyncio.run(memory_storage.add_user(user))
    return user


def login(
    client: TestClient, username: str = TEST_USERNAME, password: str = TEST_PASSWORD
) -> None:
    """POST /login so the session cookie is set on client."""
    resp = client.post(
        "/login", data={"username": username, "password": password, "next": "/"}
    )
    assert resp.status_code == 200, f"Login failed: {resp.status_code}"
