"""Demo: walk login -> consent -> code -> token -> resource -> refresh -> revoke.

Runs in-process against the in-memory store using FastAPI TestClient:
    python scripts/demo_authorization_flow.py
"""

from __future__ import annotations

import asyncio
from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient

from oauth2_server.api.dependencies import (
    DEMO_CLIENT_ID,
    DEMO_CLIENT_SECRET,
    DEMO_PASSWORD,
    DEMO_REDIRECT_URI,
    DEMO_USERNAME,
    memory_storage,
    seed_demo_data,
)
from oauth2_server.main import app


def main() -> None:
    asyncio.run(seed_demo_data(memory_storage))
    client = TestClient(app, follow_redirects=False)
    auth = (DEMO_CLIENT_ID, DEMO_CLIENT_SECRET)
    authorize_params = {
        "response_type": "code",
        "client_id": DEMO_CLIENT_ID,
        "redirect_uri": DEMO_REDIRECT_URI,
        "state": "xyz",
    }

    # -- Step 1: authorize without a session --------------------------------
    r = client.get("/oauth/authorize", params=authorize_params)
    print(f"1. GET  /oauth/authorize   -> {r.status_code}  {r.headers['location']}")

    # -- Step 2: log in ------------------------------------------------------
    r = client.post(
        "/login",
        data={"username": DEMO_USERNAME, "password": DEMO_PASSWORD, "next": "/"},
    )
    print(f"2. POST /login             -> {r.status_code}  (session cookie set)")
    assert r.cookies.get("session"), "no session cookie!"

    # -- Step 3: consent page -----------------------------------------------
    r = client.get("/oauth/authorize", params=authorize_params)
    print(f"3. GET  /oauth/authorize   -> {r.status_code}  (consent page)")

    # -- Step 4: approve -----------------------------------------------------
    r = client.post("/oauth/authorize", data={**authorize_params, "accept": "yes"})
    location = r.headers["location"]
    code = parse_qs(urlparse(location).query)["code"][0]
    print(f"4. POST /oauth/authorize   -> {r.status_code}  code={code[:8]}...")

    # -- Step 5: exchange the code -------------------------------------------
    r = client.post(
        "/oauth/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": DEMO_REDIRECT_URI,
        },
        auth=auth,
    )
    tokens = r.json()
    print(f"5. POST /oauth/token       -> {r.status_code}  {sorted(tokens)}")

    # -- Step 6: replay the code ---------------------------------------------
    r = client.post(
        "/oauth/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": DEMO_REDIRECT_URI,
        },
        auth=auth,
    )
    print(f"6. POST /oauth/token       -> {r.status_code}  {r.json()['error']} (replay)")

    # -- Step 7: protected resource ------------------------------------------
    r = client.get(
        "/resource/me",
        headers={"Authorization": f"Bearer {tokens['access_token']}"},
    )
    print(f"7. GET  /resource/me       -> {r.status_code}  {r.json()['message']}")

    # -- Step 8: refresh (rotates the refresh token) -------------------------
    r = client.post(
        "/oauth/token",
        data={"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]},
        auth=auth,
    )
    refreshed = r.json()
    print(f"8. POST /oauth/token       -> {r.status_code}  (refreshed)")

    # -- Step 9: revoke the new access token ---------------------------------
    r = client.post("/oauth/revoke", data={"token": refreshed["access_token"]}, auth=auth)
    print(f"9. POST /oauth/revoke      -> {r.status_code}")
    r = client.get(
        "/resource/me",
        headers={"Authorization": f"Bearer {refreshed['access_token']}"},
    )
    print(f"10. GET /resource/me       -> {r.status_code}  (revoked)")


if __name__ == "__main__":
    main()
