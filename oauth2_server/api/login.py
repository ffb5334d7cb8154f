"""Login UI: minimal HTML form that sets a signed session cookie.

This is the authorization server's own login page.  When /oauth/authorize
finds no session cookie it redirects the user here; after a successful
login we set an HttpOnly session cookie and send the user back to ?next.

?next is only ever a local path.  Anything else falls back to "/", so the
login page cannot be used to bounce users to another site.
"""

from __future__ import annotations

import html
import logging

from fastapi import APIRouter, Form, Query
from fastapi.responses import HTMLResponse, RedirectResponse

from oauth2_server.api.dependencies import StorageDep
from oauth2_server.core.config import SETTINGS
from oauth2_server.services import session_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["login"])

_LOGIN_HTML = """\
<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>Sign in to oauth2-server</title>
  <style>
    body {{
      font-family: system-ui, -apple-system, sans-serif;
      display: flex; justify-content: center; align-items: center;
      min-height: 100vh; background: #f5f5f5; margin: 0;
    }}
    form {{
      background: #fff; padding: 2rem; border-radius: 8px;
      box-shadow: 0 2px 8px rgba(0,0,0,.1); width: 320px;
      display: grid; gap: .5rem;
    }}
    input {{ padding: .5rem; border: 1px solid #ccc; border-radius: 4px; }}
    button {{ margin-top: .75rem; padding: .6rem; background: #111; color: #fff; border: none; }}
    .error {{ color: #c00; margin: 0; }}
  </style>
</head>
<body>
  <form method="post" action="/login">
    <h1>Sign in</h1>
    {error}
    <label for="username">Username</label>
    <input id="username" name="username" type="text" autocomplete="username" required autofocus>
    <label for="password">Password</label>
    <input id="password" name="password" type="password" autocomplete="current-password" required>
    <input type="hidden" name="next" value="{next_url}">
    <button type="submit">Continue</button>
  </form>
</body>
</html>
"""


def safe_next(next_url: str | None) -> str:
    """Keep ?next only when it is a local absolute path."""
    if not next_url or not next_url.startswith("/") or next_url.startswith("//"):
        return "/"
    if "\\" in next_url:
        return "/"
    return next_url


def _render(next_url: str, error: str | None = None, status_code: int = 200):
    error_block = f'<p class="error">{html.escape(error)}</p>' if error else ""
    page = _LOGIN_HTML.format(
        next_url=html.escape(next_url, quote=True), error=error_block
    )
    return HTMLResponse(page, status_code=status_code)


# ========================== GET /login ======================================


@router.get("/login")
async def login_page(next: str | None = Query(None)) -> HTMLResponse:
    """Render the login form, preserving ?next."""
    return _render(safe_next(next))


# ========================== POST /login =====================================


@router.post("/login", response_model=None)
async def login_submit(
    storage: StorageDep,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form("/"),
) -> RedirectResponse | HTMLResponse:
    """Validate credentials, set session cookie, redirect to *next*."""
    target = safe_next(next)
    logger.info("Login attempt  username=%s", username)

    user_id = await storage.check_user_credentials(username, password)
    if user_id is None:
        logger.warning("Login failed  username=%s", username)
        return _render(target, "Invalid username or password.", status_code=401)

    session_jwt = session_service.create_session_token(sub=user_id)

    if target != "/":
        response: RedirectResponse | HTMLResponse = RedirectResponse(
            url=target, status_code=302
        )
    else:
        response = HTMLResponse(
            "<!DOCTYPE html><html><head><meta charset='utf-8'>"
            "<title>Signed in</title></head><body>"
            f"<h1>Signed in</h1><p>Welcome, {html.escape(username)}</p>"
            "</body></html>"
        )

    response.set_cookie(
        key="session",
        value=session_jwt,
        httponly=True,
        samesite="lax",
        secure=SETTINGS.is_prod,
        path="/",
        max_age=session_service.SESSION_TTL_MIN * 60,
    )
    logger.info("Login succeeded  user_id=%s", user_id)
    return response
