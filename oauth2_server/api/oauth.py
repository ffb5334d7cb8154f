"""OAuth 2.0 authorization server endpoints.

  GET  /oauth/authorize   validate the request, show the consent page
  POST /oauth/authorize   user decision -> redirect back to the client
  POST /oauth/token       all grant types (RFC 6749 section 4)
  POST /oauth/revoke      token revocation (RFC 7009)

The handlers only translate HTTP to engine calls.  Validation, issuance
and the redirect/no-redirect decision for errors live in the services;
OAuth2Error is turned into a response by the handler registered in
main.py.
"""

from __future__ import annotations

import html
import logging
from typing import Annotated
from urllib.parse import unquote_plus, urlencode

from fastapi import APIRouter, Depends, Form, Query, Request, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel

from oauth2_server.api.dependencies import (
    StorageDep,
    commit_storage,
    get_authorization_flow,
    get_grant_engine,
    get_interactive_user,
)
from oauth2_server.core.errors import InvalidRequest
from oauth2_server.services.authorization_flow import AuthorizationFlow, AuthorizeParams
from oauth2_server.services.grant_engine import GrantEngine, TokenRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["oauth"])

basic_scheme = HTTPBasic(auto_error=False)

# RFC 6749 section 5.1: token responses must not be cached
NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}

# Consent page must not be framed (clickjacking)
CONSENT_HEADERS = {
    "X-Frame-Options": "DENY",
    "Content-Security-Policy": "frame-ancestors 'none'",
}

FlowDep = Annotated[AuthorizationFlow, Depends(get_authorization_flow)]
EngineDep = Annotated[GrantEngine, Depends(get_grant_engine)]
BasicDep = Annotated[HTTPBasicCredentials | None, Depends(basic_scheme)]


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_token: str | None = None
    scope: str | None = None


def _client_credentials(
    basic: HTTPBasicCredentials | None,
    client_id: str | None,
    client_secret: str | None,
) -> tuple[str | None, str | None]:
    """Pick client credentials from HTTP Basic or the form body, not both.

    Basic values are form-urlencoded before base64 (RFC 6749 section 2.3.1).
    """
    if basic is None:
        return client_id, client_secret
    if client_secret is not None:
        raise InvalidRequest("client credentials sent in both header and body")
    basic_id = unquote_plus(basic.username)
    if client_id is not None and client_id != basic_id:
        raise InvalidRequest("client_id does not match the authenticated client")
    return basic_id, unquote_plus(basic.password)


def _login_redirect(params: dict[str, str]) -> RedirectResponse:
    next_url = f"/oauth/authorize?{urlencode(params)}"
    return RedirectResponse(
        url=f"/login?{urlencode({'next': next_url})}",
        status_code=status.HTTP_302_FOUND,
    )


# ---------------------------------------------------------------------------
# Consent page (inline HTML, same approach as the login form)
# ---------------------------------------------------------------------------

_CONSENT_HTML = """\
<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>Authorize {client_id}</title>
  <style>
    body {{
      font-family: system-ui, -apple-system, sans-serif;
      display: flex; justify-content: center; align-items: center;
      min-height: 100vh; background: #f5f5f5; margin: 0;
    }}
    .card {{
      background: #fff; padding: 2rem; border-radius: 8px;
      box-shadow: 0 2px 8px rgba(0,0,0,.1); width: 360px;
    }}
    h1 {{ font-size: 1.2rem; margin-bottom: 1rem; }}
    ul {{ margin: 0 0 1.5rem 1.2rem; padding: 0; }}
    button {{
      padding: .6rem 1.2rem; border: none; border-radius: 4px;
      font-size: .95rem; cursor: pointer; margin-right: .5rem;
    }}
    .allow {{ background: #111; color: #fff; }}
    .deny {{ background: #ddd; color: #111; }}
  </style>
</head>
<body>
  <div class="card">
    <h1><strong>{client_id}</strong> wants access to your account</h1>
    {scope_block}
    <form method="post" action="/oauth/authorize">
      {hidden_fields}
      <button class="allow" type="submit" name="accept" value="yes">Allow</button>
      <button class="deny" type="submit" name="accept" value="no">Deny</button>
    </form>
  </div>
</body>
</html>
"""


def _render_consent(params: AuthorizeParams) -> HTMLResponse:
    hidden = "\n      ".join(
        f'<input type="hidden" name="{name}" value="{html.escape(value, quote=True)}">'
        for name, value in params.as_form_fields().items()
    )
    scopes = params.scope.split()
    if scopes:
        items = "".join(f"<li>{html.escape(s)}</li>" for s in scopes)
        scope_block = f"<p>Requested scopes:</p><ul>{items}</ul>"
    else:
        scope_block = "<p>No specific scopes requested.</p>"
    page = _CONSENT_HTML.format(
        client_id=html.escape(params.client_id),
        scope_block=scope_block,
        hidden_fields=hidden,
    )
    return HTMLResponse(page, headers=CONSENT_HEADERS)


# ========================== GET /oauth/authorize ==========================


@router.get("/oauth/authorize", response_model=None)
async def authorize(
    request: Request,
    flow: FlowDep,
    response_type: str | None = Query(None),
    client_id: str | None = Query(None),
    redirect_uri: str | None = Query(None),
    scope: str | None = Query(None),
    state: str | None = Query(None),
) -> HTMLResponse | RedirectResponse:
    # Validate before anything else: a bad client or redirect_uri is shown
    # right away instead of after a login round trip.
    params = await flow.get_authorize_params(
        response_type=response_type,
        client_id=client_id,
        redirect_uri=redirect_uri,
        state=state,
        scope=scope,
    )

    user_id = get_interactive_user(request)
    if user_id is None:
        logger.info("Authorize without session, redirecting to login")
        return _login_redirect(dict(request.query_params))

    logger.info(
        "Consent page shown  client_id=%s user_id=%s scope=%r",
        params.client_id,
        user_id,
        params.scope,
    )
    return _render_consent(params)


# ========================== POST /oauth/authorize =========================


@router.post("/oauth/authorize", response_model=None)
async def authorize_decision(
    request: Request,
    flow: FlowDep,
    storage: StorageDep,
    accept: str | None = Form(None),
    response_type: str | None = Form(None),
    client_id: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    scope: str | None = Form(None),
    state: str | None = Form(None),
) -> RedirectResponse:
    params = {
        "response_type": response_type,
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": scope,
        "state": state,
    }

    user_id = get_interactive_user(request)
    if user_id is None:
        # session expired while the consent page was open
        return _login_redirect({k: v for k, v in params.items() if v is not None})

    url = await flow.finish_client_authorization(accept == "yes", user_id, params)
    await commit_storage(storage)
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


# ========================== POST /oauth/token =============================


@router.post("/oauth/token", response_model=Token, response_model_exclude_none=True)
async def exchange_token(
    engine: EngineDep,
    storage: StorageDep,
    basic: BasicDep,
    grant_type: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    code: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    refresh_token: str | None = Form(None),
    username: str | None = Form(None),
    password: str | None = Form(None),
    scope: str | None = Form(None),
) -> JSONResponse:
    # NOTE: never log client_secret, code, tokens or password.
    client_id, client_secret = _client_credentials(basic, client_id, client_secret)
    grant = await engine.token(
        TokenRequest(
            grant_type=grant_type,
            client_id=client_id,
            client_secret=client_secret,
            code=code,
            redirect_uri=redirect_uri,
            refresh_token=refresh_token,
            username=username,
            password=password,
            scope=scope,
        )
    )
    await commit_storage(storage)
    return JSONResponse(grant.as_dict(), headers=NO_STORE_HEADERS)


# ========================== POST /oauth/revoke ============================


@router.post("/oauth/revoke")
async def revoke_token(
    engine: EngineDep,
    storage: StorageDep,
    basic: BasicDep,
    token: str | None = Form(None),
    token_type_hint: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
) -> Response:
    client_id, client_secret = _client_credentials(basic, client_id, client_secret)
    await engine.revoke(token, client_id, client_secret, token_type_hint)
    await commit_storage(storage)
    # RFC 7009 section 2.2: 200 whether or not the token was known
    return Response(status_code=status.HTTP_200_OK, headers=NO_STORE_HEADERS)
