"""Client registration (administrative).

  POST /oauth/clients                      register a client
  POST /oauth/clients/{client_id}/secret   rotate a confidential client's secret

Both are guarded by X-Admin-Key when ADMIN_API_KEY is configured.  The
plaintext secret appears exactly once, in the response that created it;
storage only ever sees its hash.
"""

from __future__ import annotations

import logging
import secrets

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from oauth2_server.api.dependencies import StorageDep, commit_storage, require_admin
from oauth2_server.models.client import OAuthClient, hash_client_secret
from oauth2_server.repos.oauth_storage import DuplicateClientError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/oauth/clients",
    tags=["clients"],
    dependencies=[Depends(require_admin)],
)

CLIENT_ID_BYTES = 16
CLIENT_SECRET_BYTES = 32


class ClientCreate(BaseModel):
    client_id: str | None = None
    redirect_uris: list[str] = Field(default_factory=list)
    grant_types: list[str] | None = None
    allowed_scopes: list[str] | None = None
    # Public clients (native/SPA) get no secret
    public: bool = False


class ClientOut(BaseModel):
    client_id: str
    client_secret: str | None = None
    redirect_uris: list[str]
    grant_types: list[str] | None = None
    allowed_scopes: list[str] | None = None


class SecretOut(BaseModel):
    client_id: str
    client_secret: str


@router.post("", response_model=ClientOut, status_code=status.HTTP_201_CREATED)
async def register_client(body: ClientCreate, storage: StorageDep) -> ClientOut:
    client_id = body.client_id or secrets.token_urlsafe(CLIENT_ID_BYTES)
    client_secret = None if body.public else secrets.token_urlsafe(CLIENT_SECRET_BYTES)

    try:
        client = OAuthClient.new(
            client_id=client_id,
            client_secret=client_secret or "",
            redirect_uris=tuple(body.redirect_uris),
            grant_types=(
                frozenset(body.grant_types) if body.grant_types is not None else None
            ),
            allowed_scopes=(
                frozenset(body.allowed_scopes)
                if body.allowed_scopes is not None
                else None
            ),
        )
    except ValueError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, str(exc)) from None

    try:
        await storage.add_client(client)
    except DuplicateClientError:
        logger.warning("Client registration conflict  client_id=%s", client_id)
        raise HTTPException(
            status.HTTP_409_CONFLICT, "client_id already registered"
        ) from None

    await commit_storage(storage)
    logger.info(
        "Client registered  client_id=%s public=%s redirect_uris=%d",
        client_id,
        client.is_public,
        len(client.redirect_uris),
    )
    return ClientOut(
        client_id=client.client_id,
        client_secret=client_secret,
        redirect_uris=list(client.redirect_uris),
        grant_types=(
            sorted(client.grant_types) if client.grant_types is not None else None
        ),
        allowed_scopes=(
            sorted(client.allowed_scopes) if client.allowed_scopes is not None else None
        ),
    )


@router.post("/{client_id}/secret", response_model=SecretOut)
async def rotate_client_secret(client_id: str, storage: StorageDep) -> SecretOut:
    """Issue a new secret; the old one stops working immediately."""
    client = await storage.get_client(client_id)
    if client is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "unknown client_id")
    if client.is_public:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "public client has no secret")

    new_secret = secrets.token_urlsafe(CLIENT_SECRET_BYTES)
    if not await storage.update_client_secret(client_id, hash_client_secret(new_secret)):
        raise HTTPException(status.HTTP_404_NOT_FOUND, "unknown client_id")

    await commit_storage(storage)
    logger.info("Client secret rotated  client_id=%s", client_id)
    return SecretOut(client_id=client_id, client_secret=new_secret)
