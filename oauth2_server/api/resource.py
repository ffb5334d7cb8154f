from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from oauth2_server.api.dependencies import require_scope
from oauth2_server.models.token import AccessToken

logger = logging.getLogger(__name__)

router = APIRouter(tags=["resource"])


class ProfileOut(BaseModel):
    subject: str
    client_id: str
    scope: str
    message: str


@router.get("/resource/me", response_model=ProfileOut)
async def get_my_profile(
    token: Annotated[AccessToken, Depends(require_scope())],
) -> ProfileOut:
    """Protected endpoint: requires a valid bearer access token.

    The subject is the resource owner, or the client itself for tokens
    from the client_credentials grant.
    """
    subject = token.user_id or token.client_id
    logger.info("Resource accessed  subject=%s client_id=%s", subject, token.client_id)
    return ProfileOut(
        subject=subject,
        client_id=token.client_id,
        scope=token.scope,
        message=f"Hello {subject}, you have a valid token.",
    )
