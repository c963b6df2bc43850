from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from productscribe.apps.api.deps import get_components, require_access, require_claims
from productscribe.services.authenticator import AuthResult

router = APIRouter(tags=["admin"])

logger = logging.getLogger(__name__)


class AdminActionRequest(BaseModel):
    action: str = Field(min_length=1, max_length=64)
    # Target user of the action, not the caller.
    userId: str | None = Field(default=None, max_length=128)
    userData: dict[str, Any] | None = None


@router.post("/admin")
async def admin_action(
    payload: AdminActionRequest,
    request: Request,
    auth: AuthResult = Depends(require_access("admin")),
) -> JSONResponse:
    claims = require_claims(auth)
    logger.info(
        "admin_action action=%s admin=%s target=%s operation_id=%s",
        payload.action,
        claims.user_id,
        payload.userId,
        auth.operation_id,
    )
    result = await get_components(request).users.run_admin_action(
        payload.action, user_id=payload.userId, user_data=payload.userData
    )
    return JSONResponse(content=jsonable_encoder(result.body), status_code=result.status_code)
