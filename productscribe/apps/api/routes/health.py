from __future__ import annotations

import logging

from fastapi import APIRouter, Request, Response
from pydantic import BaseModel

from productscribe.apps.api.deps import get_components
from productscribe.core.errors import DocumentStoreError
from productscribe.persistence.documents import with_store_timeout
from productscribe.services.authenticator import HEALTH_CHECK_COLLECTION, HEALTH_CHECK_DOC

router = APIRouter(tags=["health"])

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str
    store: str


@router.get("/health", response_model=HealthResponse)
async def health(request: Request, response: Response) -> HealthResponse:
    # Bounded connectivity read; a slow store reports degraded instead of hanging the probe.
    components = get_components(request)
    try:
        await with_store_timeout(
            components.store.get(HEALTH_CHECK_COLLECTION, HEALTH_CHECK_DOC),
            components.settings.partition_probe_timeout_ms,
        )
    except DocumentStoreError as exc:
        logger.warning("health_store_unavailable error=%s", type(exc).__name__)
        response.status_code = 503
        return HealthResponse(status="degraded", store="unavailable")
    return HealthResponse(status="ok", store="ok")
