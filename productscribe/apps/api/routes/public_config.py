from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel

from productscribe.apps.api.deps import client_ip, get_components, public_origin
from productscribe.apps.api.errors import api_error
from productscribe.core.primitives import epoch_ms, iso_from_ms

router = APIRouter(tags=["public"])

_CONFIG_CACHE_SECONDS = 300


class FirebasePublicConfig(BaseModel):
    apiKey: str
    authDomain: str | None = None
    projectId: str
    storageBucket: str | None = None
    messagingSenderId: str | None = None
    appId: str | None = None


class ClientIpResponse(BaseModel):
    ip: str
    timestamp: str


@router.get(
    "/firebase-public-config",
    response_model=FirebasePublicConfig,
    dependencies=[Depends(public_origin(frozenset({"GET"})))],
)
async def firebase_public_config(request: Request, response: Response) -> FirebasePublicConfig:
    # Browser-safe client configuration only; service-account fields never leave the server.
    settings = get_components(request).settings
    if not settings.firebase_api_key or not settings.firebase_project_id:
        raise api_error(500, "CONFIG_MISSING", "Identity provider configuration unavailable")
    response.headers["Cache-Control"] = f"public, max-age={_CONFIG_CACHE_SECONDS}"
    return FirebasePublicConfig(
        apiKey=settings.firebase_api_key,
        authDomain=settings.firebase_auth_domain or f"{settings.firebase_project_id}.firebaseapp.com",
        projectId=settings.firebase_project_id,
        storageBucket=settings.firebase_storage_bucket,
        messagingSenderId=settings.firebase_messaging_sender_id,
        appId=settings.firebase_app_id,
    )


@router.get(
    "/get-client-ip",
    response_model=ClientIpResponse,
    dependencies=[Depends(public_origin(frozenset({"GET"})))],
)
async def get_client_ip(request: Request, response: Response) -> ClientIpResponse:
    response.headers["Cache-Control"] = "no-store"
    return ClientIpResponse(ip=client_ip(request), timestamp=iso_from_ms(epoch_ms()))
