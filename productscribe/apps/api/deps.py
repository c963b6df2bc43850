from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable

from fastapi import HTTPException, Request, status

from productscribe.apps.api.errors import api_error
from productscribe.services.audit import resolve_client_ip
from productscribe.services.authenticator import AuthRequest, AuthResult
from productscribe.services.bootstrap import Components
from productscribe.services.identity import VerifiedClaims
from productscribe.services.policy import MUTATING_METHODS, EndpointPolicy, cors_headers, validate_origin


logger = logging.getLogger(__name__)


def get_components(request: Request) -> Components:
    # Components are built once per process by the lifespan or injected by tests.
    components = getattr(request.app.state, "components", None)
    if components is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Service temporarily unavailable"},
        )
    return components


def client_ip(request: Request) -> str:
    peer = request.client.host if request.client else None
    return resolve_client_ip(request.headers, peer)


async def _request_body(request: Request) -> dict[str, Any] | None:
    # Query parameters stand in for the body on reads so userId checks apply uniformly.
    if request.method.upper() not in MUTATING_METHODS:
        return dict(request.query_params) or None
    raw = await request.body()
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


async def build_auth_request(request: Request, policy: EndpointPolicy, components: Components) -> AuthRequest:
    return AuthRequest(
        method=request.method.upper(),
        endpoint=policy.name,
        client_ip=client_ip(request),
        origin=request.headers.get("origin"),
        authorization=request.headers.get("authorization"),
        user_agent=request.headers.get("user-agent") or "unknown",
        cookie_header=request.headers.get("cookie"),
        csrf_header=request.headers.get(components.settings.csrf_header_name),
        body=await _request_body(request),
    )


def _denial_error(result: AuthResult) -> HTTPException:
    # Carry CORS and rate-limit headers on denials so browsers can read the error.
    headers = dict(result.headers)
    if result.retry_after_s is not None:
        headers["Retry-After"] = str(result.retry_after_s)
    if result.status_code == status.HTTP_401_UNAUTHORIZED:
        headers["WWW-Authenticate"] = "Bearer"
    return api_error(
        result.status_code,
        result.code or "AUTH_FORBIDDEN",
        result.message or "Access denied",
        headers=headers,
        retryAfter=result.retry_after_s,
        operationId=result.operation_id,
        **result.details,
    )


def require_access(policy_name: str) -> Callable[[Request], Awaitable[AuthResult]]:
    # Dependency factory running the fail-safe pipeline for one endpoint policy.
    async def _dependency(request: Request) -> AuthResult:
        components = get_components(request)
        policy = components.policies[policy_name]
        auth_request = await build_auth_request(request, policy, components)
        result = await components.authenticator.authenticate(auth_request, policy)
        if not result.authenticated:
            raise _denial_error(result)
        request.state.auth_headers = result.headers
        return result

    return _dependency


def require_claims(result: AuthResult) -> VerifiedClaims:
    # Authenticated endpoints always carry claims; anything else is a pipeline bug.
    if result.claims is None:
        logger.error("authenticated_result_without_claims operation_id=%s", result.operation_id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Authentication required"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return result.claims


def public_origin(methods: frozenset[str]) -> Callable[[Request], Awaitable[None]]:
    # Unauthenticated endpoints still refuse foreign origins; a missing Origin is a same-site call.
    async def _dependency(request: Request) -> None:
        components = get_components(request)
        decision = validate_origin(
            request.headers.get("origin"),
            components.authenticator.config.allowed_origins,
            allow_missing=True,
        )
        if not decision.allowed:
            logger.warning("public_origin_rejected path=%s", request.url.path)
            raise api_error(status.HTTP_403_FORBIDDEN, "ORIGIN_NOT_ALLOWED", "Origin not allowed")
        request.state.auth_headers = cors_headers(decision.origin, methods)

    return _dependency
