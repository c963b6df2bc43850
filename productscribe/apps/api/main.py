from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from productscribe.apps.api.errors import (
    error_payload,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from productscribe.apps.api.routes.admin import router as admin_router
from productscribe.apps.api.routes.generate import router as generate_router
from productscribe.apps.api.routes.health import router as health_router
from productscribe.apps.api.routes.paypal import router as paypal_router
from productscribe.apps.api.routes.public_config import router as public_config_router
from productscribe.apps.api.routes.users import router as users_router
from productscribe.core.config import get_settings
from productscribe.core.logging import configure_logging
from productscribe.services.bootstrap import Components, build_components, shutdown_components
from productscribe.services.policy import SECURITY_HEADERS, cors_headers, parse_origins, validate_origin
from productscribe.services.telemetry import record_request


logger = logging.getLogger(__name__)

# Browser-callable paths and the methods their preflights may advertise.
_PREFLIGHT_METHODS: dict[str, frozenset[str]] = {
    "/firebase-public-config": frozenset({"GET"}),
    "/get-client-ip": frozenset({"GET"}),
    "/check-user-status": frozenset({"GET"}),
    "/create-trial-user": frozenset({"POST"}),
    "/upgrade-to-subscription": frozenset({"POST"}),
    "/generate": frozenset({"POST"}),
    "/admin": frozenset({"POST"}),
    "/paypal": frozenset({"POST"}),
}


def _allowed_origins(app: FastAPI) -> tuple[str, ...]:
    components: Components | None = getattr(app.state, "components", None)
    if components is not None:
        return components.authenticator.config.allowed_origins
    return parse_origins(get_settings().allowed_origins)


def _preflight_response(request: Request) -> Response:
    # Preflights succeed only for an allow-listed origin; nothing else gets CORS headers.
    decision = validate_origin(
        request.headers.get("origin"), _allowed_origins(request.app), allow_missing=False
    )
    if not decision.allowed:
        return JSONResponse(
            content=error_payload("ORIGIN_NOT_ALLOWED", "Origin not allowed"), status_code=403
        )
    response = Response(status_code=204)
    response.headers.update(cors_headers(decision.origin, _PREFLIGHT_METHODS[request.url.path]))
    response.headers["Access-Control-Max-Age"] = "86400"
    return response


def create_app(components: Components | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Build shared components unless a caller injected them.
        owned = app.state.components is None
        if owned:
            app.state.components = await build_components(get_settings())
        try:
            yield
        finally:
            if owned:
                await shutdown_components(app.state.components)
                app.state.components = None

    app = FastAPI(title="ProductScribe API", lifespan=lifespan)
    app.state.components = components

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        if request.method == "OPTIONS" and request.url.path in _PREFLIGHT_METHODS:
            response = _preflight_response(request)
        else:
            response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        record_request(path=request.url.path, status_code=response.status_code, latency_ms=latency_ms)
        # CORS headers computed by the access pipeline for a validated origin.
        auth_headers = getattr(request.state, "auth_headers", None)
        if auth_headers:
            for key, value in auth_headers.items():
                response.headers.setdefault(key, value)
        for key, value in SECURITY_HEADERS.items():
            response.headers.setdefault(key, value)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    app.include_router(health_router)
    # Public, unauthenticated configuration endpoints.
    app.include_router(public_config_router)
    app.include_router(users_router)
    app.include_router(generate_router)
    app.include_router(admin_router)
    app.include_router(paypal_router)
    return app


app = create_app()
