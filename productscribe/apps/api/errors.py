from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from productscribe.core.primitives import epoch_ms, iso_from_ms


_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "INVALID_INPUT",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    415: "UNSUPPORTED_MEDIA_TYPE",
    429: "RATE_LIMIT_EXCEEDED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    # Map status codes to fallback error codes when none are provided.
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def error_payload(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Flat error body shared by every endpoint: {error, code, timestamp, ...details}.
    payload: dict[str, Any] = {"error": message, "code": code}
    if details:
        payload.update({k: v for k, v in details.items() if v is not None})
    payload["timestamp"] = iso_from_ms(epoch_ms())
    return payload


def api_error(
    status_code: int,
    code: str,
    message: str,
    *,
    headers: dict[str, str] | None = None,
    **details: Any,
) -> HTTPException:
    # Build HTTPExceptions carrying a stable code alongside the client message.
    return HTTPException(
        status_code=status_code,
        detail={"code": code, "message": message, **details},
        headers=headers or None,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return JSONResponse(
        content=error_payload(code, message, details), status_code=exc.status_code, headers=exc.headers
    )


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Router-level 404/405 responses use the same envelope.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return JSONResponse(
        content=error_payload(code, message, details), status_code=exc.status_code, headers=exc.headers
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Field names only; submitted values are never echoed back.
    fields = [".".join(str(part) for part in error.get("loc", ())[1:]) for error in exc.errors()]
    payload = error_payload(
        "INVALID_INPUT",
        "Invalid request parameters",
        {"fields": [field for field in fields if field]},
    )
    return JSONResponse(content=payload, status_code=400)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    return JSONResponse(content=error_payload("INTERNAL_ERROR", "Internal server error"), status_code=500)
