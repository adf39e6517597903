from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from clawkeeper.core.errors import ClawkeeperError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    402: "CREDITS_EXHAUSTED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def error_body(message: str, code: str) -> dict[str, Any]:
    # Agents only read "error"; "code" is for dashboards and SDKs.
    return {"error": message, "code": code}


async def clawkeeper_exception_handler(request: Request, exc: ClawkeeperError) -> JSONResponse:
    # Domain errors carry their own status and message; quota messages reach the agent verbatim.
    if exc.status_code >= 500:
        logger.error(
            "request_failed path=%s code=%s request_id=%s",
            request.url.path,
            exc.code,
            getattr(request.state, "request_id", None),
            exc_info=exc,
        )
    return JSONResponse(content=error_body(exc.message, exc.code), status_code=exc.status_code)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict):
        message = str(detail.get("message") or "Request failed")
        code = str(detail.get("code") or _default_code(exc.status_code))
    else:
        message = str(detail) if detail else "Request failed"
        code = _default_code(exc.status_code)
    return JSONResponse(
        content=error_body(message, code),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Query/header validation and unparseable bodies are client errors, never 422.
    errors = exc.errors()
    if any(error.get("type") == "json_invalid" for error in errors):
        return JSONResponse(content=error_body("Invalid JSON body", "BAD_REQUEST"), status_code=400)
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg") or "Invalid request"
    if location:
        message = f"{location}: {message}"
    return JSONResponse(content=error_body(message, "BAD_REQUEST"), status_code=400)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error body.
    logger.exception(
        "request_unhandled_error path=%s request_id=%s",
        request.url.path,
        getattr(request.state, "request_id", None),
        exc_info=exc,
    )
    return JSONResponse(content=error_body("Internal server error", "INTERNAL_ERROR"), status_code=500)
