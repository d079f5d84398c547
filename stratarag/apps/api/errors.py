from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from stratarag.apps.api.response import error_response


logger = logging.getLogger(__name__)

# Codes clients branch on; any other status falls back to its HTTP name.
_CODES_BY_STATUS = {
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
}


def error_detail(code: str, message: str) -> dict[str, str]:
    """Build an ``HTTPException.detail`` the envelope handler understands."""
    return {"code": code, "message": message}


def _code_for(status_code: int) -> str:
    if status_code in _CODES_BY_STATUS:
        return _CODES_BY_STATUS[status_code]
    try:
        return HTTPStatus(status_code).name
    except ValueError:
        return "UNKNOWN_ERROR"


def _envelope(request: Request, status_code: int, detail: Any) -> dict[str, Any]:
    if isinstance(detail, dict):
        extra = {key: value for key, value in detail.items() if key not in ("code", "message")}
        return error_response(
            request=request,
            code=str(detail.get("code") or _code_for(status_code)),
            message=str(detail.get("message") or "Request failed"),
            details=extra or None,
        )
    message = detail if isinstance(detail, str) and detail else "Request failed"
    return error_response(request=request, code=_code_for(status_code), message=message)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        _envelope(request, exc.status_code, exc.detail),
        status_code=exc.status_code,
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Body and query validation failures keep pydantic's per-field errors under details.
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error method=%s path=%s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        error_response(request=request, code="INTERNAL_ERROR", message="Internal server error"),
        status_code=500,
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
