from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


def _error_payload(error: str, message: str | None = None, details: object = None) -> dict:
    payload: dict[str, object] = {
        "success": False,
        "error": error,
        "message": message or error,
    }
    if details is not None:
        payload["details"] = details
    return payload


def _detail_text(detail: object) -> str:
    if isinstance(detail, str) and detail.strip():
        return detail.strip()
    if isinstance(detail, dict):
        for key in ("message", "detail", "error"):
            val = detail.get(key)
            if isinstance(val, str) and val.strip():
                return val.strip()
    return "Request failed"


def register_error_handlers(app) -> None:
    async def _handle_http_exception(request: Request, status_code: int, detail: object):
        if status_code >= 500:
            logger.error(
                "request_failed method=%s path=%s status=%s detail=%s",
                request.method,
                request.url.path,
                status_code,
                detail,
            )
        return JSONResponse(status_code=status_code, content=_error_payload(_detail_text(detail)))

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return await _handle_http_exception(request, exc.status_code, exc.detail)

    @app.exception_handler(StarletteHTTPException)
    async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail if getattr(exc, "detail", None) is not None else "Request failed"
        return await _handle_http_exception(request, exc.status_code, detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            error_copy = {key: error[key] for key in ("loc", "msg", "type") if key in error}
            errors.append(error_copy)
        first = errors[0]["msg"] if errors else "Validation error"
        return JSONResponse(
            status_code=422,
            content=_error_payload(first, "Validation error", errors),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=_error_payload("Internal server error"),
        )
