"""Rendering of errors at the HTTP boundary.

Every error leaves the service as ``{"ok": false, "error": {"code",
"message", "details"?}}``. Application errors are mapped to a status by
their kind alone.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import InterfaceError, OperationalError

from tenantauth.exceptions import AppError, ErrorKind

logger = logging.getLogger(__name__)

STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTHENTICATION: 401,
    ErrorKind.AUTHORIZATION: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.QUOTA_EXCEEDED: 429,
    ErrorKind.INTERNAL: 500,
    ErrorKind.SERVICE_UNAVAILABLE: 503,
    ErrorKind.TIMEOUT: 504,
}

_GENERIC_INTERNAL_MESSAGE = "An unexpected error occurred"


def error_body(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> dict:
    error: Dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return {"ok": False, "error": error}


def error_response(exc: AppError, *, debug: bool = False) -> JSONResponse:
    status = STATUS_BY_KIND[exc.kind]
    if exc.kind == ErrorKind.INTERNAL and not debug:
        body = error_body(exc.code, _GENERIC_INTERNAL_MESSAGE)
    else:
        body = error_body(exc.code, exc.message, exc.details)
    return JSONResponse(body, status_code=status)


def _debug(request: Request) -> bool:
    return request.app.state.context.settings.debug


def _log_context(request: Request) -> dict:
    principal = getattr(request.state, "principal", None)
    return {
        "path": request.url.path,
        "method": request.method,
        "tenant": str(principal.tenant_id) if principal else None,
    }


async def _app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.kind == ErrorKind.INTERNAL:
        logger.error("Internal error: %s", exc.message, extra=_log_context(request))
    return error_response(exc, debug=_debug(request))


async def _validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": [str(p) for p in err.get("loc", ())], "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        error_body("INVALID_REQUEST", "Request validation failed", {"errors": errors}),
        status_code=STATUS_BY_KIND[ErrorKind.VALIDATION],
    )


async def _database_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Database unavailable: %s",
        type(exc).__name__,
        extra=_log_context(request),
    )
    return JSONResponse(
        error_body("SERVICE_UNAVAILABLE", "Service temporarily unavailable"),
        status_code=STATUS_BY_KIND[ErrorKind.SERVICE_UNAVAILABLE],
    )


async def _unhandled_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception", extra=_log_context(request))
    message = f"{type(exc).__name__}: {exc}" if _debug(request) else _GENERIC_INTERNAL_MESSAGE
    return JSONResponse(
        error_body("INTERNAL_SERVER_ERROR", message),
        status_code=STATUS_BY_KIND[ErrorKind.INTERNAL],
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, _app_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_handler)
    app.add_exception_handler(OperationalError, _database_unavailable_handler)
    app.add_exception_handler(InterfaceError, _database_unavailable_handler)
    app.add_exception_handler(Exception, _unhandled_handler)
