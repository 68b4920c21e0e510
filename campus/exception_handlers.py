"""
Exception Handlers

Every error leaving the API uses one envelope:

{
    "error": {
        "status_code": 409,
        "error_code": "BILLING_INCONSISTENT",
        "message": "Billing state for tenant 7 is inconsistent (...)",
        "type": "Conflict",
        "details": {"tenant_id": 7, "local_cap": 150, "billed_cap": 100},
        "path": "/webhooks/stripe"
    }
}

Billing inconsistencies are logged at CRITICAL, other 5xx at ERROR and
client errors at WARNING.
"""

import logging
from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from campus.exceptions import CampusError, ErrorCode

logger = logging.getLogger(__name__)

ERROR_TYPES = {
    400: "Bad Request",
    404: "Not Found",
    409: "Conflict",
    422: "Validation Error",
    500: "Internal Server Error",
    502: "Bad Gateway",
    503: "Service Unavailable",
}

# Error codes for plain HTTPExceptions, which carry only a status
HTTP_ERROR_CODES = {
    400: ErrorCode.VALIDATION_FAILED,
    404: ErrorCode.RESOURCE_NOT_FOUND,
    409: ErrorCode.CONCURRENT_MODIFICATION,
    422: ErrorCode.VALIDATION_FAILED,
    500: ErrorCode.INTERNAL_ERROR,
    502: ErrorCode.GATEWAY_FAILED,
    503: ErrorCode.SERVICE_UNAVAILABLE,
}


def get_error_type(status_code: int) -> str:
    return ERROR_TYPES.get(status_code, "Error")


def get_http_error_code(status_code: int) -> str:
    return HTTP_ERROR_CODES.get(status_code, ErrorCode.UNKNOWN_ERROR).value


def jsonable_details(details: dict[str, Any] | None) -> dict[str, Any] | None:
    """Exception details with Decimals, datetimes and the like turned into strings."""
    if not details:
        return None
    plain = (str, int, float, bool, type(None))
    return {key: value if isinstance(value, plain) else str(value) for key, value in details.items()}


def error_envelope(
    request: Request,
    status_code: int,
    message: str,
    error_code: ErrorCode | str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    body: dict[str, Any] = {
        "status_code": status_code,
        "error_code": error_code.value if isinstance(error_code, ErrorCode) else error_code,
        "message": message,
        "type": get_error_type(status_code),
        "path": request.url.path,
    }
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content={"error": body})


def _log_level(exc: CampusError) -> int:
    if exc.error_code is ErrorCode.BILLING_INCONSISTENT:
        return logging.CRITICAL
    if exc.status_code >= 500:
        return logging.ERROR
    return logging.WARNING


async def campus_exception_handler(request: Request, exc: CampusError) -> JSONResponse:
    logger.log(
        _log_level(exc),
        f"{request.method} {request.url.path} failed with {type(exc).__name__}: {exc.message}",
        extra={
            "status_code": exc.status_code,
            "error_code": exc.error_code.value,
            "path": request.url.path,
            "tenant_id": (exc.details or {}).get("tenant_id"),
        },
    )
    return error_envelope(request, exc.status_code, exc.message, exc.error_code, jsonable_details(exc.details))


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    logger.warning(
        f"{request.method} {request.url.path} rejected: {exc.detail}",
        extra={"status_code": exc.status_code, "path": request.url.path},
    )
    return error_envelope(request, exc.status_code, str(exc.detail), get_http_error_code(exc.status_code))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"] if loc != "body"),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    logger.warning(
        f"Request validation failed on {request.url.path}: {len(errors)} error(s)",
        extra={"status_code": status.HTTP_422_UNPROCESSABLE_ENTITY, "path": request.url.path},
    )
    return error_envelope(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation error",
        ErrorCode.VALIDATION_FAILED,
        {"validation_errors": errors},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Internal details are logged, never returned."""
    logger.error(
        f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}",
        exc_info=exc,
        extra={"path": request.url.path, "method": request.method},
    )
    return error_envelope(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "An unexpected error occurred. Please try again later.",
        ErrorCode.INTERNAL_ERROR,
    )


def register_exception_handlers(app) -> None:
    app.add_exception_handler(CampusError, campus_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
