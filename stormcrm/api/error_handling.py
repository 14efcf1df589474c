from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from stormcrm.api.schemas import ErrorBody
from stormcrm.logging import get_logger
from stormcrm.service.errors import IPBlockedError, RateLimitedError, ServiceError
from stormcrm.storage.errors import (
    ConstraintViolation,
    StorageUnavailable,
    UnrecognizedQueryShape,
)

logger = get_logger(__name__)


def _error_response(
    status_code: int,
    error: str,
    message: Optional[str] = None,
    details: Optional[list[Any]] = None,
    *,
    retry_after: Optional[str] = None,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    body = ErrorBody(error=error, message=message, details=details, retry_after=retry_after)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(by_alias=True, exclude_none=True),
        headers=headers,
    )


def _validation_details(errors: list[dict[str, Any]]) -> list[dict[str, str]]:
    details = []
    for err in errors:
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        details.append({"field": ".".join(loc), "message": str(err.get("msg", "invalid value"))})
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers that render every failure as an error body."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            error_type=type(exc).__name__,
        )
        headers = None
        retry_after = None
        if isinstance(exc, (RateLimitedError, IPBlockedError)):
            retry_after = exc.retry_after
            headers = {"Retry-After": str(exc.retry_after_seconds)}
        return _error_response(
            exc.status_code,
            exc.error_code,
            exc.message,
            exc.details,
            retry_after=retry_after,
            headers=headers,
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, "Conflict", exc.message)

    @app.exception_handler(StorageUnavailable)
    async def handle_storage_unavailable(request: Request, exc: StorageUnavailable):
        logger.error(
            "storage_unavailable",
            path=request.url.path,
            method=request.method,
            cause=exc.cause,
        )
        return _error_response(500, "Storage unavailable")

    @app.exception_handler(UnrecognizedQueryShape)
    async def handle_unrecognized_shape(request: Request, exc: UnrecognizedQueryShape):
        logger.error(
            "unrecognized_query_shape",
            path=request.url.path,
            method=request.method,
            shape=type(exc.statement).__name__,
        )
        return _error_response(500, "Internal server error")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc.errors())
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[d["field"] for d in details],
        )
        return _error_response(400, "Validation failed", details=details)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        error = {404: "Not found", 405: "Method not allowed"}.get(exc.status_code, "Request failed")
        return _error_response(exc.status_code, error, message, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "Internal server error")
