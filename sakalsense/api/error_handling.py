from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from sakalsense.api.schemas import Envelope, ErrorBody
from sakalsense.logging import get_correlation_id, get_logger
from sakalsense.service.errors import RateLimitedError, ServiceError
from sakalsense.storage.errors import ConstraintViolation

logger = get_logger(__name__)

UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred"

# Stable error codes mapped to HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    """Map HTTP status to a stable error code."""
    return _STATUS_TO_CODE.get(status_code, "server_error")


def error_envelope(
    message: str,
    *,
    code: str,
    details: Dict[str, Any] | List[Any] | None = None,
) -> Envelope:
    error_body = ErrorBody(code=code, message=message, details=details or None)
    cid = get_correlation_id()
    if cid:
        return Envelope(status="error", error=error_body, request_id=cid)
    return Envelope(status="error", error=error_body)


def _error_response(
    status_code: int,
    message: str,
    details: Dict[str, Any] | List[Any] | None = None,
    code: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    envelope = error_envelope(message, code=code or _error_code_for_status(status_code), details=details)
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(envelope.model_dump()),
        headers=headers,
    )


def _validation_details(exc: RequestValidationError) -> List[Dict[str, Any]]:
    # submitted values are not echoed back; they may be passwords
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        error_code = getattr(exc, "error_code", None)
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=error_code,
            message=exc.message,
        )
        headers = None
        if isinstance(exc, RateLimitedError):
            headers = {"Retry-After": str(exc.retry_after)}
        message = exc.message if exc.status_code < 500 else UNEXPECTED_ERROR_MESSAGE
        return _error_response(exc.status_code, message, exc.detail, code=error_code, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=details,
        )
        first = details[0]["msg"] if details else "invalid request"
        return _error_response(400, first, details, code="validation_error")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
            message = UNEXPECTED_ERROR_MESSAGE
        return _error_response(exc.status_code, message, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, UNEXPECTED_ERROR_MESSAGE, code="server_error")
