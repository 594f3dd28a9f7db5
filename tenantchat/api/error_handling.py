from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tenantchat.api.schemas import Envelope, ErrorBody
from tenantchat.logging import get_correlation_id, get_logger
from tenantchat.service.errors import ServiceError
from tenantchat.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    403: "plan_limit_exceeded",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    499: "canceled",
    502: "upstream_failure",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def error_envelope(
    message: str,
    details: dict | list | None = None,
    *,
    code: str,
) -> Envelope:
    kwargs = {}
    correlation_id = get_correlation_id()
    if correlation_id:
        kwargs["request_id"] = correlation_id
    return Envelope(
        status="error",
        error=ErrorBody(code=code, message=message, details=details),
        **kwargs,
    )


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    envelope = error_envelope(
        message, details, code=code or _error_code_for_status(status_code)
    )
    return JSONResponse(status_code=status_code, content=jsonable_encoder(envelope))


def service_error_response(exc: ServiceError) -> JSONResponse:
    return _error_response(exc.status_code, exc.message, exc.detail or None, code=exc.error_code)


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
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        # kind differs from error_code for access denials rendered as not_found
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            kind=exc.kind,
            message=exc.message,
            detail=exc.detail,
        )
        return service_error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            errors=errors,
        )
        return _error_response(400, "invalid request", errors, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, dict) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, details)

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
        return _error_response(500, "internal server error", code="server_error")
