from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from xserver.api.schemas import Envelope
from xserver.logging import get_logger
from xserver.service.errors import AccountLockedError, ServiceError
from xserver.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Field labels used in "<label> is required" messages
_FIELD_LABELS = {
    "twoFactorToken": "Two-factor token",
    "two_factor_token": "Two-factor token",
    "code": "Verification code",
    "refreshToken": "Refresh token",
    "refresh_token": "Refresh token",
}


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    """Wrap an error in the standard envelope; ``data`` carries any details."""
    envelope = Envelope(code=status_code, message=message, data=details or None)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def _label(field: Any) -> str:
    name = str(field)
    if name in _FIELD_LABELS:
        return _FIELD_LABELS[name]
    words = []
    for char in name.replace("_", " "):
        if char.isupper():
            words.append(" ")
        words.append(char.lower())
    label = "".join(words).strip()
    return label[:1].upper() + label[1:]


def _validation_message(error: dict) -> str:
    loc = [part for part in error.get("loc", ()) if part not in ("body", "query", "path", "header")]
    if error.get("type") == "missing" and loc:
        return f"{_label(loc[-1])} is required"
    message = str(error.get("msg", "Invalid request"))
    # pydantic prefixes messages raised from validators
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    if loc and error.get("type") != "value_error":
        return f"{_label(loc[-1])}: {message}"
    return message


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = _validation_message(errors[0]) if errors else "Invalid request"
        fields = [
            {
                "field": ".".join(str(p) for p in err.get("loc", ())[1:]),
                "message": _validation_message(err),
            }
            for err in errors
        ]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            message=message,
        )
        return _error_response(400, message, {"errors": fields})

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(400, exc.message, exc.detail)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        headers = None
        if isinstance(exc, AccountLockedError):
            headers = {"Retry-After": str(exc.retry_after_seconds)}
        return _error_response(exc.status_code, exc.message, exc.detail, headers=headers)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
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
        return _error_response(500, "Internal server error")
