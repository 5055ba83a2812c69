from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from kidsmin.api.schemas import Envelope, ErrorBody
from kidsmin.logging import get_logger
from kidsmin.service.errors import ServiceError
from kidsmin.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "policy_violation",
    500: "server_error",
}

# 5xx bodies never carry internal messages
_SERVER_ERROR_MESSAGE = "Server error"


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
) -> JSONResponse:
    body = ErrorBody(
        code=code or _STATUS_TO_CODE.get(status_code, "server_error"),
        message=message,
        details=details or None,
    )
    return JSONResponse(
        status_code=status_code,
        content=Envelope(status="error", error=body).model_dump(),
    )


def _log_failure(request: Request, event: str, status_code: int, **fields: Any) -> None:
    log = logger.error if status_code >= 500 else logger.warning
    log(
        event,
        path=request.url.path,
        method=request.method,
        status_code=status_code,
        **fields,
    )


def _validation_details(exc: RequestValidationError) -> list[dict]:
    details = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        details.append({"field": ".".join(loc) or None, "message": err.get("msg")})
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Render domain, storage and framework errors as error envelopes."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_failure(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        if exc.status_code >= 500:
            return _error_response(exc.status_code, _SERVER_ERROR_MESSAGE, code=exc.error_code)
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        # Only reached when a service did not translate the violation itself
        _log_failure(request, "constraint_violation", 409, detail=exc.detail)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        _log_failure(
            request,
            "request_validation_failed",
            400,
            fields=[d["field"] for d in details],
        )
        return _error_response(400, "Invalid request body", details, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        error = exc.detail.get("error") if isinstance(exc.detail, dict) else None
        if isinstance(error, dict):
            message = error.get("message", "http error")
            code = error.get("code")
            details = error.get("details")
        else:
            message = exc.detail if isinstance(exc.detail, str) else "http error"
            code = None
            details = None
        _log_failure(request, "http_error", exc.status_code, error_code=code, message=message)
        return _error_response(exc.status_code, message, details, code=code)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, _SERVER_ERROR_MESSAGE, code="server_error")
