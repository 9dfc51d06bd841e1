from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ssoidp.api.schemas import Envelope, ErrorBody
from ssoidp.logging import get_correlation_id, get_logger
from ssoidp.service.errors import OAuthError, RateLimitError, ServiceError
from ssoidp.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _is_oauth_path(path: str) -> bool:
    return not path.startswith("/v1/") and path != "/healthz"


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    if get_correlation_id():
        envelope.request_id = get_correlation_id()
    return JSONResponse(
        status_code=status_code, content=jsonable_encoder(envelope), headers=headers
    )


def oauth_error_response(exc: OAuthError) -> JSONResponse:
    """RFC 6749 section 5.2 error body."""
    headers = {"Cache-Control": "no-store", "Pragma": "no-cache"}
    if exc.status_code == 401:
        scheme = "Bearer" if exc.error_code == "invalid_token" else "Basic"
        headers["WWW-Authenticate"] = f'{scheme} error="{exc.error_code}"'
    body = {"error": exc.error_code}
    if exc.description and exc.description != exc.error_code:
        body["error_description"] = exc.description
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


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

    @app.exception_handler(OAuthError)
    async def handle_oauth_error(request: Request, exc: OAuthError):
        logger.warning(
            "oauth_error",
            path=request.url.path,
            method=request.method,
            error=exc.error_code,
            description=exc.description,
        )
        return oauth_error_response(exc)

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
            detail=exc.detail,
        )
        headers = None
        if isinstance(exc, RateLimitError):
            headers = {"Retry-After": str(exc.retry_after)}
        if exc.status_code >= 500:
            return _error_response(500, "internal server error", code="server_error")
        return _error_response(
            exc.status_code, exc.message, exc.detail or None, code=exc.error_code, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        for error in errors:
            # Never echo submitted values (passwords, PINs) back to the caller
            if isinstance(error, dict):
                error.pop("input", None)
                error.pop("ctx", None)
        logger.info("request_validation_failed", path=request.url.path, errors=len(errors))
        if _is_oauth_path(request.url.path):
            return oauth_error_response(OAuthError("invalid_request", "malformed request parameters"))
        return _error_response(400, "invalid request", {"errors": errors}, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            details = error_obj.get("details")
        else:
            message = exc.detail if isinstance(exc.detail, str) else "http error"
            code = None
            details = None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, details, code=code, headers=exc.headers)

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
        if _is_oauth_path(request.url.path):
            return oauth_error_response(OAuthError("server_error", "internal server error"))
        return _error_response(500, "internal server error", code="server_error")
