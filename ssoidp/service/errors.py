from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable, machine-readable
    ``error_code`` that clients can branch on:

    - validation_error (400)
    - last_login_method (400)
    - unauthorized (401)
    - invalid_token (401)
    - forbidden (403)
    - csrf_invalid (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Bad or missing credentials (401)."""
    status_code = 401
    error_code = "unauthorized"


class AuthorizationError(ServiceError):
    """Caller is known but not allowed to perform the operation (403)."""
    status_code = 403
    error_code = "forbidden"


class TokenError(ServiceError):
    """Token or session is expired, invalid, revoked or already used (401)."""
    status_code = 401
    error_code = "invalid_token"


class RateLimitError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "rate limit exceeded", *, retry_after: int = 1, **kwargs) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        self.retry_after = max(1, int(retry_after))
        detail.setdefault("retryAfter", self.retry_after)
        super().__init__(message, detail=detail, **kwargs)


class CsrfError(ServiceError):
    """Missing or forged CSRF token (403)."""
    status_code = 403
    error_code = "csrf_invalid"


class ConflictError(ServiceError):
    """Resource conflict, e.g. a provider that is already linked (409)."""
    status_code = 409
    error_code = "conflict"


class InvariantViolation(ServiceError):
    """Operation would leave the account without any login method (400)."""
    status_code = 400
    error_code = "last_login_method"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# RFC 6749 section 5.2 plus the RFC 6750, RFC 7009 and OIDC prompt=none additions
OAUTH_ERROR_STATUS = {
    "invalid_request": 400,
    "invalid_client": 401,
    "invalid_grant": 400,
    "unauthorized_client": 400,
    "unsupported_grant_type": 400,
    "unsupported_response_type": 400,
    "invalid_scope": 400,
    "access_denied": 403,
    "login_required": 400,
    "consent_required": 400,
    "invalid_token": 401,
    "server_error": 500,
}


class OAuthError(ServiceError):
    """Protocol error rendered with the OAuth2 error vocabulary.

    ``error_code`` is always one of ``OAUTH_ERROR_STATUS``; the message doubles
    as ``error_description``.
    """

    status_code = 400
    error_code = "invalid_request"

    def __init__(
        self,
        error: str,
        description: str = "",
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        if error not in OAUTH_ERROR_STATUS:
            raise ValueError(f"unknown OAuth error code: {error}")
        super().__init__(
            description or error,
            status_code=status_code or OAUTH_ERROR_STATUS[error],
            detail=detail,
            error_code=error,
        )

    @property
    def description(self) -> str:
        return self.message


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "TokenError",
    "RateLimitError",
    "CsrfError",
    "ConflictError",
    "InvariantViolation",
    "NotFoundError",
    "ServerError",
    "OAuthError",
    "OAUTH_ERROR_STATUS",
]
