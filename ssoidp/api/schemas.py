from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from ssoidp.storage.models import APP_ROLES, SUPPORTED_PROVIDERS

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_token",
    "csrf_invalid",
    "last_login_method",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable, machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class _EmailModel(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


# auth
class RegisterRequest(_EmailModel):
    password: str = Field(..., max_length=256)
    name: Optional[str] = Field(default=None, max_length=128)


class LoginRequest(_EmailModel):
    password: str = Field(..., max_length=256)


class MagicLinkRequest(_EmailModel):
    pass


class PasswordResetRequest(_EmailModel):
    pass


class TokenVerifyRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=4096)


class PasswordResetConfirm(TokenVerifyRequest):
    password: str = Field(..., max_length=256)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=256)


class PinVerifyRequest(BaseModel):
    challenge_id: str = Field(..., max_length=128)
    pin: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$")


class AuthResponse(BaseModel):
    user_id: str
    step_up_required: bool = False
    pin_challenge_id: Optional[str] = None
    session_id: Optional[str] = None
    session_expires_at: Optional[datetime] = None


class AcceptedResponse(BaseModel):
    """Success-shaped answer for enumeration-sensitive requests."""

    accepted: bool = True
    message: str


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    expires_at: datetime
    last_seen_at: Optional[datetime] = None
    auth_method: str
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    current: bool = False


class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    role: str
    status: str
    email_verified: bool
    login_methods: List[str]


class LoginMethodResponse(BaseModel):
    method: str
    can_unlink: bool


class ConsentResponse(BaseModel):
    client_id: str
    scope: List[str]
    granted_at: datetime


# admin
class AdminLinkRequest(_EmailModel):
    provider: str
    provider_id: str = Field(..., min_length=1, max_length=256)
    name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("provider")
    @classmethod
    def _check_provider(cls, value: str) -> str:
        if value not in SUPPORTED_PROVIDERS:
            raise ValueError(f"provider must be one of: {', '.join(SUPPORTED_PROVIDERS)}")
        return value


class ClientCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    redirect_uris: List[str] = Field(..., min_length=1, max_length=20)
    allowed_scopes: List[str] = Field(default_factory=lambda: ["openid", "profile", "email"])
    confidential: bool = True
    require_pkce: bool = False
    grant_types: List[str] = Field(default_factory=lambda: ["authorization_code"])
    require_consent: bool = True
    require_app_permission: bool = False


class ClientUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    redirect_uris: Optional[List[str]] = Field(default=None, max_length=20)
    allowed_scopes: Optional[List[str]] = None
    status: Optional[str] = Field(default=None, pattern="^(active|suspended)$")
    require_pkce: Optional[bool] = None
    grant_types: Optional[List[str]] = None
    require_consent: Optional[bool] = None
    require_app_permission: Optional[bool] = None


class ClientResponse(BaseModel):
    client_id: str
    name: str
    redirect_uris: List[str]
    allowed_scopes: List[str]
    confidential: bool
    require_pkce: bool
    grant_types: List[str]
    status: str
    require_consent: bool
    require_app_permission: bool
    client_secret: Optional[str] = Field(
        default=None, description="Only present right after creation or rotation"
    )


class AppPermissionGrantRequest(BaseModel):
    role: str = "user"

    @field_validator("role")
    @classmethod
    def _check_role(cls, value: str) -> str:
        if value not in APP_ROLES or value == "none":
            raise ValueError("role must be one of: user, admin, superadmin")
        return value


class AppPermissionResponse(BaseModel):
    user_id: str
    client_id: str
    role: str
    status: str
    requested_at: Optional[datetime] = None
    granted_at: Optional[datetime] = None
    granted_by: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None


class AuditEntryResponse(BaseModel):
    id: str
    action: str
    actor_id: Optional[str] = None
    resource_type: str
    resource_id: Optional[str] = None
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    outcome: str
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class StepUpSettingRequest(BaseModel):
    enabled: bool


class UserStatusRequest(BaseModel):
    status: str = Field(..., pattern="^(active|disabled)$")
