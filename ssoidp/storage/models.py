from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple, get_type_hints

PASSWORD_METHOD = "password"
SUPPORTED_PROVIDERS = ("google", "facebook")

USER_STATUSES = ("active", "disabled")
CLIENT_STATUSES = ("active", "suspended")
APP_ROLES = ("none", "user", "admin", "superadmin")
APP_PERMISSION_STATUSES = ("none", "pending", "approved", "revoked")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(raw: Any) -> Optional[datetime]:
    if raw is None:
        return None
    value = raw if isinstance(raw, datetime) else datetime.fromisoformat(str(raw))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


_DATETIME_FIELDS: Dict[type, Tuple[str, ...]] = {}


def _datetime_fields(cls: type) -> Tuple[str, ...]:
    cached = _DATETIME_FIELDS.get(cls)
    if cached is None:
        hints = get_type_hints(cls)
        cached = tuple(
            f.name
            for f in fields(cls)
            if hints.get(f.name) in (datetime, Optional[datetime])
        )
        _DATETIME_FIELDS[cls] = cached
    return cached


class Document:
    """Round-trips a dataclass through the JSON documents the stores persist."""

    def to_doc(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, (dict, list)):
                value = copy.deepcopy(value)
            doc[f.name] = value
        return doc

    @classmethod
    def from_doc(cls, data: Dict[str, Any]):
        known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
        kwargs = {key: copy.deepcopy(value) for key, value in data.items() if key in known}
        for name in _datetime_fields(cls):
            if name in kwargs:
                kwargs[name] = _parse_datetime(kwargs[name])
        return cls(**kwargs)


@dataclass
class SocialIdentity(Document):
    provider_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    linked_at: datetime = field(default_factory=utcnow)


@dataclass
class User(Document):
    id: str
    email: str
    password_hash: Optional[str] = None
    name: Optional[str] = None
    social_providers: Dict[str, SocialIdentity] = field(default_factory=dict)
    status: str = "active"
    role: str = "user"
    login_count: int = 0
    last_login_at: Optional[datetime] = None
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def login_methods(self) -> List[str]:
        """Methods the user can authenticate with, derived from stored credentials."""
        methods = [PASSWORD_METHOD] if self.password_hash else []
        return methods + sorted(self.social_providers)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_doc(self) -> Dict[str, Any]:
        doc = super().to_doc()
        doc["social_providers"] = {
            provider: identity.to_doc()
            for provider, identity in self.social_providers.items()
        }
        return doc

    @classmethod
    def from_doc(cls, data: Dict[str, Any]) -> "User":
        raw_providers = data.get("social_providers") or {}
        user = super().from_doc({**data, "social_providers": {}})
        user.social_providers = {
            provider: SocialIdentity.from_doc(identity)
            for provider, identity in raw_providers.items()
        }
        return user


@dataclass
class Session(Document):
    id: str
    token_hash: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    device_fingerprint: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    auth_method: str = PASSWORD_METHOD
    last_seen_at: Optional[datetime] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        ttl_minutes: int,
        *,
        device_fingerprint: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        auth_method: str = PASSWORD_METHOD,
        meta: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token_hash=token_hash,
            user_id=user_id,
            created_at=created,
            expires_at=created + timedelta(minutes=ttl_minutes),
            device_fingerprint=device_fingerprint,
            ip_addr=ip_addr,
            user_agent=user_agent,
            auth_method=auth_method,
            last_seen_at=created,
            meta=meta or {},
        )

    def is_active(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now


@dataclass
class OAuthClient(Document):
    client_id: str
    name: str
    redirect_uris: List[str]
    allowed_scopes: List[str]
    client_secret_hash: Optional[str] = None
    require_pkce: bool = False
    grant_types: List[str] = field(default_factory=lambda: ["authorization_code"])
    status: str = "active"
    require_consent: bool = True
    require_app_permission: bool = False
    owner_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_confidential(self) -> bool:
        return self.client_secret_hash is not None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass
class AuthorizationCode(Document):
    code: str
    client_id: str
    user_id: str
    redirect_uri: str
    scope: List[str]
    expires_at: datetime
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    nonce: Optional[str] = None
    auth_time: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None


@dataclass
class OAuthToken(Document):
    """Server-side record of an access or refresh token, addressed by ``jti``."""

    jti: str
    token_type: str
    user_id: str
    client_id: str
    scope: List[str]
    issued_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    token_hash: Optional[str] = None
    parent_jti: Optional[str] = None
    replaced_by: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now


@dataclass
class Consent(Document):
    id: str
    user_id: str
    client_id: str
    scope: List[str]
    granted_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None

    def covers(self, scopes: List[str]) -> bool:
        return self.revoked_at is None and set(scopes) <= set(self.scope)


@dataclass
class MagicLinkToken(Document):
    jti: str
    email: str
    expires_at: datetime
    purpose: str = "login"
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None
    # Server-side only; a link_password token carries the password awaiting confirmation
    pending_password_hash: Optional[str] = None


@dataclass
class PinChallenge(Document):
    id: str
    user_id: str
    pin_hash: str
    expires_at: datetime
    max_attempts: int = 3
    attempts: int = 0
    context: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None


@dataclass
class SocialLoginState(Document):
    state: str
    provider: str
    expires_at: datetime
    code_verifier: Optional[str] = None
    redirect_after: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None


@dataclass
class AppPermission(Document):
    user_id: str
    client_id: str
    role: str = "none"
    status: str = "none"
    requested_at: Optional[datetime] = None
    granted_at: Optional[datetime] = None
    granted_by: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditLogEntry(Document):
    id: str
    action: str
    actor_id: Optional[str]
    resource_type: str
    resource_id: Optional[str]
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    outcome: str = "success"
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
