from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from ssoidp.logging import get_logger, sanitize_snapshot
from ssoidp.storage.models import AuditLogEntry, utcnow

logger = get_logger(__name__)


class AuditAction(str, Enum):
    """Security-relevant state transitions recorded in the audit log."""

    USER_REGISTERED = "user.registered"
    USER_STATUS_CHANGED = "user.status_changed"
    LOGIN_SUCCEEDED = "auth.login_succeeded"
    LOGIN_FAILED = "auth.login_failed"
    LOGOUT = "auth.logout"
    SESSION_REVOKED = "session.revoked"
    SESSIONS_REVOKED = "session.revoked_all"
    MAGIC_LINK_REQUESTED = "magic_link.requested"
    MAGIC_LINK_VERIFIED = "magic_link.verified"
    MAGIC_LINK_REJECTED = "magic_link.rejected"
    PASSWORD_RESET_REQUESTED = "password_reset.requested"
    PASSWORD_RESET_COMPLETED = "password_reset.completed"
    PASSWORD_CHANGED = "password.changed"
    PASSWORD_LINK_REQUESTED = "password.link_requested"
    EMAIL_VERIFICATION_REQUESTED = "email_verification.requested"
    EMAIL_VERIFIED = "email_verification.completed"
    PIN_ISSUED = "pin.issued"
    PIN_VERIFIED = "pin.verified"
    PIN_REJECTED = "pin.rejected"
    PROVIDER_LINKED = "account.provider_linked"
    LOGIN_METHOD_UNLINKED = "account.login_method_unlinked"
    UNLINK_REJECTED = "account.unlink_rejected"
    CLIENT_REGISTERED = "client.registered"
    CLIENT_UPDATED = "client.updated"
    CLIENT_SECRET_ROTATED = "client.secret_rotated"
    CODE_ISSUED = "oauth.code_issued"
    CODE_REJECTED = "oauth.code_rejected"
    TOKEN_ISSUED = "oauth.token_issued"
    TOKEN_REVOKED = "oauth.token_revoked"
    REFRESH_REUSE_DETECTED = "oauth.refresh_reuse_detected"
    CONSENT_GRANTED = "consent.granted"
    CONSENT_REVOKED = "consent.revoked"
    APP_ACCESS_REQUESTED = "app_permission.requested"
    APP_ACCESS_GRANTED = "app_permission.granted"
    APP_ACCESS_REVOKED = "app_permission.revoked"
    RATE_LIMITED = "security.rate_limited"
    SETTING_CHANGED = "settings.changed"


class AuditLogger:
    """Append-only audit trail.

    Snapshots pass through :func:`sanitize_snapshot` so hashes, secrets and
    PINs never land in the log. Entries are also emitted as structlog events
    to feed whatever sink collects application logs.
    """

    def __init__(self, store) -> None:
        self.store = store

    def record(
        self,
        action: AuditAction | str,
        *,
        actor_id: Optional[str] = None,
        resource_type: str = "user",
        resource_id: Optional[str] = None,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        outcome: str = "success",
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditLogEntry:
        action_name = action.value if isinstance(action, AuditAction) else str(action)
        entry = AuditLogEntry(
            id=str(uuid.uuid4()),
            action=action_name,
            actor_id=actor_id,
            resource_type=resource_type,
            resource_id=resource_id,
            before=sanitize_snapshot(before) if before is not None else None,
            after=sanitize_snapshot(after) if after is not None else None,
            outcome=outcome,
            ip=ip,
            user_agent=user_agent,
            details=sanitize_snapshot(details or {}),
            timestamp=utcnow(),
        )
        self.store.append_audit_entry(entry)
        logger.info(
            "audit_event",
            action=action_name,
            actor_id=actor_id,
            resource_type=resource_type,
            resource_id=resource_id,
            outcome=outcome,
        )
        return entry

    def query(
        self,
        *,
        actor_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        return self.store.list_audit_entries(
            actor_id=actor_id,
            resource_id=resource_id,
            action=action,
            limit=max(1, min(limit, 500)),
        )
