from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional

from ssoidp.logging import get_logger
from ssoidp.service.audit import AuditAction, AuditLogger
from ssoidp.service.errors import NotFoundError, ValidationError
from ssoidp.storage.models import APP_ROLES, AppPermission, utcnow

logger = get_logger(__name__)


class AppPermissionService:
    """Per-user, per-client access records with an admin approval step.

    A user asks for access (``pending``); an admin approves with a role or
    revokes. Only ``approved`` records with a role other than ``none`` open
    the authorize endpoint for clients flagged ``require_app_permission``.
    """

    def __init__(self, store, audit: AuditLogger, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.audit = audit
        self._clock = clock

    def _require_client(self, client_id: str) -> None:
        if self.store.get_client(client_id) is None:
            raise NotFoundError("client not found")

    def get(self, user_id: str, client_id: str) -> Optional[AppPermission]:
        return self.store.get_app_permission(user_id, client_id)

    def list(
        self,
        *,
        user_id: Optional[str] = None,
        client_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[AppPermission]:
        return self.store.list_app_permissions(user_id=user_id, client_id=client_id, status=status)

    def request_access(self, user_id: str, client_id: str) -> AppPermission:
        self._require_client(client_id)
        existing = self.store.get_app_permission(user_id, client_id)
        if existing is not None and existing.status in {"pending", "approved"}:
            return existing
        now = self._clock()
        permission = AppPermission(
            user_id=user_id,
            client_id=client_id,
            role="none",
            status="pending",
            requested_at=now,
            updated_at=now,
        )
        self.store.save_app_permission(permission)
        self.audit.record(
            AuditAction.APP_ACCESS_REQUESTED,
            actor_id=user_id,
            resource_type="app_permission",
            resource_id=client_id,
            before=existing.to_doc() if existing else None,
            after=permission.to_doc(),
        )
        return permission

    def grant(self, actor_id: str, user_id: str, client_id: str, role: str = "user") -> AppPermission:
        if role not in APP_ROLES or role == "none":
            raise ValidationError("invalid role", detail={"role": role})
        self._require_client(client_id)
        if self.store.get_user(user_id) is None:
            raise NotFoundError("user not found")
        existing = self.store.get_app_permission(user_id, client_id)
        now = self._clock()
        permission = AppPermission(
            user_id=user_id,
            client_id=client_id,
            role=role,
            status="approved",
            requested_at=existing.requested_at if existing else None,
            granted_at=now,
            granted_by=actor_id,
            updated_at=now,
        )
        self.store.save_app_permission(permission)
        self.audit.record(
            AuditAction.APP_ACCESS_GRANTED,
            actor_id=actor_id,
            resource_type="app_permission",
            resource_id=f"{user_id}:{client_id}",
            before=existing.to_doc() if existing else None,
            after=permission.to_doc(),
        )
        logger.info("app_permission_granted", user_id=user_id, client_id=client_id, role=role)
        return permission

    def revoke(self, actor_id: str, user_id: str, client_id: str) -> AppPermission:
        existing = self.store.get_app_permission(user_id, client_id)
        if existing is None:
            raise NotFoundError("permission not found")
        now = self._clock()
        permission = AppPermission.from_doc(existing.to_doc())
        permission.status = "revoked"
        permission.role = "none"
        permission.revoked_at = now
        permission.revoked_by = actor_id
        permission.updated_at = now
        self.store.save_app_permission(permission)
        self.audit.record(
            AuditAction.APP_ACCESS_REVOKED,
            actor_id=actor_id,
            resource_type="app_permission",
            resource_id=f"{user_id}:{client_id}",
            before=existing.to_doc(),
            after=permission.to_doc(),
        )
        return permission

    def has_access(self, user_id: str, client_id: str) -> bool:
        permission = self.store.get_app_permission(user_id, client_id)
        return (
            permission is not None
            and permission.status == "approved"
            and permission.role != "none"
        )
