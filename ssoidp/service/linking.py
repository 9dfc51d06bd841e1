from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from ssoidp.logging import get_logger
from ssoidp.service.audit import AuditAction, AuditLogger
from ssoidp.service.errors import (
    ConflictError,
    InvariantViolation,
    NotFoundError,
    ValidationError,
)
from ssoidp.storage.errors import ConstraintViolation
from ssoidp.storage.models import SUPPORTED_PROVIDERS, SocialIdentity, User, utcnow

logger = get_logger(__name__)


def _conflict_from(exc: ConstraintViolation) -> ConflictError:
    messages = {
        "provider_linked": "provider already linked",
        "provider_in_use": "provider identity is linked to another account",
        "email_exists": "email already registered",
    }
    return ConflictError(messages.get(exc.reason, exc.message), detail={"reason": exc.reason})


class AccountLinker:
    """Merges and removes login methods on a single user record.

    The "at least one login method" rule is enforced three times: the
    ``can_unlink`` flag exposed to clients, the pre-check in :meth:`unlink`,
    and the store's locked re-check right before the write.
    """

    def __init__(self, store, audit: AuditLogger) -> None:
        self.store = store
        self.audit = audit

    def describe_methods(self, user: User) -> List[Dict[str, Any]]:
        removable = len(user.login_methods) > 1
        return [{"method": method, "can_unlink": removable} for method in user.login_methods]

    def register_password(
        self,
        email: str,
        password_hash: str,
        *,
        name: Optional[str] = None,
        actor_ip: Optional[str] = None,
    ) -> Tuple[User, bool]:
        """Create a password account.

        Returns ``(user, created)``. For a social-only account nothing is
        written and ``created`` is False: the password may only be attached
        through :meth:`link_password` once the owner has confirmed it.
        """
        existing = self.store.get_user_by_email(email)
        if existing is None:
            try:
                user = self.store.create_user(email, password_hash=password_hash, name=name)
            except ConstraintViolation as exc:
                raise _conflict_from(exc) from exc
            self.audit.record(
                AuditAction.USER_REGISTERED,
                actor_id=user.id,
                resource_id=user.id,
                after={"login_methods": user.login_methods},
                ip=actor_ip,
                details={"method": "password"},
            )
            return user, True
        if existing.password_hash:
            raise ConflictError("email already registered", detail={"reason": "email_exists"})
        return existing, False

    def link_password(
        self, user_id: str, password_hash: str, *, actor_ip: Optional[str] = None
    ) -> User:
        """Attach a confirmed password to an account that has none."""
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        if user.password_hash:
            raise ConflictError("account already has a password", detail={"reason": "password_set"})
        updated = self.store.set_password_hash(user.id, password_hash)
        if updated is None:
            raise NotFoundError("user not found")
        self._audit_link(updated, user.login_methods, "password", actor_id=user.id, ip=actor_ip, automatic=False)
        return updated

    def resolve_social_identity(
        self,
        provider: str,
        identity: SocialIdentity,
        *,
        actor_ip: Optional[str] = None,
    ) -> Tuple[User, bool]:
        """Find or create the user behind a verified provider identity.

        A known ``(provider, provider_id)`` signs straight in. Otherwise a user
        with the same email absorbs the provider. Only when neither exists is a
        new account created. Returns ``(user, created)``.
        """
        if provider not in SUPPORTED_PROVIDERS:
            raise ValidationError(f"unsupported provider: {provider}")
        linked = self.store.get_user_by_provider(provider, identity.provider_id)
        if linked is not None:
            return linked, False
        if not identity.email:
            raise ValidationError("provider did not return an email address")
        existing = self.store.get_user_by_email(identity.email)
        if existing is not None:
            before = existing.login_methods
            try:
                updated = self.store.add_social_provider(existing.id, provider, identity)
            except ConstraintViolation as exc:
                raise _conflict_from(exc) from exc
            self._audit_link(updated, before, provider, actor_id=existing.id, ip=actor_ip, automatic=True)
            return updated, False
        try:
            user = self.store.create_user(
                identity.email,
                name=identity.name,
                social_providers={provider: identity},
                email_verified=True,
            )
        except ConstraintViolation as exc:
            raise _conflict_from(exc) from exc
        self.audit.record(
            AuditAction.USER_REGISTERED,
            actor_id=user.id,
            resource_id=user.id,
            after={"login_methods": user.login_methods},
            ip=actor_ip,
            details={"method": provider},
        )
        return user, True

    def admin_link(
        self,
        actor_id: str,
        user_id: str,
        provider: str,
        *,
        provider_id: str,
        email: str,
        name: Optional[str] = None,
        actor_ip: Optional[str] = None,
    ) -> User:
        if provider not in SUPPORTED_PROVIDERS:
            raise ValidationError(f"unsupported provider: {provider}")
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        # An exact email match keeps a forged provider identity off the account
        if email.strip().lower() != user.email:
            raise ValidationError(
                "provider email does not match the account email",
                detail={"reason": "email_mismatch"},
            )
        if provider in user.social_providers:
            raise ConflictError("provider already linked", detail={"reason": "provider_linked"})
        identity = SocialIdentity(provider_id=provider_id, email=user.email, name=name, linked_at=utcnow())
        try:
            updated = self.store.add_social_provider(user.id, provider, identity)
        except ConstraintViolation as exc:
            raise _conflict_from(exc) from exc
        self._audit_link(updated, user.login_methods, provider, actor_id=actor_id, ip=actor_ip, automatic=False)
        return updated

    def unlink(
        self,
        actor_id: str,
        user_id: str,
        method: str,
        *,
        actor_ip: Optional[str] = None,
    ) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        before = user.login_methods
        if method not in before:
            raise ValidationError("login method not linked", detail={"method": method})
        if len(before) <= 1:
            self._reject_unlink(actor_id, user, method, actor_ip)
        try:
            updated = self.store.remove_login_method(user_id, method)
        except ConstraintViolation as exc:
            if exc.reason == "last_login_method":
                self._reject_unlink(actor_id, user, method, actor_ip)
            raise ValidationError("login method not linked", detail={"method": method}) from exc
        if updated is None:
            raise NotFoundError("user not found")
        self.audit.record(
            AuditAction.LOGIN_METHOD_UNLINKED,
            actor_id=actor_id,
            resource_id=user_id,
            before={"login_methods": before},
            after={"login_methods": updated.login_methods},
            ip=actor_ip,
            details={"method": method},
        )
        logger.info("login_method_unlinked", user_id=user_id, method=method, actor_id=actor_id)
        return updated

    def _reject_unlink(self, actor_id: str, user: User, method: str, ip: Optional[str]) -> None:
        self.audit.record(
            AuditAction.UNLINK_REJECTED,
            actor_id=actor_id,
            resource_id=user.id,
            before={"login_methods": user.login_methods},
            after={"login_methods": user.login_methods},
            outcome="denied",
            ip=ip,
            details={"method": method, "reason": "last_login_method"},
        )
        raise InvariantViolation(
            "cannot remove the last login method", detail={"method": method}
        )

    def _audit_link(
        self,
        user: User,
        before: List[str],
        method: str,
        *,
        actor_id: str,
        ip: Optional[str],
        automatic: bool,
    ) -> None:
        self.audit.record(
            AuditAction.PROVIDER_LINKED,
            actor_id=actor_id,
            resource_id=user.id,
            before={"login_methods": before},
            after={"login_methods": user.login_methods},
            ip=ip,
            details={"method": method, "automatic": automatic},
        )
        logger.info("login_method_linked", user_id=user.id, method=method, automatic=automatic)
