from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from ssoidp.logging import get_logger
from ssoidp.service.audit import AuditAction, AuditLogger
from ssoidp.service.email import EmailService
from ssoidp.service.errors import (
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    TokenError,
    ValidationError,
)
from ssoidp.service.linking import AccountLinker
from ssoidp.service.passwordless import (
    LINK_PASSWORD_PURPOSE,
    LOGIN_PURPOSE,
    PASSWORD_RESET_PURPOSE,
    VERIFY_EMAIL_PURPOSE,
    MagicLinkIssuer,
    PinChallengeIssuer,
    StepUpPolicy,
)
from ssoidp.service.sessions import CredentialStore
from ssoidp.storage.models import PASSWORD_METHOD, USER_STATUSES, Session, User, utcnow

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 256
MAGIC_LINK_METHOD = "magic_link"

_BAD_CREDENTIALS = "invalid email or password"


def make_password_hasher() -> PasswordHasher:
    return PasswordHasher(type=Type.ID)


@dataclass
class LoginOutcome:
    """Result of a primary login step.

    Either a session was created (``token``/``session`` set), a PIN step-up
    is pending (``pin_challenge_id`` set), or the login waits on a link sent
    to the account email (``confirmation_sent``). Only the first opens a
    session.
    """

    user: User
    token: Optional[str] = None
    session: Optional[Session] = None
    pin_challenge_id: Optional[str] = None
    confirmation_sent: bool = False

    @property
    def step_up_required(self) -> bool:
        return self.pin_challenge_id is not None


class AuthService:
    """Password, magic-link, PIN and social login orchestration."""

    def __init__(
        self,
        store,
        credentials: CredentialStore,
        linker: AccountLinker,
        magic_links: MagicLinkIssuer,
        pins: PinChallengeIssuer,
        step_up: StepUpPolicy,
        email: EmailService,
        audit: AuditLogger,
        *,
        hasher: Optional[PasswordHasher] = None,
        magic_link_ttl_minutes: int = 15,
        password_reset_ttl_minutes: int = 30,
        email_verification_ttl_minutes: int = 24 * 60,
        allow_registration: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.linker = linker
        self.magic_links = magic_links
        self.pins = pins
        self.step_up = step_up
        self.email = email
        self.audit = audit
        self._pwd_hasher = hasher or make_password_hasher()
        self.magic_link_ttl_minutes = magic_link_ttl_minutes
        self.password_reset_ttl_minutes = password_reset_ttl_minutes
        self.email_verification_ttl_minutes = email_verification_ttl_minutes
        self.allow_registration = allow_registration
        self._clock = clock
        # Verified against when the email is unknown so both paths cost one argon2 check
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    # passwords
    def hash_password(self, password: str) -> str:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
        if len(password) > MAX_PASSWORD_LENGTH:
            raise ValidationError("password is too long")
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: Optional[User], password: str) -> bool:
        stored_hash = user.password_hash if user and user.password_hash else self._dummy_hash
        try:
            matched = self._pwd_hasher.verify(stored_hash, password or "")
        except (VerifyMismatchError, VerificationError, InvalidHash):
            return False
        return matched and user is not None and user.password_hash is not None

    # registration and login
    async def register(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginOutcome:
        if not self.allow_registration:
            raise ValidationError("registration is disabled")
        password_hash = self.hash_password(password)
        user, created = self.linker.register_password(
            email, password_hash, name=name, actor_ip=ip_addr
        )
        if not created:
            # Social-only account: the owner must confirm from their inbox first
            await self._send_password_link(user, password_hash, ip_addr=ip_addr, user_agent=user_agent)
            return LoginOutcome(user=user, confirmation_sent=True)
        logger.info("user_registered", user_id=user.id)
        await self.request_email_verification(user, ip_addr=ip_addr, user_agent=user_agent)
        return await self._complete_login(
            user, PASSWORD_METHOD, ip_addr=ip_addr, user_agent=user_agent, allow_step_up=False
        )

    async def _send_password_link(
        self,
        user: User,
        password_hash: str,
        *,
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        token = self.magic_links.issue(
            user.email,
            purpose=LINK_PASSWORD_PURPOSE,
            ttl_minutes=self.password_reset_ttl_minutes,
            pending_password_hash=password_hash,
        )
        receipt = await self.email.send_password_link(
            user.email, token, ttl_minutes=self.password_reset_ttl_minutes
        )
        self.audit.record(
            AuditAction.PASSWORD_LINK_REQUESTED,
            actor_id=user.id,
            resource_id=user.id,
            ip=ip_addr,
            user_agent=user_agent,
            details={"delivered": receipt is not None},
        )

    async def confirm_password_link(
        self,
        token: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginOutcome:
        """Attach the password held by a ``link_password`` link and sign in."""
        verified = self.magic_links.verify(token, purpose=LINK_PASSWORD_PURPOSE)
        if not verified.ok:
            self.audit.record(
                AuditAction.MAGIC_LINK_REJECTED,
                outcome="denied",
                ip=ip_addr,
                user_agent=user_agent,
                details={"reason": verified.reason, "purpose": LINK_PASSWORD_PURPOSE},
            )
            verified.unwrap()
        pending = verified.value
        user = self.store.get_user_by_email(pending.email)
        if user is None or not user.is_active or not pending.pending_password_hash:
            raise TokenError("invalid or expired link")
        user = self.linker.link_password(user.id, pending.pending_password_hash, actor_ip=ip_addr)
        if not user.email_verified:
            user = self.store.mark_email_verified(user.id) or user
        return await self._complete_login(
            user, PASSWORD_METHOD, ip_addr=ip_addr, user_agent=user_agent, allow_step_up=False
        )

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginOutcome:
        user = self.store.get_user_by_email(email or "")
        if not self.verify_password(user, password) or not user.is_active:
            self.audit.record(
                AuditAction.LOGIN_FAILED,
                actor_id=user.id if user else None,
                resource_id=user.id if user else None,
                outcome="denied",
                ip=ip_addr,
                user_agent=user_agent,
                details={
                    "method": PASSWORD_METHOD,
                    "reason": "unknown_email" if user is None else (
                        "disabled" if not user.is_active else "bad_password"
                    ),
                },
            )
            raise AuthenticationError(_BAD_CREDENTIALS)
        if self._pwd_hasher.check_needs_rehash(user.password_hash):
            user = self.store.set_password_hash(user.id, self._pwd_hasher.hash(password)) or user
        return await self._complete_login(
            user, PASSWORD_METHOD, ip_addr=ip_addr, user_agent=user_agent
        )

    async def complete_social_login(
        self,
        user: User,
        provider: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginOutcome:
        if not user.is_active:
            raise AuthenticationError("account is disabled")
        return await self._complete_login(user, provider, ip_addr=ip_addr, user_agent=user_agent)

    async def _complete_login(
        self,
        user: User,
        auth_method: str,
        *,
        ip_addr: Optional[str],
        user_agent: Optional[str],
        allow_step_up: bool = True,
    ) -> LoginOutcome:
        """Count the login, then either open a session or start a PIN step-up."""
        user = self.store.record_login(user.id, self._clock()) or user
        if allow_step_up and self.step_up.requires_step_up(user):
            challenge, pin = self.pins.issue(
                user.id,
                context={"auth_method": auth_method, "ip_addr": ip_addr, "user_agent": user_agent},
            )
            receipt = await self.email.send_pin(user.email, pin, ttl_seconds=self.pins.ttl_seconds)
            self.audit.record(
                AuditAction.PIN_ISSUED,
                actor_id=user.id,
                resource_id=user.id,
                ip=ip_addr,
                user_agent=user_agent,
                details={
                    "challenge_id": challenge.id,
                    "login_count": user.login_count,
                    "delivered": receipt is not None,
                },
            )
            return LoginOutcome(user=user, pin_challenge_id=challenge.id)
        token, session = self.credentials.create_session(
            user.id, ip_addr=ip_addr, user_agent=user_agent, auth_method=auth_method
        )
        self.audit.record(
            AuditAction.LOGIN_SUCCEEDED,
            actor_id=user.id,
            resource_id=user.id,
            ip=ip_addr,
            user_agent=user_agent,
            details={"method": auth_method, "session_id": session.id},
        )
        return LoginOutcome(user=user, token=token, session=session)

    async def verify_pin(
        self,
        challenge_id: str,
        pin: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginOutcome:
        verified = self.pins.verify(challenge_id, pin)
        if not verified.ok:
            pending = self.store.get_pin_challenge(challenge_id)
            self.audit.record(
                AuditAction.PIN_REJECTED,
                actor_id=pending.user_id if pending else None,
                resource_id=pending.user_id if pending else None,
                outcome="denied",
                ip=ip_addr,
                user_agent=user_agent,
                details={"challenge_id": challenge_id, "reason": verified.reason},
            )
            verified.unwrap()
        challenge = verified.value
        user = self.store.get_user(challenge.user_id)
        if user is None or not user.is_active:
            raise TokenError("invalid or expired code")
        auth_method = challenge.context.get("auth_method") or PASSWORD_METHOD
        token, session = self.credentials.create_session(
            user.id,
            ip_addr=ip_addr,
            user_agent=user_agent,
            auth_method=auth_method,
            meta={"step_up": "pin"},
        )
        self.audit.record(
            AuditAction.PIN_VERIFIED,
            actor_id=user.id,
            resource_id=user.id,
            ip=ip_addr,
            user_agent=user_agent,
            details={"challenge_id": challenge.id, "session_id": session.id},
        )
        return LoginOutcome(user=user, token=token, session=session)

    # passwordless
    async def request_magic_link(
        self,
        email: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Send a sign-in link; the caller sees the same outcome either way."""
        user = self.store.get_user_by_email(email or "")
        if user is None or not user.is_active:
            self.audit.record(
                AuditAction.MAGIC_LINK_REQUESTED,
                outcome="ignored",
                ip=ip_addr,
                user_agent=user_agent,
                details={"reason": "unknown_email" if user is None else "disabled"},
            )
            return
        token = self.magic_links.issue(user.email, purpose=LOGIN_PURPOSE)
        receipt = await self.email.send_magic_link(user.email, token, ttl_minutes=self.magic_link_ttl_minutes)
        self.audit.record(
            AuditAction.MAGIC_LINK_REQUESTED,
            actor_id=user.id,
            resource_id=user.id,
            ip=ip_addr,
            user_agent=user_agent,
            details={"delivered": receipt is not None},
        )

    async def verify_magic_link(
        self,
        token: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginOutcome:
        verified = self.magic_links.verify(token, purpose=LOGIN_PURPOSE)
        if not verified.ok:
            self.audit.record(
                AuditAction.MAGIC_LINK_REJECTED,
                outcome="denied",
                ip=ip_addr,
                user_agent=user_agent,
                details={"reason": verified.reason},
            )
            verified.unwrap()
        user = self.store.get_user_by_email(verified.value.email)
        if user is None or not user.is_active:
            raise TokenError("invalid or expired link")
        if not user.email_verified:
            user = self.store.mark_email_verified(user.id) or user
        self.audit.record(
            AuditAction.MAGIC_LINK_VERIFIED,
            actor_id=user.id,
            resource_id=user.id,
            ip=ip_addr,
            user_agent=user_agent,
            details={"jti": verified.value.jti},
        )
        return await self._complete_login(
            user, MAGIC_LINK_METHOD, ip_addr=ip_addr, user_agent=user_agent
        )

    async def request_password_reset(
        self,
        email: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        user = self.store.get_user_by_email(email or "")
        if user is None or not user.is_active:
            self.audit.record(
                AuditAction.PASSWORD_RESET_REQUESTED,
                outcome="ignored",
                ip=ip_addr,
                user_agent=user_agent,
                details={"reason": "unknown_email" if user is None else "disabled"},
            )
            return
        token = self.magic_links.issue(
            user.email, purpose=PASSWORD_RESET_PURPOSE, ttl_minutes=self.password_reset_ttl_minutes
        )
        receipt = await self.email.send_password_reset(
            user.email, token, ttl_minutes=self.password_reset_ttl_minutes
        )
        self.audit.record(
            AuditAction.PASSWORD_RESET_REQUESTED,
            actor_id=user.id,
            resource_id=user.id,
            ip=ip_addr,
            user_agent=user_agent,
            details={"delivered": receipt is not None},
        )

    async def confirm_password_reset(
        self,
        token: str,
        new_password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        password_hash = self.hash_password(new_password)
        verified = self.magic_links.verify(token, purpose=PASSWORD_RESET_PURPOSE)
        if not verified.ok:
            self.audit.record(
                AuditAction.MAGIC_LINK_REJECTED,
                outcome="denied",
                ip=ip_addr,
                user_agent=user_agent,
                details={"reason": verified.reason, "purpose": PASSWORD_RESET_PURPOSE},
            )
            verified.unwrap()
        user = self.store.get_user_by_email(verified.value.email)
        if user is None:
            raise TokenError("invalid or expired link")
        before = user.login_methods
        updated = self.store.set_password_hash(user.id, password_hash)
        if not updated.email_verified:
            updated = self.store.mark_email_verified(user.id) or updated
        revoked = self.credentials.revoke_all_for_user(user.id)
        self.audit.record(
            AuditAction.PASSWORD_RESET_COMPLETED,
            actor_id=user.id,
            resource_id=user.id,
            before={"login_methods": before},
            after={"login_methods": updated.login_methods},
            ip=ip_addr,
            user_agent=user_agent,
            details={"sessions_revoked": revoked},
        )
        return updated

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        current_session_id: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Replace the password after re-checking the current one.

        Every other session of the user is revoked; returns how many.
        """
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        if not self.verify_password(user, current_password):
            self.audit.record(
                AuditAction.PASSWORD_CHANGED,
                actor_id=user.id,
                resource_id=user.id,
                outcome="denied",
                ip=ip_addr,
                user_agent=user_agent,
                details={"reason": "bad_password" if user.password_hash else "no_password"},
            )
            raise AuthenticationError("current password is incorrect")
        self.store.set_password_hash(user.id, self.hash_password(new_password))
        revoked = self.credentials.revoke_all_for_user(user.id, except_session_id=current_session_id)
        self.audit.record(
            AuditAction.PASSWORD_CHANGED,
            actor_id=user.id,
            resource_id=user.id,
            ip=ip_addr,
            user_agent=user_agent,
            details={"sessions_revoked": revoked, "kept_session_id": current_session_id},
        )
        return revoked

    # email verification
    async def request_email_verification(
        self,
        user: User,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Mail a verification link; False when the address is already verified."""
        if user.email_verified:
            return False
        token = self.magic_links.issue(
            user.email, purpose=VERIFY_EMAIL_PURPOSE, ttl_minutes=self.email_verification_ttl_minutes
        )
        receipt = await self.email.send_email_verification(
            user.email, token, ttl_minutes=self.email_verification_ttl_minutes
        )
        self.audit.record(
            AuditAction.EMAIL_VERIFICATION_REQUESTED,
            actor_id=user.id,
            resource_id=user.id,
            ip=ip_addr,
            user_agent=user_agent,
            details={"delivered": receipt is not None},
        )
        return True

    async def verify_email(
        self,
        token: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        verified = self.magic_links.verify(token, purpose=VERIFY_EMAIL_PURPOSE)
        if not verified.ok:
            self.audit.record(
                AuditAction.MAGIC_LINK_REJECTED,
                outcome="denied",
                ip=ip_addr,
                user_agent=user_agent,
                details={"reason": verified.reason, "purpose": VERIFY_EMAIL_PURPOSE},
            )
            verified.unwrap()
        user = self.store.get_user_by_email(verified.value.email)
        if user is None:
            raise TokenError("invalid or expired link")
        if not user.email_verified:
            user = self.store.mark_email_verified(user.id) or user
            self.audit.record(
                AuditAction.EMAIL_VERIFIED,
                actor_id=user.id,
                resource_id=user.id,
                before={"email_verified": False},
                after={"email_verified": True},
                ip=ip_addr,
                user_agent=user_agent,
            )
        return user

    # administration
    def set_user_status(
        self,
        actor_id: str,
        user_id: str,
        status: str,
        *,
        ip_addr: Optional[str] = None,
    ) -> User:
        """Enable or disable an account.

        Disabling revokes every session, OAuth token and pending PIN of the
        user, so nothing issued before the change keeps working.
        """
        if status not in USER_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(USER_STATUSES)}")
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        if actor_id == user_id and status != "active":
            raise AuthorizationError("cannot disable your own account")
        if user.status == status:
            return user
        updated = self.store.update_user_status(user_id, status)
        if updated is None:
            raise NotFoundError("user not found")
        details = {}
        if status != "active":
            now = self._clock()
            details["sessions_revoked"] = self.credentials.revoke_all_for_user(user_id)
            details["tokens_revoked"] = self.store.revoke_tokens(user_id, now)
            self.store.invalidate_pin_challenges(user_id, now)
        self.audit.record(
            AuditAction.USER_STATUS_CHANGED,
            actor_id=actor_id,
            resource_id=user_id,
            before={"status": user.status},
            after={"status": updated.status},
            ip=ip_addr,
            details=details,
        )
        logger.info("user_status_changed", user_id=user_id, status=status, actor_id=actor_id)
        return updated

    # sessions
    def authenticate(
        self,
        token: Optional[str],
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[Session, User]:
        session = self.credentials.validate_session(
            token, ip_addr=ip_addr, user_agent=user_agent
        ).unwrap()
        user = self.store.get_user(session.user_id)
        if user is None or not user.is_active:
            logger.info("session_user_inactive", session_id=session.id)
            raise AuthenticationError("invalid session")
        return session, user

    def logout(
        self,
        token: Optional[str],
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        if not token:
            return False
        verified = self.credentials.validate_session(token)
        revoked = self.credentials.revoke_session(token)
        if verified.ok and revoked:
            self.audit.record(
                AuditAction.LOGOUT,
                actor_id=verified.value.user_id,
                resource_type="session",
                resource_id=verified.value.id,
                ip=ip_addr,
                user_agent=user_agent,
            )
        return revoked

    def list_sessions(self, user_id: str) -> List[Session]:
        return self.credentials.list_sessions(user_id)

    def revoke_session(self, user_id: str, session_id: str, *, ip_addr: Optional[str] = None) -> None:
        session = self.store.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise NotFoundError("session not found")
        if self.credentials.revoke_session_id(session_id):
            self.audit.record(
                AuditAction.SESSION_REVOKED,
                actor_id=user_id,
                resource_type="session",
                resource_id=session_id,
                ip=ip_addr,
            )

    def revoke_other_sessions(
        self, user_id: str, current_session_id: Optional[str], *, ip_addr: Optional[str] = None
    ) -> int:
        count = self.credentials.revoke_all_for_user(user_id, except_session_id=current_session_id)
        self.audit.record(
            AuditAction.SESSIONS_REVOKED,
            actor_id=user_id,
            resource_id=user_id,
            ip=ip_addr,
            details={"count": count, "kept_session_id": current_session_id},
        )
        return count
