from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from ssoidp.logging import get_logger
from ssoidp.service.errors import AuthenticationError
from ssoidp.service.result import Result
from ssoidp.storage.models import PASSWORD_METHOD, Session, utcnow

logger = get_logger(__name__)

_INVALID_SESSION = "invalid session"


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def device_fingerprint(ip_addr: Optional[str], user_agent: Optional[str]) -> str:
    """Stable hash of the client's IP and User-Agent."""
    raw = f"{ip_addr or ''}|{user_agent or ''}"
    return hashlib.sha256(raw.encode()).hexdigest()


class CredentialStore:
    """Opaque session tokens backed by the persistent store.

    Only the SHA-256 of a token is ever stored. Validation slides the expiry
    forward and never tells the caller *why* a token was rejected; the reason
    is kept in the returned :class:`Result` and in the logs.
    """

    def __init__(
        self,
        store,
        *,
        ttl_minutes: int,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl_minutes = ttl_minutes
        self._clock = clock

    def create_session(
        self,
        user_id: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        auth_method: str = PASSWORD_METHOD,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Tuple[str, Session]:
        token = secrets.token_urlsafe(32)
        session = Session.new(
            user_id,
            hash_token(token),
            self.ttl_minutes,
            device_fingerprint=device_fingerprint(ip_addr, user_agent),
            ip_addr=ip_addr,
            user_agent=user_agent,
            auth_method=auth_method,
            meta=meta,
            now=self._clock(),
        )
        self.store.create_session(session)
        logger.info("session_created", user_id=user_id, session_id=session.id, auth_method=auth_method)
        return token, session

    def validate_session(
        self,
        token: Optional[str],
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[Session]:
        if not token:
            return Result.failure(AuthenticationError(_INVALID_SESSION), "missing")
        session = self.store.get_session_by_token_hash(hash_token(token))
        now = self._clock()
        reason = None
        if session is None:
            reason = "not_found"
        elif session.revoked_at is not None:
            reason = "revoked"
        elif session.expires_at <= now:
            reason = "expired"
        if reason:
            logger.info(
                "session_rejected",
                reason=reason,
                session_id=session.id if session else None,
            )
            return Result.failure(AuthenticationError(_INVALID_SESSION), reason)

        if ip_addr is not None or user_agent is not None:
            presented = device_fingerprint(ip_addr, user_agent)
            if session.device_fingerprint and presented != session.device_fingerprint:
                # Networks change (mobile, VPN); flag it but keep the session
                logger.warning(
                    "session_fingerprint_mismatch",
                    session_id=session.id,
                    user_id=session.user_id,
                )

        touched = self.store.touch_session(
            session.id,
            expires_at=now + timedelta(minutes=self.ttl_minutes),
            seen_at=now,
        )
        if touched is None:
            # Revoked between the read and the slide
            return Result.failure(AuthenticationError(_INVALID_SESSION), "revoked")
        return Result.success(touched)

    def revoke_session(self, token: str) -> bool:
        """Revoke the session behind ``token``; repeated calls are no-ops."""
        session = self.store.get_session_by_token_hash(hash_token(token))
        if session is None:
            return False
        return self.revoke_session_id(session.id)

    def revoke_session_id(self, session_id: str) -> bool:
        revoked = self.store.revoke_session(session_id, self._clock())
        if revoked:
            logger.info("session_revoked", session_id=session_id)
        return revoked

    def revoke_all_for_user(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        count = self.store.revoke_user_sessions(
            user_id, self._clock(), except_session_id=except_session_id
        )
        logger.info("user_sessions_revoked", user_id=user_id, count=count)
        return count

    def list_sessions(self, user_id: str) -> List[Session]:
        now = self._clock()
        return [s for s in self.store.list_user_sessions(user_id) if s.is_active(now)]
