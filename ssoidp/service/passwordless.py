from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import random
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from ssoidp.logging import get_logger
from ssoidp.service.errors import TokenError
from ssoidp.service.result import Result
from ssoidp.storage.models import MagicLinkToken, PinChallenge, User, utcnow

logger = get_logger(__name__)

LOGIN_PURPOSE = "login"
PASSWORD_RESET_PURPOSE = "password_reset"
LINK_PASSWORD_PURPOSE = "link_password"
VERIFY_EMAIL_PURPOSE = "verify_email"


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _b64decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


class MagicLinkIssuer:
    """Signed single-use links of the form ``payload.signature``.

    The payload is base64url JSON ``{typ, email, iat, exp, jti}`` and the
    signature an HMAC-SHA256 over the encoded payload. The ``jti`` is stored
    so redemption can be made single-use with one conditional update.
    """

    def __init__(
        self,
        store,
        secret: str,
        *,
        ttl_minutes: int = 15,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self._key = hashlib.sha256(f"magic-link:{secret}".encode()).digest()
        self.ttl_minutes = ttl_minutes
        self._clock = clock

    def _sign(self, payload_b64: str) -> str:
        return _b64encode(hmac.new(self._key, payload_b64.encode(), hashlib.sha256).digest())

    def issue(
        self,
        email: str,
        *,
        purpose: str = LOGIN_PURPOSE,
        ttl_minutes: Optional[int] = None,
        pending_password_hash: Optional[str] = None,
    ) -> str:
        now = self._clock()
        expires_at = now + timedelta(minutes=ttl_minutes or self.ttl_minutes)
        jti = uuid.uuid4().hex
        normalized = email.strip().lower()
        payload = {
            "typ": purpose,
            "email": normalized,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": jti,
        }
        payload_b64 = _b64encode(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode())
        self.store.create_magic_link(
            MagicLinkToken(
                jti=jti,
                email=normalized,
                expires_at=expires_at,
                purpose=purpose,
                created_at=now,
                pending_password_hash=pending_password_hash,
            )
        )
        logger.info("magic_link_issued", jti=jti, purpose=purpose)
        return f"{payload_b64}.{self._sign(payload_b64)}"

    def _reject(self, reason: str, jti: Optional[str] = None) -> Result[MagicLinkToken]:
        logger.info("magic_link_rejected", reason=reason, jti=jti)
        return Result.failure(TokenError("invalid or expired link"), reason)

    def verify(self, token: str, *, purpose: str = LOGIN_PURPOSE) -> Result[MagicLinkToken]:
        parts = (token or "").split(".")
        if len(parts) != 2:
            return self._reject("malformed")
        payload_b64, signature = parts
        if not hmac.compare_digest(self._sign(payload_b64).encode(), signature.encode()):
            return self._reject("bad_signature")
        try:
            payload: Dict[str, Any] = json.loads(_b64decode(payload_b64))
        except (binascii.Error, ValueError):
            return self._reject("malformed")
        jti = payload.get("jti")
        if payload.get("typ") != purpose or not jti:
            return self._reject("wrong_type", jti)
        now = self._clock()
        if int(payload.get("exp", 0)) <= int(now.timestamp()):
            return self._reject("expired", jti)
        consumed = self.store.consume_magic_link(jti, now)
        if consumed is None:
            return self._reject("already_used", jti)
        if consumed.email != payload.get("email") or consumed.purpose != purpose:
            return self._reject("payload_mismatch", jti)
        return Result.success(consumed)


class StepUpPolicy:
    """Decides whether a completed primary login must also pass a PIN.

    The default decision fires with ``probability`` while the user's login
    count sits inside ``[min_login, max_login]``. ``enabled`` is consulted on
    every call so an admin toggle takes effect without a restart, and
    ``decide`` replaces the random draw entirely when supplied.
    """

    def __init__(
        self,
        *,
        enabled: Callable[[], bool],
        min_login: int = 5,
        max_login: int = 10,
        probability: float = 0.3,
        rng: Callable[[], float] = random.random,
        decide: Optional[Callable[[User], bool]] = None,
    ) -> None:
        self._enabled = enabled
        self.min_login = min_login
        self.max_login = max_login
        self.probability = probability
        self._rng = rng
        self._decide = decide

    def requires_step_up(self, user: User) -> bool:
        if not self._enabled():
            return False
        if not self.min_login <= user.login_count <= self.max_login:
            return False
        if self._decide is not None:
            return self._decide(user)
        return self._rng() < self.probability


class PinChallengeIssuer:
    """Six-digit PIN challenges with bounded attempts and single redemption."""

    def __init__(
        self,
        store,
        secret: str,
        *,
        ttl_seconds: int = 300,
        max_attempts: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self._key = hashlib.sha256(f"pin:{secret}".encode()).digest()
        self.ttl_seconds = ttl_seconds
        self.max_attempts = max_attempts
        self._clock = clock

    def _hash_pin(self, challenge_id: str, pin: str) -> str:
        return hmac.new(self._key, f"{challenge_id}:{pin}".encode(), hashlib.sha256).hexdigest()

    def issue(
        self, user_id: str, *, context: Optional[Dict[str, Any]] = None
    ) -> Tuple[PinChallenge, str]:
        now = self._clock()
        # Only the newest challenge for a user is redeemable
        self.store.invalidate_pin_challenges(user_id, now)
        challenge_id = uuid.uuid4().hex
        pin = f"{secrets.randbelow(10 ** 6):06d}"
        challenge = PinChallenge(
            id=challenge_id,
            user_id=user_id,
            pin_hash=self._hash_pin(challenge_id, pin),
            expires_at=now + timedelta(seconds=self.ttl_seconds),
            max_attempts=self.max_attempts,
            context=dict(context or {}),
            created_at=now,
        )
        self.store.create_pin_challenge(challenge)
        logger.info("pin_challenge_issued", challenge_id=challenge_id, user_id=user_id)
        return challenge, pin

    def _reject(self, reason: str, challenge_id: str) -> Result[PinChallenge]:
        logger.info("pin_challenge_rejected", reason=reason, challenge_id=challenge_id)
        return Result.failure(TokenError("invalid or expired code"), reason)

    def verify(self, challenge_id: str, pin: str) -> Result[PinChallenge]:
        challenge = self.store.get_pin_challenge(challenge_id)
        now = self._clock()
        if challenge is None:
            return self._reject("not_found", challenge_id)
        if challenge.used_at is not None:
            return self._reject("already_used", challenge_id)
        if challenge.expires_at <= now:
            return self._reject("expired", challenge_id)
        if challenge.attempts >= challenge.max_attempts:
            return self._reject("locked", challenge_id)
        candidate = self._hash_pin(challenge_id, (pin or "").strip())
        if not hmac.compare_digest(candidate, challenge.pin_hash):
            self.store.record_pin_failure(challenge_id)
            return self._reject("mismatch", challenge_id)
        consumed = self.store.consume_pin_challenge(challenge_id, now)
        if consumed is None:
            return self._reject("already_used", challenge_id)
        return Result.success(consumed)
