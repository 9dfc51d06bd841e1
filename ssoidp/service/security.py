from __future__ import annotations

import asyncio
import hashlib
import hmac
import ipaddress
import secrets
import time
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

from ssoidp.config import Settings
from ssoidp.logging import get_logger
from ssoidp.service.audit import AuditAction, AuditLogger
from ssoidp.service.errors import CsrfError, RateLimitError

logger = get_logger(__name__)


def _parse_networks(cidrs: Sequence[str]):
    networks = []
    for cidr in cidrs:
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError:
            logger.warning("trusted_proxy_invalid", cidr=cidr)
    return networks


def _is_trusted(address: str, networks) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return any(ip in network for network in networks)


def client_ip(
    peer: Optional[str],
    forwarded_for: Optional[str],
    trusted_proxies: Sequence[str],
) -> str:
    """Resolve the originating client address.

    ``X-Forwarded-For`` is only honoured when the direct peer is a trusted
    proxy. The chain is walked right to left and the first hop that is not a
    trusted proxy wins, so a client cannot spoof its address by prepending
    entries.
    """
    peer = peer or "unknown"
    networks = _parse_networks(trusted_proxies)
    if not forwarded_for or not networks or not _is_trusted(peer, networks):
        return peer
    hops = [hop.strip() for hop in forwarded_for.split(",") if hop.strip()]
    for hop in reversed(hops):
        if not _is_trusted(hop, networks):
            return hop
    return hops[0] if hops else peer


@dataclass(frozen=True)
class RateLimitTier:
    name: str
    limit: int
    window_seconds: int


class RateLimiter:
    """Tiered token buckets keyed by client IP.

    Buckets live in Redis when a cache is configured; otherwise a per-process
    bucket table guarded by an asyncio lock takes over.
    """

    def __init__(self, cache, settings: Settings, audit: Optional[AuditLogger] = None):
        self.cache = cache
        self.audit = audit
        self.tiers: Dict[str, RateLimitTier] = {
            "strict": RateLimitTier(
                "strict", settings.rate_limit_strict_limit, settings.rate_limit_strict_window_seconds
            ),
            "general": RateLimitTier(
                "general", settings.rate_limit_general_limit, settings.rate_limit_general_window_seconds
            ),
            "validation": RateLimitTier(
                "validation",
                settings.rate_limit_validation_limit,
                settings.rate_limit_validation_window_seconds,
            ),
        }
        self.bypass = settings.rate_limit_bypass and not settings.is_production
        if settings.rate_limit_bypass and settings.is_production:
            logger.warning("rate_limit_bypass_ignored", environment=settings.environment.value)
        self._local_buckets: Dict[str, Tuple[float, float]] = {}
        self._local_lock = asyncio.Lock()

    async def _consume_local(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int, int]:
        now = time.monotonic()
        refill_rate = float(limit) / float(window_seconds)
        async with self._local_lock:
            tokens, last_ts = self._local_buckets.get(key, (float(limit), now))
            tokens = min(float(limit), tokens + max(0.0, now - last_ts) * refill_rate)
            allowed = tokens >= 1
            if allowed:
                tokens -= 1
            self._local_buckets[key] = (tokens, now)
        retry_after = 0 if allowed else max(1, int((1 - tokens) / refill_rate) + 1)
        return allowed, int(tokens), retry_after

    async def hit(
        self,
        tier: str,
        subject: str,
        *,
        user_agent: Optional[str] = None,
    ) -> int:
        """Consume one request for ``subject`` in ``tier``.

        Returns the remaining allowance or raises :class:`RateLimitError`.
        """
        bucket = self.tiers[tier]
        if self.bypass or bucket.limit <= 0:
            return bucket.limit
        key = f"{bucket.name}:{subject}"
        if self.cache is not None:
            allowed, remaining, retry_after = await self.cache.check_rate_limit(
                key, bucket.limit, bucket.window_seconds
            )
        else:
            allowed, remaining, retry_after = await self._consume_local(
                key, bucket.limit, bucket.window_seconds
            )
        if allowed:
            return remaining
        retry_after = max(1, retry_after)
        logger.warning("rate_limited", tier=tier, subject=subject, retry_after=retry_after)
        if self.audit is not None:
            self.audit.record(
                AuditAction.RATE_LIMITED,
                resource_type="rate_limit",
                resource_id=tier,
                outcome="denied",
                ip=subject,
                user_agent=user_agent,
                details={"tier": tier, "retry_after": retry_after},
            )
        raise RateLimitError(retry_after=retry_after)

    async def reset(self, tier: str, subject: str) -> None:
        key = f"{self.tiers[tier].name}:{subject}"
        if self.cache is not None:
            await self.cache.reset_rate_limit(key)
            return
        async with self._local_lock:
            self._local_buckets.pop(key, None)


class CsrfProtector:
    """Double-submit CSRF tokens signed with the server secret.

    Token format is ``nonce.issued_at.signature``. A request passes when the
    cookie and the submitted header carry the same token and that token has
    a valid, unexpired signature, so a value planted by an attacker without
    the secret is rejected even if it appears in both places.
    """

    SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

    def __init__(self, secret: str, *, ttl_seconds: int = 24 * 60 * 60, clock=time.time):
        self._key = hashlib.sha256(f"csrf:{secret}".encode()).digest()
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _sign(self, payload: str) -> str:
        return hmac.new(self._key, payload.encode(), hashlib.sha256).hexdigest()

    def issue(self) -> str:
        payload = f"{secrets.token_urlsafe(16)}.{int(self._clock())}"
        return f"{payload}.{self._sign(payload)}"

    def is_valid_token(self, token: str) -> bool:
        parts = token.split(".")
        if len(parts) != 3:
            return False
        nonce, issued_raw, signature = parts
        if not hmac.compare_digest(self._sign(f"{nonce}.{issued_raw}").encode(), signature.encode()):
            return False
        try:
            issued_at = int(issued_raw)
        except ValueError:
            return False
        return 0 <= self._clock() - issued_at <= self.ttl_seconds

    def validate(self, method: str, cookie_token: Optional[str], submitted_token: Optional[str]) -> None:
        if method.upper() in self.SAFE_METHODS:
            return
        if not cookie_token or not submitted_token:
            raise CsrfError("csrf token missing")
        if not hmac.compare_digest(cookie_token.encode(), submitted_token.encode()):
            raise CsrfError("csrf token mismatch")
        if not self.is_valid_token(submitted_token):
            raise CsrfError("csrf token invalid or expired")
