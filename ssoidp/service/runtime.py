from __future__ import annotations

import asyncio
import threading
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from ssoidp.config import get_settings, reset_settings_cache
from ssoidp.logging import get_logger
from ssoidp.service.audit import AuditLogger
from ssoidp.service.auth import AuthService, make_password_hasher
from ssoidp.service.email import EmailService, settings_email_resolver
from ssoidp.service.linking import AccountLinker
from ssoidp.service.oauth import ClientRegistry, OAuthEngine
from ssoidp.service.passwordless import MagicLinkIssuer, PinChallengeIssuer, StepUpPolicy
from ssoidp.service.permissions import AppPermissionService
from ssoidp.service.security import CsrfProtector, RateLimiter
from ssoidp.service.sessions import CredentialStore
from ssoidp.service.signing import TokenSigner
from ssoidp.service.social import SocialLoginService
from ssoidp.storage.memory import MemoryStore
from ssoidp.storage.models import utcnow
from ssoidp.storage.postgres import PostgresStore
from ssoidp.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

STEP_UP_SETTING = "pin_step_up_enabled"


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    fs_root=self.settings.shared_fs_root,
                    timeout_seconds=self.settings.store_timeout_seconds,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a closed event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=f"Running without Redis under {fallback_mode}; rate limits are per-process only.",
                mode=fallback_mode,
            )

        secret = self.settings.server_secret
        self.audit = AuditLogger(self.store)
        self.hasher = make_password_hasher()
        self.signer = TokenSigner.load_or_create(
            self.settings.signing_key_path,
            self.settings.shared_fs_root,
            issuer=self.settings.issuer,
            key_id=self.settings.signing_key_id,
        )
        self.credentials = CredentialStore(self.store, ttl_minutes=self.settings.session_ttl_minutes)
        self.linker = AccountLinker(self.store, self.audit)
        self.clients = ClientRegistry(
            self.store, self.audit, self.hasher, extra_scopes=self.settings.extra_scopes
        )
        self.oauth = OAuthEngine(
            self.store,
            self.clients,
            self.signer,
            self.audit,
            code_ttl_seconds=self.settings.authorization_code_ttl_seconds,
            access_token_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_token_ttl_seconds=self.settings.refresh_token_ttl_seconds,
        )
        self.permissions = AppPermissionService(self.store, self.audit)
        self.magic_links = MagicLinkIssuer(
            self.store, secret, ttl_minutes=self.settings.magic_link_ttl_minutes
        )
        self.pins = PinChallengeIssuer(
            self.store,
            secret,
            ttl_seconds=self.settings.pin_ttl_seconds,
            max_attempts=self.settings.pin_max_attempts,
        )
        self.step_up = StepUpPolicy(
            enabled=self.step_up_enabled,
            min_login=self.settings.pin_min_login,
            max_login=self.settings.pin_max_login,
            probability=self.settings.pin_trigger_probability,
        )
        self.email = EmailService(
            settings_email_resolver(self.settings, self.store.get_system_settings),
            base_url=self.settings.issuer,
        )
        self.auth = AuthService(
            self.store,
            self.credentials,
            self.linker,
            self.magic_links,
            self.pins,
            self.step_up,
            self.email,
            self.audit,
            hasher=self.hasher,
            magic_link_ttl_minutes=self.settings.magic_link_ttl_minutes,
            password_reset_ttl_minutes=self.settings.password_reset_ttl_minutes,
            email_verification_ttl_minutes=self.settings.email_verification_ttl_minutes,
            allow_registration=self.settings.allow_registration,
        )
        self.social = SocialLoginService(
            self.store,
            self.linker,
            {
                "google": (
                    self.settings.oauth_google_client_id,
                    self.settings.oauth_google_client_secret,
                ),
                "facebook": (
                    self.settings.oauth_facebook_client_id,
                    self.settings.oauth_facebook_client_secret,
                ),
            },
            callback_base=self.settings.issuer,
            timeout_seconds=self.settings.social_http_timeout_seconds,
        )
        self.rate_limiter = RateLimiter(self.cache, self.settings, self.audit)
        self.csrf = CsrfProtector(secret, ttl_seconds=self.settings.csrf_ttl_seconds)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            signing_kid=self.signer.key_id,
            step_up_enabled=self.step_up_enabled(),
        )

    def step_up_enabled(self) -> bool:
        """Admin toggle from the store, falling back to the env default."""
        stored = (self.store.get_system_settings() or {}).get(STEP_UP_SETTING)
        if stored is None:
            return self.settings.pin_step_up_enabled
        return bool(stored)

    def sweep_expired(self) -> Dict[str, int]:
        removed = self.store.sweep_expired(utcnow())
        if any(removed.values()):
            logger.info("expired_artifacts_swept", **removed)
        return removed

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check stops two threads from both building a runtime.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            # SyncRedisCache wraps a sync client; closing it needs no event loop
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache.close_sync()
            else:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())
        if runtime is not None and isinstance(runtime.store, PostgresStore):
            runtime.store.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
