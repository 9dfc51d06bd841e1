from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from ssoidp.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments; production tightens cookies and bypass flags."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


def _persist_generated_secret(fs_root: Path, filename: str) -> str:
    """Read ``fs_root/filename`` or generate and atomically persist a new secret."""

    secret_path = fs_root / filename
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup_failed", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist server secret; set SERVER_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the identity provider."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows runtime resets and in-memory fallbacks.",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    database_url: str = env_field("postgresql://localhost:5432/ssoidp", "DATABASE_URL")
    store_timeout_seconds: float = env_field(
        5.0, "STORE_TIMEOUT_SECONDS", description="Connect and statement timeout for the store"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    shared_fs_root: str = env_field("/srv/ssoidp", "SHARED_FS_ROOT")

    issuer: str = env_field("http://localhost:8000", "ISSUER")
    server_secret: str | None = env_field(
        None,
        "SERVER_SECRET",
        validate_default=True,
        description="HMAC key for magic links, PIN hashes and CSRF tokens",
    )
    signing_key_path: str | None = env_field(
        None, "SIGNING_KEY_PATH", description="RSA private key (PEM); generated when missing"
    )
    signing_key_id: str | None = env_field(
        None, "SIGNING_KEY_ID", description="Overrides the thumbprint-derived kid"
    )
    extra_scopes: list[str] = env_field(
        [], "EXTRA_SCOPES", description="Application scopes clients may request besides OIDC ones"
    )
    allow_registration: bool = env_field(True, "ALLOW_REGISTRATION")

    # Sessions and cookies
    session_ttl_minutes: int = env_field(7 * 24 * 60, "SESSION_TTL_MINUTES")
    session_cookie_name: str = env_field("sso_session", "SESSION_COOKIE_NAME")
    cookie_domain: str | None = env_field(
        None, "COOKIE_DOMAIN", description="Shared parent domain for subdomain SSO, e.g. .example.com"
    )
    csrf_cookie_name: str = env_field("csrf_token", "CSRF_COOKIE_NAME")
    csrf_ttl_seconds: int = env_field(24 * 60 * 60, "CSRF_TTL_SECONDS")

    # OAuth2 / OIDC lifetimes
    access_token_ttl_seconds: int = env_field(3600, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(30 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS")
    authorization_code_ttl_seconds: int = env_field(600, "AUTHORIZATION_CODE_TTL_SECONDS")

    # Passwordless and step-up
    magic_link_ttl_minutes: int = env_field(15, "MAGIC_LINK_TTL_MINUTES")
    password_reset_ttl_minutes: int = env_field(30, "PASSWORD_RESET_TTL_MINUTES")
    email_verification_ttl_minutes: int = env_field(24 * 60, "EMAIL_VERIFICATION_TTL_MINUTES")
    pin_step_up_enabled: bool = env_field(
        True,
        "PIN_STEP_UP_ENABLED",
        description="Default for the step-up toggle (overridable via admin settings)",
    )
    pin_ttl_seconds: int = env_field(300, "PIN_TTL_SECONDS")
    pin_max_attempts: int = env_field(3, "PIN_MAX_ATTEMPTS")
    pin_min_login: int = env_field(5, "PIN_MIN_LOGIN")
    pin_max_login: int = env_field(10, "PIN_MAX_LOGIN")
    pin_trigger_probability: float = env_field(0.3, "PIN_TRIGGER_PROBABILITY", ge=0.0, le=1.0)

    # Rate limiting tiers
    rate_limit_strict_limit: int = env_field(5, "RATE_LIMIT_STRICT_LIMIT")
    rate_limit_strict_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_STRICT_WINDOW_SECONDS")
    rate_limit_general_limit: int = env_field(100, "RATE_LIMIT_GENERAL_LIMIT")
    rate_limit_general_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_GENERAL_WINDOW_SECONDS")
    rate_limit_validation_limit: int = env_field(60, "RATE_LIMIT_VALIDATION_LIMIT")
    rate_limit_validation_window_seconds: int = env_field(60, "RATE_LIMIT_VALIDATION_WINDOW_SECONDS")
    rate_limit_bypass: bool = env_field(
        False, "RATE_LIMIT_BYPASS", description="Local testing only; ignored in production"
    )
    trusted_proxies: list[str] = env_field(
        [], "TRUSTED_PROXIES", description="CIDRs whose X-Forwarded-For entries are trusted"
    )

    # Email delivery (env vars are fallbacks; admin settings take precedence)
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    smtp_timeout_seconds: float = env_field(10.0, "SMTP_TIMEOUT_SECONDS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("SSO", "EMAIL_FROM_NAME")

    # Upstream social providers
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_facebook_client_id: str | None = env_field(None, "OAUTH_FACEBOOK_CLIENT_ID")
    oauth_facebook_client_secret: str | None = env_field(None, "OAUTH_FACEBOOK_CLIENT_SECRET")
    social_http_timeout_seconds: float = env_field(10.0, "SOCIAL_HTTP_TIMEOUT_SECONDS")

    # HTTP surface
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(True, "ENABLE_HSTS")
    sweep_interval_seconds: int = env_field(300, "SWEEP_INTERVAL_SECONDS")
    # front-end pages /authorize hands the browser to
    login_page_url: str = env_field("/login", "LOGIN_PAGE_URL")
    consent_page_url: str = env_field("/consent", "CONSENT_PAGE_URL")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @field_validator("trusted_proxies", "extra_scopes", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("issuer")
    @classmethod
    def _strip_issuer(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("server_secret")
    @classmethod
    def _ensure_server_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("SERVER_SECRET must be at least 32 characters")
            return value
        fs_root = Path(info.data.get("shared_fs_root") or os.getenv("SHARED_FS_ROOT", "/srv/ssoidp"))
        return _persist_generated_secret(fs_root, ".server_secret")


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
