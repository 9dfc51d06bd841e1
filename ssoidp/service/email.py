from __future__ import annotations

import asyncio
import smtplib
import ssl
import uuid
from dataclasses import dataclass
from email.mime.text import MIMEText
from typing import Callable, Optional

from ssoidp.logging import get_logger
from ssoidp.service.errors import ServerError, ValidationError
from ssoidp.service.result import Result

logger = get_logger(__name__)


@dataclass(frozen=True)
class EmailConfig:
    smtp_host: str
    from_address: str
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True
    from_name: str = "SSO"
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class EmailReceipt:
    id: str
    provider: str


class EmailDeliveryError(ServerError):
    """SMTP delivery failed; callers treat this as non-fatal."""


# Returns the delivery config to use right now; lets admins change SMTP
# settings at runtime without rebuilding the service.
EmailConfigResolver = Callable[[], Result[EmailConfig]]


def _redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """Plain-text transactional email over SMTP.

    When the resolver reports no usable configuration (local development,
    tests) messages are logged instead of sent and the receipt's provider is
    ``log``.
    """

    def __init__(self, config_resolver: EmailConfigResolver, *, base_url: str = "http://localhost:8000"):
        self._resolve_config = config_resolver
        self.base_url = base_url.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return self._resolve_config().ok

    def _send_smtp(self, config: EmailConfig, to: str, subject: str, text: str) -> str:
        message_id = f"<{uuid.uuid4()}@{config.from_address.split('@')[-1]}>"
        msg = MIMEText(text, "plain")
        msg["Subject"] = subject
        msg["From"] = f"{config.from_name} <{config.from_address}>"
        msg["To"] = to
        msg["Message-ID"] = message_id
        context = ssl.create_default_context()
        if config.smtp_use_tls:
            with smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=config.timeout_seconds) as server:
                server.starttls(context=context)
                if config.smtp_user and config.smtp_password:
                    server.login(config.smtp_user, config.smtp_password)
                server.sendmail(config.from_address, to, msg.as_string())
        else:
            with smtplib.SMTP_SSL(
                config.smtp_host, config.smtp_port, context=context, timeout=config.timeout_seconds
            ) as server:
                if config.smtp_user and config.smtp_password:
                    server.login(config.smtp_user, config.smtp_password)
                server.sendmail(config.from_address, to, msg.as_string())
        return message_id

    async def send_email(self, to: str, subject: str, text: str) -> EmailReceipt:
        """Send one message; raises :class:`EmailDeliveryError` on failure."""
        resolved = self._resolve_config()
        if not resolved.ok:
            logger.info(
                "email_dev_mode",
                to=_redact_email(to),
                subject=subject,
                reason=resolved.reason,
            )
            return EmailReceipt(id=str(uuid.uuid4()), provider="log")
        config = resolved.value
        try:
            message_id = await asyncio.wait_for(
                asyncio.to_thread(self._send_smtp, config, to, subject, text),
                timeout=config.timeout_seconds + 1,
            )
        except (smtplib.SMTPException, ssl.SSLError, OSError, asyncio.TimeoutError) as exc:
            logger.error(
                "email_send_failed",
                to=_redact_email(to),
                host=config.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise EmailDeliveryError("email delivery failed") from exc
        logger.info("email_sent", to=_redact_email(to), subject=subject)
        return EmailReceipt(id=message_id, provider="smtp")

    async def deliver(self, to: str, subject: str, text: str, *, attempts: int = 2) -> Optional[EmailReceipt]:
        """Best-effort send with a bounded retry; never raises."""
        for attempt in range(1, attempts + 1):
            try:
                return await self.send_email(to, subject, text)
            except EmailDeliveryError:
                logger.warning("email_delivery_attempt_failed", attempt=attempt, attempts=attempts)
        return None

    async def send_magic_link(self, to: str, token: str, *, ttl_minutes: int) -> Optional[EmailReceipt]:
        link = f"{self.base_url}/login/magic?token={token}"
        text = (
            "Use the link below to sign in.\n\n"
            f"{link}\n\n"
            f"The link expires in {ttl_minutes} minutes and can be used once.\n"
        )
        return await self.deliver(to, "Your sign-in link", text)

    async def send_password_reset(self, to: str, token: str, *, ttl_minutes: int) -> Optional[EmailReceipt]:
        link = f"{self.base_url}/password-reset?token={token}"
        text = (
            "We received a request to reset your password.\n\n"
            f"{link}\n\n"
            f"The link expires in {ttl_minutes} minutes. If you did not ask for this, ignore this email.\n"
        )
        return await self.deliver(to, "Reset your password", text)

    async def send_password_link(self, to: str, token: str, *, ttl_minutes: int) -> Optional[EmailReceipt]:
        link = f"{self.base_url}/password-link?token={token}"
        text = (
            "Someone asked to add a password to the account registered with this address.\n\n"
            f"{link}\n\n"
            f"Open the link within {ttl_minutes} minutes to confirm. "
            "If this was not you, ignore this email and nothing will change.\n"
        )
        return await self.deliver(to, "Confirm your new password", text)

    async def send_email_verification(self, to: str, token: str, *, ttl_minutes: int) -> Optional[EmailReceipt]:
        link = f"{self.base_url}/verify-email?token={token}"
        text = (
            "Confirm that this address belongs to you.\n\n"
            f"{link}\n\n"
            f"The link expires in {ttl_minutes} minutes.\n"
        )
        return await self.deliver(to, "Verify your email address", text)

    async def send_pin(self, to: str, pin: str, *, ttl_seconds: int) -> Optional[EmailReceipt]:
        text = (
            f"Your verification code is {pin}.\n\n"
            f"It expires in {max(1, ttl_seconds // 60)} minutes.\n"
        )
        return await self.deliver(to, "Your verification code", text)


def settings_email_resolver(settings, system_settings: Callable[[], dict]) -> EmailConfigResolver:
    """Build a resolver that prefers admin-stored SMTP settings over env values."""

    def _resolve() -> Result[EmailConfig]:
        overrides = system_settings() or {}
        host = overrides.get("smtp_host") or settings.smtp_host
        from_address = (
            overrides.get("email_from_address") or settings.email_from_address or settings.smtp_user
        )
        if not host or not from_address:
            return Result.failure(ValidationError("email delivery is not configured"), "not_configured")
        return Result.success(
            EmailConfig(
                smtp_host=host,
                from_address=from_address,
                smtp_port=int(overrides.get("smtp_port") or settings.smtp_port),
                smtp_user=overrides.get("smtp_user") or settings.smtp_user,
                smtp_password=overrides.get("smtp_password") or settings.smtp_password,
                smtp_use_tls=bool(overrides.get("smtp_use_tls", settings.smtp_use_tls)),
                from_name=overrides.get("email_from_name") or settings.email_from_name,
                timeout_seconds=float(settings.smtp_timeout_seconds),
            )
        )

    return _resolve
