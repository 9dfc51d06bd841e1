from __future__ import annotations

import base64
import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx

from ssoidp.logging import get_logger
from ssoidp.service.errors import AuthenticationError, ValidationError
from ssoidp.service.linking import AccountLinker
from ssoidp.storage.models import SocialIdentity, SocialLoginState, User, utcnow

logger = get_logger(__name__)

SOCIAL_PROVIDERS: Dict[str, Dict[str, Any]] = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://openidconnect.googleapis.com/v1/userinfo",
        "scope": "openid email profile",
        "pkce": True,
    },
    "facebook": {
        "auth_url": "https://www.facebook.com/v18.0/dialog/oauth",
        "token_url": "https://graph.facebook.com/v18.0/oauth/access_token",
        "userinfo_url": "https://graph.facebook.com/v18.0/me",
        "scope": "email,public_profile",
        "pkce": False,
    },
}

STATE_TTL_MINUTES = 10


def _safe_redirect_after(value: Optional[str]) -> Optional[str]:
    # Only same-site relative paths; anything else would be an open redirect
    if not value:
        return None
    if not value.startswith("/") or value.startswith("//") or "\\" in value:
        raise ValidationError("redirect target must be a relative path")
    return value


class SocialLoginService:
    """Upstream Google/Facebook sign-in feeding verified identities to the linker."""

    def __init__(
        self,
        store,
        linker: AccountLinker,
        credentials: Dict[str, Tuple[Optional[str], Optional[str]]],
        *,
        callback_base: str,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.linker = linker
        self.credentials = credentials
        self.callback_base = callback_base.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._clock = clock

    def _callback_uri(self, provider: str) -> str:
        return f"{self.callback_base}/v1/auth/social/{provider}/callback"

    def _credentials(self, provider: str) -> Tuple[str, str]:
        if provider not in SOCIAL_PROVIDERS:
            raise ValidationError(f"unsupported provider: {provider}")
        client_id, client_secret = self.credentials.get(provider, (None, None))
        if not client_id or not client_secret:
            logger.warning("social_provider_not_configured", provider=provider)
            raise ValidationError(f"provider {provider} is not configured")
        return client_id, client_secret

    def is_configured(self, provider: str) -> bool:
        client_id, client_secret = self.credentials.get(provider, (None, None))
        return bool(client_id and client_secret)

    def start(self, provider: str, *, redirect_after: Optional[str] = None) -> str:
        """Persist a single-use state and return the provider's authorization URL."""
        client_id, _ = self._credentials(provider)
        config = SOCIAL_PROVIDERS[provider]
        now = self._clock()
        verifier = secrets.token_urlsafe(48) if config["pkce"] else None
        login_state = SocialLoginState(
            state=secrets.token_urlsafe(24),
            provider=provider,
            expires_at=now + timedelta(minutes=STATE_TTL_MINUTES),
            code_verifier=verifier,
            redirect_after=_safe_redirect_after(redirect_after),
            created_at=now,
        )
        self.store.create_login_state(login_state)
        params = {
            "client_id": client_id,
            "redirect_uri": self._callback_uri(provider),
            "response_type": "code",
            "scope": config["scope"],
            "state": login_state.state,
        }
        if verifier:
            digest = hashlib.sha256(verifier.encode()).digest()
            params["code_challenge"] = base64.urlsafe_b64encode(digest).decode().rstrip("=")
            params["code_challenge_method"] = "S256"
        logger.info("social_login_started", provider=provider)
        return f"{config['auth_url']}?{urlencode(params)}"

    async def complete(
        self,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        *,
        actor_ip: Optional[str] = None,
    ) -> Tuple[User, bool, Optional[str]]:
        """Redeem the state, exchange the code and resolve the local account.

        Returns ``(user, created, redirect_after)``.
        """
        if not code or not state:
            raise AuthenticationError("social login failed")
        now = self._clock()
        login_state = self.store.consume_login_state(state, now)
        if login_state is None or login_state.provider != provider or login_state.expires_at <= now:
            logger.warning("social_login_state_rejected", provider=provider)
            raise AuthenticationError("social login failed")
        identity = await self._fetch_identity(provider, code, login_state.code_verifier)
        user, created = self.linker.resolve_social_identity(provider, identity, actor_ip=actor_ip)
        logger.info("social_login_completed", provider=provider, user_id=user.id, created=created)
        return user, created, login_state.redirect_after

    async def _fetch_identity(
        self, provider: str, code: str, code_verifier: Optional[str]
    ) -> SocialIdentity:
        client_id, client_secret = self._credentials(provider)
        config = SOCIAL_PROVIDERS[provider]
        token_params = {
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "redirect_uri": self._callback_uri(provider),
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, follow_redirects=False, transport=self._transport
            ) as client:
                if provider == "google":
                    token_params["grant_type"] = "authorization_code"
                    if code_verifier:
                        token_params["code_verifier"] = code_verifier
                    token_response = await client.post(
                        config["token_url"], data=token_params, headers={"Accept": "application/json"}
                    )
                else:
                    token_response = await client.get(config["token_url"], params=token_params)
                token_response.raise_for_status()
                access_token = token_response.json().get("access_token")
                if not access_token:
                    logger.error("social_no_access_token", provider=provider)
                    raise AuthenticationError("social login failed")
                if provider == "google":
                    profile_response = await client.get(
                        config["userinfo_url"], headers={"Authorization": f"Bearer {access_token}"}
                    )
                else:
                    profile_response = await client.get(
                        config["userinfo_url"],
                        params={"fields": "id,email,name", "access_token": access_token},
                    )
                profile_response.raise_for_status()
                profile = profile_response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "social_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            raise AuthenticationError("social login failed") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("social_exchange_error", provider=provider, error=str(exc))
            raise AuthenticationError("social login failed") from exc
        return self._parse_profile(provider, profile)

    def _parse_profile(self, provider: str, profile: Any) -> SocialIdentity:
        if not isinstance(profile, dict):
            raise AuthenticationError("social login failed")
        if provider == "google":
            provider_id = profile.get("sub") or profile.get("id")
            if profile.get("email_verified") is False:
                logger.warning("social_email_unverified", provider=provider)
                raise AuthenticationError("provider email is not verified")
        else:
            provider_id = profile.get("id")
        email = (profile.get("email") or "").strip().lower() or None
        if not provider_id:
            logger.error("social_identity_missing_id", provider=provider)
            raise AuthenticationError("social login failed")
        return SocialIdentity(
            provider_id=str(provider_id),
            email=email,
            name=profile.get("name"),
            linked_at=self._clock(),
        )
