from __future__ import annotations

import base64
import hashlib
import hmac
import re
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

import jwt as pyjwt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from ssoidp.logging import get_logger
from ssoidp.service.audit import AuditAction, AuditLogger
from ssoidp.service.errors import NotFoundError, OAuthError, TokenError, ValidationError
from ssoidp.service.result import Result
from ssoidp.service.scopes import (
    OFFLINE_ACCESS,
    OPENID,
    claims_for,
    format_scope,
    supported_scopes,
)
from ssoidp.service.sessions import hash_token
from ssoidp.service.signing import TokenSigner
from ssoidp.storage.errors import ConstraintViolation
from ssoidp.storage.models import (
    CLIENT_STATUSES,
    AuthorizationCode,
    Consent,
    OAuthClient,
    OAuthToken,
    utcnow,
)

logger = get_logger(__name__)

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"
SUPPORTED_GRANT_TYPES = (GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN)
PKCE_METHODS = ("S256", "plain")
# Unreserved characters only, RFC 7636 section 4.1
_PKCE_VALUE = re.compile(r"[A-Za-z0-9\-._~]{43,128}")

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"


def pkce_challenge(verifier: str, method: str = "S256") -> str:
    if method == "plain":
        return verifier
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


def is_pkce_value(value: Optional[str]) -> bool:
    return bool(value) and _PKCE_VALUE.fullmatch(value) is not None


def verify_pkce(verifier: str, challenge: str, method: str) -> bool:
    if not is_pkce_value(verifier):
        return False
    return hmac.compare_digest(pkce_challenge(verifier, method).encode(), challenge.encode())


def _validate_redirect_uri(uri: str) -> str:
    parsed = urlparse(uri)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc or parsed.fragment:
        raise ValidationError(f"invalid redirect uri: {uri}")
    return uri


class ClientRegistry:
    """Registration and authentication of OAuth client applications.

    Confidential clients receive a secret exactly once; only its argon2 hash
    is stored. Public clients have no secret and are always PKCE-bound.
    """

    def __init__(
        self,
        store,
        audit: AuditLogger,
        hasher: PasswordHasher,
        *,
        extra_scopes: Iterable[str] = (),
    ) -> None:
        self.store = store
        self.audit = audit
        self.hasher = hasher
        self.known_scopes = supported_scopes(extra_scopes)

    def _check_scopes(self, scopes: Iterable[str]) -> List[str]:
        scopes = list(dict.fromkeys(scopes))
        unknown = [s for s in scopes if s not in self.known_scopes]
        if unknown:
            raise ValidationError("unknown scopes", detail={"scopes": unknown})
        if OPENID not in scopes:
            raise ValidationError("clients must be allowed the openid scope")
        return scopes

    def _check_grant_types(self, grant_types: Iterable[str]) -> List[str]:
        grant_types = list(dict.fromkeys(grant_types))
        unknown = [g for g in grant_types if g not in SUPPORTED_GRANT_TYPES]
        if unknown or GRANT_AUTHORIZATION_CODE not in grant_types:
            raise ValidationError("unsupported grant types", detail={"grant_types": grant_types})
        return grant_types

    def register(
        self,
        name: str,
        redirect_uris: List[str],
        allowed_scopes: List[str],
        *,
        confidential: bool = True,
        require_pkce: bool = False,
        grant_types: Optional[List[str]] = None,
        require_consent: bool = True,
        require_app_permission: bool = False,
        owner_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Tuple[OAuthClient, Optional[str]]:
        if not redirect_uris:
            raise ValidationError("at least one redirect uri is required")
        secret = secrets.token_urlsafe(32) if confidential else None
        client = OAuthClient(
            client_id=uuid.uuid4().hex,
            name=name,
            redirect_uris=[_validate_redirect_uri(uri) for uri in redirect_uris],
            allowed_scopes=self._check_scopes(allowed_scopes),
            client_secret_hash=self.hasher.hash(secret) if secret else None,
            require_pkce=require_pkce or not confidential,
            grant_types=self._check_grant_types(grant_types or [GRANT_AUTHORIZATION_CODE]),
            require_consent=require_consent,
            require_app_permission=require_app_permission,
            owner_id=owner_id,
        )
        try:
            self.store.create_client(client)
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail) from exc
        self.audit.record(
            AuditAction.CLIENT_REGISTERED,
            actor_id=actor_id,
            resource_type="oauth_client",
            resource_id=client.client_id,
            after=client.to_doc(),
        )
        logger.info("oauth_client_registered", client_id=client.client_id, confidential=confidential)
        return client, secret

    def get(self, client_id: str) -> OAuthClient:
        client = self.store.get_client(client_id)
        if client is None:
            raise NotFoundError("client not found")
        return client

    def list(self) -> List[OAuthClient]:
        return self.store.list_clients()

    def update(self, client_id: str, *, actor_id: Optional[str] = None, **changes: Any) -> OAuthClient:
        before = self.get(client_id)
        allowed = {
            "name",
            "redirect_uris",
            "allowed_scopes",
            "status",
            "require_pkce",
            "require_consent",
            "require_app_permission",
            "grant_types",
        }
        updates = {key: value for key, value in changes.items() if key in allowed and value is not None}
        if "status" in updates and updates["status"] not in CLIENT_STATUSES:
            raise ValidationError("invalid client status")
        if "redirect_uris" in updates:
            if not updates["redirect_uris"]:
                raise ValidationError("at least one redirect uri is required")
            updates["redirect_uris"] = [_validate_redirect_uri(u) for u in updates["redirect_uris"]]
        if "allowed_scopes" in updates:
            updates["allowed_scopes"] = self._check_scopes(updates["allowed_scopes"])
        if "grant_types" in updates:
            updates["grant_types"] = self._check_grant_types(updates["grant_types"])
        if updates.get("require_pkce") is False and not before.is_confidential:
            raise ValidationError("public clients must use PKCE")
        client = self.store.update_client(client_id, **updates)
        self.audit.record(
            AuditAction.CLIENT_UPDATED,
            actor_id=actor_id,
            resource_type="oauth_client",
            resource_id=client_id,
            before=before.to_doc(),
            after=client.to_doc(),
        )
        return client

    def rotate_secret(self, client_id: str, *, actor_id: Optional[str] = None) -> str:
        client = self.get(client_id)
        if not client.is_confidential:
            raise ValidationError("public clients have no secret")
        secret = secrets.token_urlsafe(32)
        self.store.update_client(client_id, client_secret_hash=self.hasher.hash(secret))
        self.audit.record(
            AuditAction.CLIENT_SECRET_ROTATED,
            actor_id=actor_id,
            resource_type="oauth_client",
            resource_id=client_id,
        )
        return secret

    def authenticate(self, client_id: Optional[str], client_secret: Optional[str]) -> OAuthClient:
        """Resolve the calling client or raise ``invalid_client``."""
        client = self.store.get_client(client_id) if client_id else None
        if client is None or not client.is_active:
            raise OAuthError("invalid_client", "unknown or inactive client")
        if client.is_confidential:
            if not client_secret:
                raise OAuthError("invalid_client", "client authentication required")
            try:
                self.hasher.verify(client.client_secret_hash, client_secret)
            except (VerifyMismatchError, VerificationError, InvalidHash):
                logger.warning("oauth_client_auth_failed", client_id=client_id)
                raise OAuthError("invalid_client", "client authentication failed")
        elif client_secret:
            raise OAuthError("invalid_client", "public clients must not send a secret")
        return client


@dataclass
class AuthorizationRequest:
    response_type: Optional[str]
    client_id: Optional[str]
    redirect_uri: Optional[str]
    scope: List[str] = field(default_factory=list)
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    nonce: Optional[str] = None


def _redirectable(error: str, description: str) -> OAuthError:
    # The redirect uri is trusted at this point so the error can go back to the client
    return OAuthError(error, description, detail={"redirectable": True})


class OAuthEngine:
    """Authorization-code flow with PKCE, token issuance and verification."""

    def __init__(
        self,
        store,
        clients: ClientRegistry,
        signer: TokenSigner,
        audit: AuditLogger,
        *,
        code_ttl_seconds: int = 600,
        access_token_ttl_seconds: int = 3600,
        refresh_token_ttl_seconds: int = 30 * 24 * 3600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.clients = clients
        self.signer = signer
        self.audit = audit
        self.code_ttl_seconds = code_ttl_seconds
        self.access_token_ttl_seconds = access_token_ttl_seconds
        self.refresh_token_ttl_seconds = refresh_token_ttl_seconds
        self._clock = clock

    # authorize
    def validate_authorization_request(self, request: AuthorizationRequest) -> OAuthClient:
        """Check client, redirect, response type, scope and PKCE parameters.

        Errors about the client or redirect uri are never redirected. Later
        errors carry ``detail["redirectable"]`` so the caller can send them
        back to the client's redirect uri.
        """
        client = self.store.get_client(request.client_id) if request.client_id else None
        if client is None:
            raise OAuthError("invalid_request", "unknown client_id")
        if not client.is_active:
            raise OAuthError("unauthorized_client", "client is suspended")
        if not request.redirect_uri or request.redirect_uri not in client.redirect_uris:
            raise OAuthError("invalid_request", "redirect_uri is not registered for this client")
        if request.response_type != "code":
            raise _redirectable("unsupported_response_type", "only response_type=code is supported")
        if not request.scope or OPENID not in request.scope:
            raise _redirectable("invalid_scope", "the openid scope is required")
        extra = [s for s in request.scope if s not in client.allowed_scopes]
        if extra:
            raise _redirectable("invalid_scope", f"scope not allowed: {format_scope(extra)}")
        if request.code_challenge:
            method = request.code_challenge_method or "plain"
            if method not in PKCE_METHODS:
                raise _redirectable("invalid_request", "unsupported code_challenge_method")
            if not is_pkce_value(request.code_challenge):
                raise _redirectable("invalid_request", "malformed code_challenge")
            request.code_challenge_method = method
        elif client.require_pkce:
            raise _redirectable("invalid_request", "code_challenge is required for this client")
        elif request.code_challenge_method:
            raise _redirectable("invalid_request", "code_challenge_method without code_challenge")
        return client

    def needs_consent(self, user_id: str, client: OAuthClient, scopes: List[str]) -> bool:
        if not client.require_consent:
            return False
        consent = self.store.get_consent(user_id, client.client_id)
        return consent is None or not consent.covers(scopes)

    def grant_consent(self, user_id: str, client_id: str, scopes: List[str]) -> Consent:
        consent = self.store.save_consent(user_id, client_id, scopes, self._clock())
        self.audit.record(
            AuditAction.CONSENT_GRANTED,
            actor_id=user_id,
            resource_type="oauth_client",
            resource_id=client_id,
            after={"scope": consent.scope},
        )
        return consent

    def list_consents(self, user_id: str) -> List[Consent]:
        return self.store.list_consents(user_id)

    def revoke_consent(self, user_id: str, client_id: str) -> bool:
        now = self._clock()
        revoked = self.store.revoke_consent(user_id, client_id, now)
        if revoked:
            tokens = self.store.revoke_tokens(user_id, now, client_id=client_id)
            self.audit.record(
                AuditAction.CONSENT_REVOKED,
                actor_id=user_id,
                resource_type="oauth_client",
                resource_id=client_id,
                details={"tokens_revoked": tokens},
            )
        return revoked

    def issue_code(
        self,
        request: AuthorizationRequest,
        user_id: str,
        *,
        auth_time: Optional[datetime] = None,
    ) -> AuthorizationCode:
        now = self._clock()
        code = AuthorizationCode(
            code=secrets.token_urlsafe(32),
            client_id=request.client_id,
            user_id=user_id,
            redirect_uri=request.redirect_uri,
            scope=list(request.scope),
            expires_at=now + timedelta(seconds=self.code_ttl_seconds),
            code_challenge=request.code_challenge,
            code_challenge_method=request.code_challenge_method if request.code_challenge else None,
            nonce=request.nonce,
            auth_time=auth_time or now,
            created_at=now,
        )
        self.store.create_authorization_code(code)
        self.audit.record(
            AuditAction.CODE_ISSUED,
            actor_id=user_id,
            resource_type="oauth_client",
            resource_id=request.client_id,
            details={"scope": format_scope(code.scope), "pkce": bool(code.code_challenge)},
        )
        return code

    # token endpoint
    def _reject_code(self, reason: str, client_id: str, user_id: Optional[str] = None) -> OAuthError:
        logger.warning("authorization_code_rejected", reason=reason, client_id=client_id)
        self.audit.record(
            AuditAction.CODE_REJECTED,
            actor_id=user_id,
            resource_type="oauth_client",
            resource_id=client_id,
            outcome="denied",
            details={"reason": reason},
        )
        return OAuthError("invalid_grant", "authorization code is invalid, expired or already used")

    def exchange_code(
        self,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        code: Optional[str],
        redirect_uri: Optional[str],
        code_verifier: Optional[str] = None,
    ) -> Dict[str, Any]:
        client = self.clients.authenticate(client_id, client_secret)
        if GRANT_AUTHORIZATION_CODE not in client.grant_types:
            raise OAuthError("unauthorized_client", "grant type not allowed for this client")
        if not code:
            raise OAuthError("invalid_request", "code is required")
        now = self._clock()
        stored = self.store.get_authorization_code(code)
        if stored is None or stored.client_id != client.client_id:
            raise self._reject_code("unknown_code", client.client_id)
        if stored.expires_at <= now:
            raise self._reject_code("expired", client.client_id, stored.user_id)
        consumed = self.store.consume_authorization_code(code, now)
        if consumed is None:
            # Replay of a redeemed code: kill whatever it produced
            self.store.revoke_tokens(stored.user_id, now, client_id=client.client_id)
            raise self._reject_code("replayed", client.client_id, stored.user_id)
        if redirect_uri != consumed.redirect_uri:
            raise self._reject_code("redirect_mismatch", client.client_id, consumed.user_id)
        if consumed.code_challenge:
            if not code_verifier:
                raise self._reject_code("missing_verifier", client.client_id, consumed.user_id)
            if not verify_pkce(code_verifier, consumed.code_challenge, consumed.code_challenge_method or "plain"):
                raise self._reject_code("pkce_mismatch", client.client_id, consumed.user_id)
        user = self.store.get_user(consumed.user_id)
        if user is None or not user.is_active:
            raise self._reject_code("user_inactive", client.client_id, consumed.user_id)
        return self._issue_tokens(
            user,
            client,
            consumed.scope,
            nonce=consumed.nonce,
            auth_time=consumed.auth_time,
        )

    def refresh(
        self,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        refresh_token: Optional[str],
        scope: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        client = self.clients.authenticate(client_id, client_secret)
        if GRANT_REFRESH_TOKEN not in client.grant_types:
            raise OAuthError("unauthorized_client", "grant type not allowed for this client")
        if not refresh_token:
            raise OAuthError("invalid_request", "refresh_token is required")
        now = self._clock()
        stored = self.store.get_token_by_hash(hash_token(refresh_token))
        if stored is None or stored.token_type != REFRESH_TOKEN or stored.client_id != client.client_id:
            raise OAuthError("invalid_grant", "refresh token is invalid")
        if stored.revoked_at is not None:
            if stored.replaced_by:
                self._handle_refresh_reuse(stored, now)
            raise OAuthError("invalid_grant", "refresh token is invalid")
        if stored.expires_at <= now:
            raise OAuthError("invalid_grant", "refresh token expired")
        scopes = list(stored.scope)
        if scope:
            extra = [s for s in scope if s not in stored.scope]
            if extra:
                raise OAuthError("invalid_scope", f"scope exceeds original grant: {format_scope(extra)}")
            scopes = list(scope)
        user = self.store.get_user(stored.user_id)
        if user is None or not user.is_active:
            raise OAuthError("invalid_grant", "refresh token is invalid")
        next_jti = uuid.uuid4().hex
        if self.store.rotate_refresh_token(stored.jti, now, next_jti) is None:
            # Lost a race with another use of the same token
            self._handle_refresh_reuse(stored, now)
            raise OAuthError("invalid_grant", "refresh token is invalid")
        return self._issue_tokens(
            user,
            client,
            scopes,
            refresh_jti=next_jti,
            parent_jti=stored.jti,
        )

    def _handle_refresh_reuse(self, token: OAuthToken, now: datetime) -> None:
        revoked = self.store.revoke_tokens(token.user_id, now, client_id=token.client_id)
        logger.warning(
            "refresh_token_reuse_detected",
            jti=token.jti,
            user_id=token.user_id,
            client_id=token.client_id,
            revoked=revoked,
        )
        self.audit.record(
            AuditAction.REFRESH_REUSE_DETECTED,
            actor_id=token.user_id,
            resource_type="oauth_client",
            resource_id=token.client_id,
            outcome="denied",
            details={"jti": token.jti, "tokens_revoked": revoked},
        )

    def _issue_tokens(
        self,
        user,
        client: OAuthClient,
        scopes: List[str],
        *,
        nonce: Optional[str] = None,
        auth_time: Optional[datetime] = None,
        refresh_jti: Optional[str] = None,
        parent_jti: Optional[str] = None,
    ) -> Dict[str, Any]:
        now = self._clock()
        iat = int(now.timestamp())
        access_exp = now + timedelta(seconds=self.access_token_ttl_seconds)
        access_jti = uuid.uuid4().hex
        access_token = self.signer.sign(
            {
                "sub": user.id,
                "aud": client.client_id,
                "iat": iat,
                "exp": int(access_exp.timestamp()),
                "jti": access_jti,
                "scope": format_scope(scopes),
                "client_id": client.client_id,
                "token_use": "access",
            }
        )
        self.store.create_token(
            OAuthToken(
                jti=access_jti,
                token_type=ACCESS_TOKEN,
                user_id=user.id,
                client_id=client.client_id,
                scope=list(scopes),
                issued_at=now,
                expires_at=access_exp,
            )
        )
        response: Dict[str, Any] = {
            "access_token": access_token,
            "token_type": "Bearer",
            "expires_in": self.access_token_ttl_seconds,
            "scope": format_scope(scopes),
        }
        if OPENID in scopes:
            id_claims = {
                **claims_for(user, scopes),
                "aud": client.client_id,
                "iat": iat,
                "exp": int(access_exp.timestamp()),
                "auth_time": int((auth_time or now).timestamp()),
                "jti": uuid.uuid4().hex,
            }
            if nonce:
                id_claims["nonce"] = nonce
            response["id_token"] = self.signer.sign(id_claims)
        if OFFLINE_ACCESS in scopes and GRANT_REFRESH_TOKEN in client.grant_types:
            raw_refresh = secrets.token_urlsafe(32)
            self.store.create_token(
                OAuthToken(
                    jti=refresh_jti or uuid.uuid4().hex,
                    token_type=REFRESH_TOKEN,
                    user_id=user.id,
                    client_id=client.client_id,
                    scope=list(scopes),
                    issued_at=now,
                    expires_at=now + timedelta(seconds=self.refresh_token_ttl_seconds),
                    token_hash=hash_token(raw_refresh),
                    parent_jti=parent_jti,
                )
            )
            response["refresh_token"] = raw_refresh
        self.audit.record(
            AuditAction.TOKEN_ISSUED,
            actor_id=user.id,
            resource_type="oauth_client",
            resource_id=client.client_id,
            details={
                "jti": access_jti,
                "scope": format_scope(scopes),
                "refresh": "refresh_token" in response,
                "rotated_from": parent_jti,
            },
        )
        return response

    # verification
    def verify_access_token(self, token: Optional[str]) -> Result[OAuthToken]:
        if not token:
            return Result.failure(TokenError("missing access token"), "missing")
        try:
            claims = self.signer.verify(token)
        except pyjwt.ExpiredSignatureError:
            return Result.failure(TokenError("access token expired"), "expired")
        except pyjwt.InvalidTokenError:
            return Result.failure(TokenError("invalid access token"), "invalid_signature")
        record = self.store.get_token(str(claims.get("jti") or ""))
        if record is None or record.token_type != ACCESS_TOKEN:
            return Result.failure(TokenError("invalid access token"), "unknown_jti")
        if record.revoked_at is not None:
            return Result.failure(TokenError("access token revoked"), "revoked")
        if record.expires_at <= self._clock():
            return Result.failure(TokenError("access token expired"), "expired")
        return Result.success(record)

    def userinfo(self, token: Optional[str]) -> Dict[str, Any]:
        verified = self.verify_access_token(token)
        if not verified.ok:
            logger.info("userinfo_rejected", reason=verified.reason)
            raise OAuthError("invalid_token", verified.error.message)
        record = verified.value
        if OPENID not in record.scope:
            raise OAuthError("invalid_token", "token was not issued for openid")
        user = self.store.get_user(record.user_id)
        if user is None or not user.is_active:
            raise OAuthError("invalid_token", "user is not available")
        return claims_for(user, record.scope)

    def _lookup_token(self, token: str) -> Optional[OAuthToken]:
        record = self.store.get_token_by_hash(hash_token(token))
        if record is not None:
            return record
        try:
            claims = pyjwt.decode(token, options={"verify_signature": False})
        except pyjwt.InvalidTokenError:
            return None
        record = self.store.get_token(str(claims.get("jti") or ""))
        if record is None:
            return None
        # The signature is what binds the jti to this token value
        try:
            self.signer.verify(token)
        except pyjwt.ExpiredSignatureError:
            return record
        except pyjwt.InvalidTokenError:
            return None
        return record

    def revoke(
        self,
        token: Optional[str],
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
    ) -> None:
        """RFC 7009 revocation; unknown or foreign tokens are ignored."""
        client = self.clients.authenticate(client_id, client_secret)
        if not token:
            raise OAuthError("invalid_request", "token is required")
        record = self._lookup_token(token)
        if record is None or record.client_id != client.client_id:
            return
        if self.store.revoke_token(record.jti, self._clock()):
            self.audit.record(
                AuditAction.TOKEN_REVOKED,
                actor_id=record.user_id,
                resource_type="oauth_client",
                resource_id=client.client_id,
                details={"jti": record.jti, "token_type": record.token_type},
            )

    def revoke_user_tokens(self, user_id: str, *, client_id: Optional[str] = None) -> int:
        return self.store.revoke_tokens(user_id, self._clock(), client_id=client_id)

    def introspect(
        self,
        token: Optional[str],
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
    ) -> Dict[str, Any]:
        client = self.clients.authenticate(client_id, client_secret)
        if not client.is_confidential:
            raise OAuthError("invalid_client", "introspection requires a confidential client")
        record = self._lookup_token(token) if token else None
        if record is None or record.client_id != client.client_id or not record.is_active(self._clock()):
            return {"active": False}
        return {
            "active": True,
            "scope": format_scope(record.scope),
            "client_id": record.client_id,
            "sub": record.user_id,
            "token_type": "refresh_token" if record.token_type == REFRESH_TOKEN else "Bearer",
            "iat": int(record.issued_at.timestamp()),
            "exp": int(record.expires_at.timestamp()),
            "iss": self.signer.issuer,
            "jti": record.jti,
        }

    def discovery_document(self) -> Dict[str, Any]:
        issuer = self.signer.issuer
        return {
            "issuer": issuer,
            "authorization_endpoint": f"{issuer}/authorize",
            "token_endpoint": f"{issuer}/token",
            "userinfo_endpoint": f"{issuer}/userinfo",
            "revocation_endpoint": f"{issuer}/revoke",
            "introspection_endpoint": f"{issuer}/introspect",
            "jwks_uri": f"{issuer}/.well-known/jwks.json",
            "response_types_supported": ["code"],
            "grant_types_supported": list(SUPPORTED_GRANT_TYPES),
            "subject_types_supported": ["public"],
            "id_token_signing_alg_values_supported": ["RS256"],
            "scopes_supported": list(self.clients.known_scopes),
            "token_endpoint_auth_methods_supported": ["client_secret_post", "client_secret_basic", "none"],
            "code_challenge_methods_supported": list(PKCE_METHODS),
            "claims_supported": ["sub", "iss", "aud", "exp", "iat", "auth_time", "nonce", "name", "email", "email_verified"],
        }
