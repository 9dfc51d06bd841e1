from __future__ import annotations

from dataclasses import dataclass
from datetime import timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from ssoidp.api.schemas import (
    AcceptedResponse,
    AdminLinkRequest,
    AppPermissionGrantRequest,
    AppPermissionResponse,
    AuditEntryResponse,
    AuthResponse,
    ClientCreateRequest,
    ClientResponse,
    ClientUpdateRequest,
    ConsentResponse,
    Envelope,
    LoginMethodResponse,
    LoginRequest,
    MagicLinkRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PinVerifyRequest,
    RegisterRequest,
    SessionResponse,
    StepUpSettingRequest,
    TokenVerifyRequest,
    UserResponse,
    UserStatusRequest,
)
from ssoidp.logging import get_correlation_id, get_logger
from ssoidp.service.audit import AuditAction
from ssoidp.service.auth import LoginOutcome
from ssoidp.service.errors import AuthenticationError, AuthorizationError
from ssoidp.service.runtime import STEP_UP_SETTING, get_runtime
from ssoidp.service.security import client_ip
from ssoidp.storage.models import (
    SUPPORTED_PROVIDERS,
    AppPermission,
    AuditLogEntry,
    OAuthClient,
    Session,
    User,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_ACCEPTED_MESSAGE = "if the address belongs to an account, an email is on its way"
_PASSWORD_LINK_MESSAGE = "confirm the new password from the link sent to the account email"


@dataclass
class AuthContext:
    user: User
    session: Session

    @property
    def user_id(self) -> str:
        return self.user.id


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _ok(data=None) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    if get_correlation_id():
        envelope.request_id = get_correlation_id()
    return envelope


def request_ip(request: Request) -> str:
    runtime = get_runtime()
    peer = request.client.host if request.client else None
    return client_ip(
        peer, request.headers.get("X-Forwarded-For"), runtime.settings.trusted_proxies
    )


def session_token_from(request: Request) -> Optional[str]:
    """Session token from a Bearer header or the session cookie."""
    authorization = request.headers.get("Authorization")
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return request.cookies.get(get_runtime().settings.session_cookie_name)


async def _enforce_rate_limit(tier: str, request: Request) -> int:
    runtime = get_runtime()
    return await runtime.rate_limiter.hit(
        tier, request_ip(request), user_agent=request.headers.get("User-Agent")
    )


async def get_user(request: Request) -> AuthContext:
    runtime = get_runtime()
    session, user = runtime.auth.authenticate(
        session_token_from(request),
        ip_addr=request_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return AuthContext(user=user, session=session)


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if principal.user.role != "admin":
        raise AuthorizationError("admin access required")
    return principal


def _cookie_samesite(settings) -> str:
    # Relying parties on other sites need the cookie on the /authorize redirect
    return "none" if settings.is_production else "lax"


def apply_session_cookie(response: Response, token: str, session: Session) -> None:
    settings = get_runtime().settings
    expires_at = session.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    response.set_cookie(
        settings.session_cookie_name,
        token,
        httponly=True,
        secure=settings.is_production,
        samesite=_cookie_samesite(settings),
        domain=settings.cookie_domain,
        expires=expires_at,
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        settings.session_cookie_name,
        domain=settings.cookie_domain,
        path="/",
        secure=settings.is_production,
        httponly=True,
        samesite=_cookie_samesite(settings),
    )


def _login_response(response: Response, outcome: LoginOutcome) -> Envelope:
    if outcome.token and outcome.session:
        apply_session_cookie(response, outcome.token, outcome.session)
    return _ok(
        AuthResponse(
            user_id=outcome.user.id,
            step_up_required=outcome.step_up_required,
            pin_challenge_id=outcome.pin_challenge_id,
            session_id=outcome.session.id if outcome.session else None,
            session_expires_at=outcome.session.expires_at if outcome.session else None,
        )
    )


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        status=user.status,
        email_verified=user.email_verified,
        login_methods=user.login_methods,
    )


def _session_to_response(session: Session, current_id: Optional[str]) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        created_at=session.created_at,
        expires_at=session.expires_at,
        last_seen_at=session.last_seen_at,
        auth_method=session.auth_method,
        ip_addr=session.ip_addr,
        user_agent=session.user_agent,
        current=session.id == current_id,
    )


def _client_to_response(client: OAuthClient, secret: Optional[str] = None) -> ClientResponse:
    return ClientResponse(
        client_id=client.client_id,
        name=client.name,
        redirect_uris=client.redirect_uris,
        allowed_scopes=client.allowed_scopes,
        confidential=client.is_confidential,
        require_pkce=client.require_pkce,
        grant_types=client.grant_types,
        status=client.status,
        require_consent=client.require_consent,
        require_app_permission=client.require_app_permission,
        client_secret=secret,
    )


def _permission_to_response(permission: AppPermission) -> AppPermissionResponse:
    return AppPermissionResponse(
        user_id=permission.user_id,
        client_id=permission.client_id,
        role=permission.role,
        status=permission.status,
        requested_at=permission.requested_at,
        granted_at=permission.granted_at,
        granted_by=permission.granted_by,
        revoked_at=permission.revoked_at,
        revoked_by=permission.revoked_by,
    )


def _audit_to_response(entry: AuditLogEntry) -> AuditEntryResponse:
    return AuditEntryResponse(
        id=entry.id,
        action=entry.action,
        actor_id=entry.actor_id,
        resource_type=entry.resource_type,
        resource_id=entry.resource_id,
        before=entry.before,
        after=entry.after,
        outcome=entry.outcome,
        ip=entry.ip,
        user_agent=entry.user_agent,
        details=entry.details,
        timestamp=entry.timestamp,
    )


# auth
@router.get("/auth/csrf", response_model=Envelope, tags=["auth"])
async def issue_csrf_token(response: Response):
    """Issue a double-submit token.

    The value is set as a readable cookie and returned in the body; mutating
    requests echo it back in the ``X-CSRF-Token`` header.
    """
    runtime = get_runtime()
    settings = runtime.settings
    token = runtime.csrf.issue()
    response.set_cookie(
        settings.csrf_cookie_name,
        token,
        httponly=False,
        secure=settings.is_production,
        samesite="strict" if settings.is_production else "lax",
        domain=settings.cookie_domain,
        max_age=settings.csrf_ttl_seconds,
        path="/",
    )
    return _ok({"csrf_token": token})


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a password account.

    An address that already belongs to a social-only account gets a
    confirmation link instead: the password is attached, and a session
    opened, only from ``/v1/auth/password-link/confirm``. That case answers
    202 without a session.
    """
    runtime = get_runtime()
    await _enforce_rate_limit("strict", request)
    outcome = await runtime.auth.register(
        body.email,
        body.password,
        name=body.name,
        ip_addr=request_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    if outcome.confirmation_sent:
        response.status_code = 202
        return _ok(AcceptedResponse(message=_PASSWORD_LINK_MESSAGE))
    return _login_response(response, outcome)


@router.post("/auth/password-link/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_link(body: TokenVerifyRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit("validation", request)
    outcome = await runtime.auth.confirm_password_link(
        body.token, ip_addr=request_ip(request), user_agent=request.headers.get("User-Agent")
    )
    return _login_response(response, outcome)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    When the login lands in the PIN step-up window no session is opened; the
    response carries ``pin_challenge_id`` for ``/v1/auth/pin/verify`` instead.

    Raises:
        401: If credentials are invalid
        429: If the strict tier is exhausted for this address
    """
    runtime = get_runtime()
    await _enforce_rate_limit("strict", request)
    outcome = await runtime.auth.login(
        body.email,
        body.password,
        ip_addr=request_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return _login_response(response, outcome)


@router.post("/auth/pin/verify", response_model=Envelope, tags=["auth"])
async def verify_pin(body: PinVerifyRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit("strict", request)
    outcome = await runtime.auth.verify_pin(
        body.challenge_id,
        body.pin,
        ip_addr=request_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return _login_response(response, outcome)


@router.post("/auth/magic-link", response_model=Envelope, status_code=202, tags=["auth"])
async def request_magic_link(body: MagicLinkRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit("strict", request)
    await runtime.auth.request_magic_link(
        body.email, ip_addr=request_ip(request), user_agent=request.headers.get("User-Agent")
    )
    return _ok(AcceptedResponse(message=_ACCEPTED_MESSAGE))


@router.post("/auth/magic-link/verify", response_model=Envelope, tags=["auth"])
async def verify_magic_link(body: TokenVerifyRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit("validation", request)
    outcome = await runtime.auth.verify_magic_link(
        body.token, ip_addr=request_ip(request), user_agent=request.headers.get("User-Agent")
    )
    return _login_response(response, outcome)


@router.post("/auth/password-reset/request", response_model=Envelope, status_code=202, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit("strict", request)
    await runtime.auth.request_password_reset(
        body.email, ip_addr=request_ip(request), user_agent=request.headers.get("User-Agent")
    )
    return _ok(AcceptedResponse(message=_ACCEPTED_MESSAGE))


@router.post("/auth/password-reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm, request: Request, response: Response):
    """Set a new password from a reset link; every open session is revoked."""
    runtime = get_runtime()
    await _enforce_rate_limit("validation", request)
    user = await runtime.auth.confirm_password_reset(
        body.token,
        body.password,
        ip_addr=request_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    clear_session_cookie(response)
    return _ok(_user_to_response(user))


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, request: Request, principal: AuthContext = Depends(get_user)
):
    """Change the password of the signed-in user; other sessions are revoked."""
    runtime = get_runtime()
    await _enforce_rate_limit("strict", request)
    revoked = await runtime.auth.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        current_session_id=principal.session.id,
        ip_addr=request_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return _ok({"sessions_revoked": revoked})


@router.post("/auth/email/verify/request", response_model=Envelope, status_code=202, tags=["auth"])
async def request_email_verification(request: Request, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await _enforce_rate_limit("strict", request)
    sent = await runtime.auth.request_email_verification(
        principal.user, ip_addr=request_ip(request), user_agent=request.headers.get("User-Agent")
    )
    return _ok({"sent": sent})


@router.post("/auth/email/verify", response_model=Envelope, tags=["auth"])
async def verify_email(body: TokenVerifyRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit("validation", request)
    user = await runtime.auth.verify_email(
        body.token, ip_addr=request_ip(request), user_agent=request.headers.get("User-Agent")
    )
    return _ok(_user_to_response(user))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    revoked = runtime.auth.logout(
        session_token_from(request),
        ip_addr=request_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    clear_session_cookie(response)
    return _ok({"logged_out": revoked})


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(
    request: Request, response: Response, principal: AuthContext = Depends(get_user)
):
    """Current user and session; refreshes the cookie to the slid expiry."""
    token = session_token_from(request)
    if token and request.cookies.get(get_runtime().settings.session_cookie_name) == token:
        apply_session_cookie(response, token, principal.session)
    return _ok(
        {
            "user": _user_to_response(principal.user),
            "session": _session_to_response(principal.session, principal.session.id),
        }
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = runtime.auth.list_sessions(principal.user_id)
    return _ok(
        {"items": [_session_to_response(s, principal.session.id) for s in sessions]}
    )


@router.delete("/auth/sessions", response_model=Envelope, tags=["auth"])
async def revoke_sessions(
    request: Request,
    session_id: Optional[str] = Query(None, max_length=128),
    principal: AuthContext = Depends(get_user),
):
    """Revoke one session by id, or every session except the current one."""
    runtime = get_runtime()
    if session_id:
        runtime.auth.revoke_session(principal.user_id, session_id, ip_addr=request_ip(request))
        return _ok({"revoked": 1})
    count = runtime.auth.revoke_other_sessions(
        principal.user_id, principal.session.id, ip_addr=request_ip(request)
    )
    return _ok({"revoked": count})


# social login
def _require_provider(provider: str) -> str:
    runtime = get_runtime()
    if provider not in SUPPORTED_PROVIDERS or not runtime.social.is_configured(provider):
        raise _http_error("not_found", f"provider not available: {provider}", status_code=404)
    return provider


@router.get("/auth/social/{provider}/start", tags=["auth"])
async def social_start(
    request: Request,
    provider: str = Path(..., max_length=32),
    redirect_after: Optional[str] = Query(None, max_length=2048),
):
    runtime = get_runtime()
    await _enforce_rate_limit("general", request)
    _require_provider(provider)
    url = runtime.social.start(provider, redirect_after=redirect_after)
    return RedirectResponse(url, status_code=302)


@router.get("/auth/social/{provider}/callback", tags=["auth"])
async def social_callback(
    request: Request,
    response: Response,
    provider: str = Path(..., max_length=32),
    code: Optional[str] = Query(None, max_length=4096),
    state: Optional[str] = Query(None, max_length=512),
    error: Optional[str] = Query(None, max_length=256),
):
    """Provider redirect target.

    Finishes with a redirect to the stored ``redirect_after`` path when a
    session was opened, otherwise with the usual envelope (including the PIN
    challenge when a step-up is required).
    """
    runtime = get_runtime()
    await _enforce_rate_limit("validation", request)
    _require_provider(provider)
    if error:
        logger.info("social_login_denied_by_provider", provider=provider, error=error)
        raise AuthenticationError("social login failed")
    ip_addr = request_ip(request)
    user, created, redirect_after = await runtime.social.complete(
        provider, code, state, actor_ip=ip_addr
    )
    outcome = await runtime.auth.complete_social_login(
        user, provider, ip_addr=ip_addr, user_agent=request.headers.get("User-Agent")
    )
    if redirect_after and outcome.token and outcome.session:
        redirect = RedirectResponse(redirect_after, status_code=302)
        apply_session_cookie(redirect, outcome.token, outcome.session)
        return redirect
    envelope = _login_response(response, outcome)
    envelope.data = {**envelope.data.model_dump(), "created": created}
    return envelope


# account
@router.get("/account/login-methods", response_model=Envelope, tags=["account"])
async def list_login_methods(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    methods = runtime.linker.describe_methods(principal.user)
    return _ok({"items": [LoginMethodResponse(**m) for m in methods]})


@router.delete("/account/login-methods/{method}", response_model=Envelope, tags=["account"])
async def unlink_login_method(
    request: Request,
    method: str = Path(..., max_length=32),
    principal: AuthContext = Depends(get_user),
):
    """Remove a login method; refused when it is the account's last one."""
    runtime = get_runtime()
    user = runtime.linker.unlink(
        principal.user_id, principal.user_id, method, actor_ip=request_ip(request)
    )
    return _ok(_user_to_response(user))


@router.get("/account/consents", response_model=Envelope, tags=["account"])
async def list_consents(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    consents = runtime.oauth.list_consents(principal.user_id)
    return _ok(
        {
            "items": [
                ConsentResponse(client_id=c.client_id, scope=c.scope, granted_at=c.granted_at)
                for c in consents
            ]
        }
    )


@router.delete("/account/consents/{client_id}", response_model=Envelope, tags=["account"])
async def revoke_consent(
    client_id: str = Path(..., max_length=128), principal: AuthContext = Depends(get_user)
):
    """Withdraw consent for a client; its outstanding tokens die with it."""
    runtime = get_runtime()
    if not runtime.oauth.revoke_consent(principal.user_id, client_id):
        raise _http_error("not_found", "consent not found", status_code=404)
    return _ok({"revoked": True})


@router.post("/apps/{client_id}/access", response_model=Envelope, status_code=202, tags=["apps"])
async def request_app_access(
    request: Request,
    client_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit("general", request)
    permission = runtime.permissions.request_access(principal.user_id, client_id)
    return _ok(_permission_to_response(permission))


# admin
@router.patch("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_set_user_status(
    body: UserStatusRequest,
    request: Request,
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    """Enable or disable an account; disabling ends its sessions and tokens."""
    runtime = get_runtime()
    user = runtime.auth.set_user_status(
        principal.user_id, user_id, body.status, ip_addr=request_ip(request)
    )
    return _ok(_user_to_response(user))


@router.post("/admin/users/{user_id}/providers", response_model=Envelope, tags=["admin"])
async def admin_link_provider(
    body: AdminLinkRequest,
    request: Request,
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    """Attach a provider identity to an account whose email matches exactly."""
    runtime = get_runtime()
    user = runtime.linker.admin_link(
        principal.user_id,
        user_id,
        body.provider,
        provider_id=body.provider_id,
        email=body.email,
        name=body.name,
        actor_ip=request_ip(request),
    )
    return _ok(_user_to_response(user))


@router.delete(
    "/admin/users/{user_id}/login-methods/{method}", response_model=Envelope, tags=["admin"]
)
async def admin_unlink_login_method(
    request: Request,
    user_id: str = Path(..., max_length=128),
    method: str = Path(..., max_length=32),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = runtime.linker.unlink(principal.user_id, user_id, method, actor_ip=request_ip(request))
    return _ok(_user_to_response(user))


@router.get("/admin/clients", response_model=Envelope, tags=["admin"])
async def admin_list_clients(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    return _ok({"items": [_client_to_response(c) for c in runtime.clients.list()]})


@router.post("/admin/clients", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_register_client(
    body: ClientCreateRequest, principal: AuthContext = Depends(get_admin_user)
):
    """Register a relying party. The plaintext secret is only returned here."""
    runtime = get_runtime()
    client, secret = runtime.clients.register(
        body.name,
        body.redirect_uris,
        body.allowed_scopes,
        confidential=body.confidential,
        require_pkce=body.require_pkce,
        grant_types=body.grant_types,
        require_consent=body.require_consent,
        require_app_permission=body.require_app_permission,
        owner_id=principal.user_id,
        actor_id=principal.user_id,
    )
    return _ok(_client_to_response(client, secret))


@router.patch("/admin/clients/{client_id}", response_model=Envelope, tags=["admin"])
async def admin_update_client(
    body: ClientUpdateRequest,
    client_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    changes = body.model_dump(exclude_none=True)
    client = runtime.clients.update(client_id, actor_id=principal.user_id, **changes)
    return _ok(_client_to_response(client))


@router.post("/admin/clients/{client_id}/secret", response_model=Envelope, tags=["admin"])
async def admin_rotate_client_secret(
    client_id: str = Path(..., max_length=128), principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    secret = runtime.clients.rotate_secret(client_id, actor_id=principal.user_id)
    return _ok(_client_to_response(runtime.clients.get(client_id), secret))


@router.get("/admin/app-permissions", response_model=Envelope, tags=["admin"])
async def admin_list_app_permissions(
    user_id: Optional[str] = Query(None, max_length=128),
    client_id: Optional[str] = Query(None, max_length=128),
    status: Optional[str] = Query(None, pattern="^(pending|approved|revoked)$"),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    permissions = runtime.permissions.list(user_id=user_id, client_id=client_id, status=status)
    return _ok({"items": [_permission_to_response(p) for p in permissions]})


@router.put("/admin/app-permissions/{user_id}/{client_id}", response_model=Envelope, tags=["admin"])
async def admin_grant_app_permission(
    body: AppPermissionGrantRequest,
    user_id: str = Path(..., max_length=128),
    client_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    permission = runtime.permissions.grant(principal.user_id, user_id, client_id, role=body.role)
    return _ok(_permission_to_response(permission))


@router.delete(
    "/admin/app-permissions/{user_id}/{client_id}", response_model=Envelope, tags=["admin"]
)
async def admin_revoke_app_permission(
    user_id: str = Path(..., max_length=128),
    client_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    permission = runtime.permissions.revoke(principal.user_id, user_id, client_id)
    return _ok(_permission_to_response(permission))


@router.get("/admin/audit", response_model=Envelope, tags=["admin"])
async def admin_query_audit(
    actor_id: Optional[str] = Query(None, max_length=128),
    resource_id: Optional[str] = Query(None, max_length=128),
    action: Optional[str] = Query(None, max_length=64),
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    entries = runtime.audit.query(
        actor_id=actor_id, resource_id=resource_id, action=action, limit=limit
    )
    return _ok({"items": [_audit_to_response(e) for e in entries]})


@router.put("/admin/settings/step-up", response_model=Envelope, tags=["admin"])
async def admin_set_step_up(
    body: StepUpSettingRequest, request: Request, principal: AuthContext = Depends(get_admin_user)
):
    """Toggle PIN step-up at runtime; overrides the environment default."""
    runtime = get_runtime()
    before = runtime.step_up_enabled()
    runtime.store.set_system_setting(STEP_UP_SETTING, body.enabled)
    runtime.audit.record(
        AuditAction.SETTING_CHANGED,
        actor_id=principal.user_id,
        resource_type="setting",
        resource_id=STEP_UP_SETTING,
        before={"enabled": before},
        after={"enabled": body.enabled},
        ip=request_ip(request),
    )
    return _ok({"enabled": runtime.step_up_enabled()})
