from __future__ import annotations

import base64
import binascii
from typing import Optional, Tuple
from urllib.parse import unquote_plus, urlencode

from fastapi import APIRouter, Form, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from ssoidp.api.routes import AuthContext, _enforce_rate_limit, request_ip
from ssoidp.logging import get_logger
from ssoidp.service.errors import AuthenticationError, OAuthError, TokenError
from ssoidp.service.oauth import GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN, AuthorizationRequest
from ssoidp.service.runtime import get_runtime
from ssoidp.service.scopes import parse_scope

logger = get_logger(__name__)

router = APIRouter(tags=["oauth"])

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _redirect_with(uri: str, params: dict, *, status_code: int = 302) -> RedirectResponse:
    query = urlencode({k: v for k, v in params.items() if v is not None})
    separator = "&" if "?" in uri else "?"
    return RedirectResponse(f"{uri}{separator}{query}", status_code=status_code)


def _error_redirect(
    request: AuthorizationRequest, exc: OAuthError, *, status_code: int = 302
) -> RedirectResponse:
    logger.info(
        "authorize_error_redirected",
        client_id=request.client_id,
        error=exc.error_code,
    )
    return _redirect_with(
        request.redirect_uri,
        {"error": exc.error_code, "error_description": exc.description, "state": request.state},
        status_code=status_code,
    )


def _browser_principal(request: Request) -> Optional[AuthContext]:
    """Session from the cookie only; Bearer tokens never drive /authorize."""
    runtime = get_runtime()
    token = request.cookies.get(runtime.settings.session_cookie_name)
    if not token:
        return None
    try:
        session, user = runtime.auth.authenticate(
            token, ip_addr=request_ip(request), user_agent=request.headers.get("User-Agent")
        )
    except (AuthenticationError, TokenError):
        return None
    return AuthContext(user=user, session=session)


def _check_app_access(client, user_id: str) -> None:
    runtime = get_runtime()
    if client.require_app_permission and not runtime.permissions.has_access(user_id, client.client_id):
        raise OAuthError(
            "access_denied", "user has no access to this application", detail={"redirectable": True}
        )


def _client_credentials(
    request: Request, client_id: Optional[str], client_secret: Optional[str]
) -> Tuple[Optional[str], Optional[str]]:
    """Resolve client_secret_basic first, falling back to client_secret_post."""
    header = request.headers.get("Authorization")
    if not header or not header.lower().startswith("basic "):
        return client_id, client_secret
    try:
        decoded = base64.b64decode(header[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise OAuthError("invalid_client", "malformed basic credentials")
    raw_id, sep, raw_secret = decoded.partition(":")
    if not sep:
        raise OAuthError("invalid_client", "malformed basic credentials")
    basic_id = unquote_plus(raw_id)
    if client_id and client_id != basic_id:
        raise OAuthError("invalid_request", "client_id does not match the authorization header")
    return basic_id, unquote_plus(raw_secret)


@router.get("/authorize")
async def authorize(
    request: Request,
    response_type: Optional[str] = Query(None, max_length=32),
    client_id: Optional[str] = Query(None, max_length=128),
    redirect_uri: Optional[str] = Query(None, max_length=2048),
    scope: Optional[str] = Query(None, max_length=1024),
    state: Optional[str] = Query(None, max_length=1024),
    code_challenge: Optional[str] = Query(None, max_length=256),
    code_challenge_method: Optional[str] = Query(None, max_length=16),
    nonce: Optional[str] = Query(None, max_length=512),
    prompt: Optional[str] = Query(None, max_length=64),
):
    """Authorization endpoint.

    Client and redirect problems are answered here; everything else goes back
    to the client's redirect uri. Without a session the browser is sent to
    the login page with ``return_to`` pointing back at this request, and a
    missing consent sends it to the consent page with the same parameters.
    """
    runtime = get_runtime()
    await _enforce_rate_limit("general", request)
    auth_request = AuthorizationRequest(
        response_type=response_type,
        client_id=client_id,
        redirect_uri=redirect_uri,
        scope=parse_scope(scope),
        state=state,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        nonce=nonce,
    )
    try:
        client = runtime.oauth.validate_authorization_request(auth_request)
        principal = _browser_principal(request)
        if principal is None:
            if prompt == "none":
                raise OAuthError("login_required", "no active session", detail={"redirectable": True})
            return_to = f"{request.url.path}?{request.url.query}"
            return _redirect_with(runtime.settings.login_page_url, {"return_to": return_to})
        _check_app_access(client, principal.user_id)
        if runtime.oauth.needs_consent(principal.user_id, client, auth_request.scope):
            if prompt == "none":
                raise OAuthError(
                    "consent_required", "consent has not been granted", detail={"redirectable": True}
                )
            return RedirectResponse(
                f"{runtime.settings.consent_page_url}?{request.url.query}", status_code=302
            )
    except OAuthError as exc:
        if exc.detail.get("redirectable"):
            return _error_redirect(auth_request, exc)
        raise
    code = runtime.oauth.issue_code(
        auth_request, principal.user_id, auth_time=principal.session.created_at
    )
    return _redirect_with(auth_request.redirect_uri, {"code": code.code, "state": state})


@router.post("/authorize/consent")
async def authorize_consent(
    request: Request,
    decision: str = Form(..., pattern="^(approve|deny)$"),
    response_type: Optional[str] = Form(None, max_length=32),
    client_id: Optional[str] = Form(None, max_length=128),
    redirect_uri: Optional[str] = Form(None, max_length=2048),
    scope: Optional[str] = Form(None, max_length=1024),
    state: Optional[str] = Form(None, max_length=1024),
    code_challenge: Optional[str] = Form(None, max_length=256),
    code_challenge_method: Optional[str] = Form(None, max_length=16),
    nonce: Optional[str] = Form(None, max_length=512),
):
    """Record the user's answer on the consent page and finish the redirect."""
    runtime = get_runtime()
    await _enforce_rate_limit("general", request)
    principal = _browser_principal(request)
    if principal is None:
        raise AuthenticationError("login required")
    auth_request = AuthorizationRequest(
        response_type=response_type,
        client_id=client_id,
        redirect_uri=redirect_uri,
        scope=parse_scope(scope),
        state=state,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        nonce=nonce,
    )
    try:
        client = runtime.oauth.validate_authorization_request(auth_request)
        if decision != "approve":
            raise OAuthError("access_denied", "user denied the request", detail={"redirectable": True})
        _check_app_access(client, principal.user_id)
    except OAuthError as exc:
        if exc.detail.get("redirectable"):
            return _error_redirect(auth_request, exc, status_code=303)
        raise
    runtime.oauth.grant_consent(principal.user_id, client.client_id, auth_request.scope)
    code = runtime.oauth.issue_code(
        auth_request, principal.user_id, auth_time=principal.session.created_at
    )
    return _redirect_with(
        auth_request.redirect_uri, {"code": code.code, "state": state}, status_code=303
    )


@router.post("/token")
async def token(
    request: Request,
    grant_type: Optional[str] = Form(None, max_length=64),
    code: Optional[str] = Form(None, max_length=512),
    redirect_uri: Optional[str] = Form(None, max_length=2048),
    code_verifier: Optional[str] = Form(None, max_length=256),
    refresh_token: Optional[str] = Form(None, max_length=512),
    scope: Optional[str] = Form(None, max_length=1024),
    client_id: Optional[str] = Form(None, max_length=128),
    client_secret: Optional[str] = Form(None, max_length=512),
):
    runtime = get_runtime()
    await _enforce_rate_limit("validation", request)
    resolved_id, resolved_secret = _client_credentials(request, client_id, client_secret)
    if not grant_type:
        raise OAuthError("invalid_request", "grant_type is required")
    if grant_type == GRANT_AUTHORIZATION_CODE:
        payload = runtime.oauth.exchange_code(
            client_id=resolved_id,
            client_secret=resolved_secret,
            code=code,
            redirect_uri=redirect_uri,
            code_verifier=code_verifier,
        )
    elif grant_type == GRANT_REFRESH_TOKEN:
        payload = runtime.oauth.refresh(
            client_id=resolved_id,
            client_secret=resolved_secret,
            refresh_token=refresh_token,
            scope=parse_scope(scope) or None,
        )
    else:
        raise OAuthError("unsupported_grant_type", f"unsupported grant_type: {grant_type}")
    return JSONResponse(payload, headers=_NO_STORE)


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization")
    if header and header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


@router.api_route("/userinfo", methods=["GET", "POST"])
async def userinfo(request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit("general", request)
    claims = runtime.oauth.userinfo(_bearer_token(request))
    return JSONResponse(claims, headers=_NO_STORE)


@router.post("/revoke")
async def revoke(
    request: Request,
    token: Optional[str] = Form(None, max_length=4096),
    token_type_hint: Optional[str] = Form(None, max_length=32),
    client_id: Optional[str] = Form(None, max_length=128),
    client_secret: Optional[str] = Form(None, max_length=512),
):
    """RFC 7009: answers 200 for unknown tokens too."""
    runtime = get_runtime()
    await _enforce_rate_limit("validation", request)
    resolved_id, resolved_secret = _client_credentials(request, client_id, client_secret)
    runtime.oauth.revoke(token, client_id=resolved_id, client_secret=resolved_secret)
    return Response(status_code=200, headers=_NO_STORE)


@router.post("/introspect")
async def introspect(
    request: Request,
    token: Optional[str] = Form(None, max_length=4096),
    token_type_hint: Optional[str] = Form(None, max_length=32),
    client_id: Optional[str] = Form(None, max_length=128),
    client_secret: Optional[str] = Form(None, max_length=512),
):
    runtime = get_runtime()
    await _enforce_rate_limit("validation", request)
    resolved_id, resolved_secret = _client_credentials(request, client_id, client_secret)
    result = runtime.oauth.introspect(token, client_id=resolved_id, client_secret=resolved_secret)
    return JSONResponse(result, headers=_NO_STORE)


@router.get("/.well-known/openid-configuration")
async def openid_configuration():
    runtime = get_runtime()
    return JSONResponse(
        runtime.oauth.discovery_document(), headers={"Cache-Control": "public, max-age=3600"}
    )


@router.get("/.well-known/jwks.json")
async def jwks():
    runtime = get_runtime()
    return JSONResponse(runtime.signer.jwks(), headers={"Cache-Control": "public, max-age=3600"})
