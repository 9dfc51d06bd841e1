"""Upstream Google/Facebook sign-in against a mocked provider."""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from ssoidp.service.errors import AuthenticationError, ValidationError
from ssoidp.service.social import SocialLoginService

CREDENTIALS = {"google": ("g-client", "g-secret"), "facebook": ("fb-client", "fb-secret")}


def _provider(profile, *, token_status=200, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        host = request.url.host
        if host == "oauth2.googleapis.com" or request.url.path.endswith("/oauth/access_token"):
            if token_status != 200:
                return httpx.Response(token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "upstream-token"})
        return httpx.Response(200, json=profile)

    return httpx.MockTransport(handler)


def _service(services, transport, credentials=CREDENTIALS):
    return SocialLoginService(
        services.store,
        services.linker,
        credentials,
        callback_base="https://idp.example.com",
        transport=transport,
        clock=services.clock,
    )


def _state_from(url):
    return parse_qs(urlparse(url).query)["state"][0]


GOOGLE_PROFILE = {"sub": "g-42", "email": "Alice@Example.com", "email_verified": True, "name": "Alice"}


async def test_google_login_creates_account(services):
    seen = []
    social = _service(services, _provider(GOOGLE_PROFILE, seen=seen))
    url = social.start("google", redirect_after="/dashboard")
    query = parse_qs(urlparse(url).query)

    user, created, redirect_after = await social.complete("google", "auth-code", query["state"][0])

    assert query["code_challenge_method"] == ["S256"]
    assert query["redirect_uri"] == ["https://idp.example.com/v1/auth/social/google/callback"]
    assert created is True
    assert redirect_after == "/dashboard"
    assert user.email == "alice@example.com"
    assert user.login_methods == ["google"]
    token_request = seen[0]
    assert b"code_verifier=" in token_request.content
    assert seen[1].headers["Authorization"] == "Bearer upstream-token"


async def test_state_is_single_use(services):
    social = _service(services, _provider(GOOGLE_PROFILE))
    state = _state_from(social.start("google"))
    await social.complete("google", "code", state)

    with pytest.raises(AuthenticationError):
        await social.complete("google", "code", state)


async def test_state_is_bound_to_provider(services):
    social = _service(services, _provider({"id": "fb-1", "email": "a@example.com"}))
    state = _state_from(social.start("google"))

    with pytest.raises(AuthenticationError):
        await social.complete("facebook", "code", state)


async def test_expired_state(services):
    social = _service(services, _provider(GOOGLE_PROFILE))
    state = _state_from(social.start("google"))
    services.clock.advance(minutes=11)

    with pytest.raises(AuthenticationError):
        await social.complete("google", "code", state)


async def test_unverified_google_email_is_rejected(services):
    profile = dict(GOOGLE_PROFILE, email_verified=False)
    social = _service(services, _provider(profile))
    state = _state_from(social.start("google"))

    with pytest.raises(AuthenticationError):
        await social.complete("google", "code", state)

    assert services.store.get_user_by_email("alice@example.com") is None


async def test_upstream_failure_is_generic(services):
    social = _service(services, _provider(GOOGLE_PROFILE, token_status=400))
    state = _state_from(social.start("google"))

    with pytest.raises(AuthenticationError) as excinfo:
        await social.complete("google", "code", state)
    assert excinfo.value.message == "social login failed"


async def test_facebook_links_existing_password_account(services):
    existing, _ = services.linker.register_password("bob@example.com", "hash")
    seen = []
    social = _service(services, _provider({"id": "fb-7", "email": "bob@example.com", "name": "Bob"}, seen=seen))
    url = social.start("facebook")

    user, created, _ = await social.complete("facebook", "code", _state_from(url))

    assert "code_challenge" not in parse_qs(urlparse(url).query)
    assert created is False
    assert user.id == existing.id
    assert set(user.login_methods) == {"password", "facebook"}
    assert seen[0].method == "GET"


@pytest.mark.parametrize("target", ["https://evil.example.com", "//evil.example.com", "dashboard"])
def test_unsafe_redirect_after_is_refused(services, target):
    social = _service(services, _provider(GOOGLE_PROFILE))

    with pytest.raises(ValidationError):
        social.start("google", redirect_after=target)


def test_unconfigured_provider(services):
    social = _service(services, _provider(GOOGLE_PROFILE), credentials={})

    assert not social.is_configured("google")
    with pytest.raises(ValidationError):
        social.start("google")
    with pytest.raises(ValidationError):
        social.start("github")


async def test_missing_code_or_state(services):
    social = _service(services, _provider(GOOGLE_PROFILE))

    with pytest.raises(AuthenticationError):
        await social.complete("google", None, "state")
