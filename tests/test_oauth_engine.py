"""Authorization-code flow, token issuance, rotation and verification."""

import base64
import hashlib

import jwt as pyjwt
import pytest

from ssoidp.service.errors import NotFoundError, OAuthError, ValidationError
from ssoidp.service.oauth import AuthorizationRequest, pkce_challenge, verify_pkce

REDIRECT = "https://app.example.com/callback"
VERIFIER = "dBjftJeZ4CK-P1bFZmO8ZBHEdTwMGkNlDVcEvk3Zj4Ek"
PLAIN_VERIFIER = "plain-verifier-" + "x" * 40


@pytest.fixture
def user(services):
    user, _ = services.linker.register_password("alice@example.com", "hash", name="Alice")
    return user


@pytest.fixture
def confidential(services):
    client, secret = services.clients.register(
        "Reports",
        [REDIRECT],
        ["openid", "profile", "email", "offline_access"],
        grant_types=["authorization_code", "refresh_token"],
    )
    return client, secret


@pytest.fixture
def public_client(services):
    client, secret = services.clients.register(
        "SPA", [REDIRECT], ["openid", "email"], confidential=False
    )
    assert secret is None
    return client


def _request(client_id, scope=("openid",), **overrides):
    params = dict(
        response_type="code",
        client_id=client_id,
        redirect_uri=REDIRECT,
        scope=list(scope),
        state="xyz",
    )
    params.update(overrides)
    return AuthorizationRequest(**params)


def _code_for(services, client, user, scope=("openid",), **overrides):
    request = _request(client.client_id, scope, **overrides)
    services.oauth.validate_authorization_request(request)
    return services.oauth.issue_code(request, user.id)


class TestPkceHelpers:
    def test_s256_is_unpadded_base64url_sha256(self):
        digest = hashlib.sha256(VERIFIER.encode()).digest()
        expected = base64.urlsafe_b64encode(digest).decode().rstrip("=")

        assert pkce_challenge(VERIFIER) == expected
        assert "=" not in pkce_challenge(VERIFIER)

    def test_plain_and_mismatch(self):
        assert verify_pkce(PLAIN_VERIFIER, PLAIN_VERIFIER, "plain")
        assert not verify_pkce(VERIFIER, pkce_challenge(VERIFIER + "x"), "S256")

    @pytest.mark.parametrize("verifier", ["\u00e9", "\u00e9" * 43, "short", "a" * 129, "a b" * 20])
    def test_verifier_outside_charset_is_rejected(self, verifier):
        assert not verify_pkce(verifier, verifier, "plain")
        assert not verify_pkce(verifier, pkce_challenge(VERIFIER), "S256")


class TestClientRegistry:
    def test_public_clients_always_require_pkce(self, public_client):
        assert public_client.require_pkce is True
        assert not public_client.is_confidential

    def test_secret_is_stored_hashed(self, services, confidential):
        client, secret = confidential

        stored = services.store.get_client(client.client_id)

        assert stored.client_secret_hash != secret
        assert services.clients.authenticate(client.client_id, secret).client_id == client.client_id

    @pytest.mark.parametrize("secret", [None, "", "wrong"])
    def test_bad_confidential_credentials(self, services, confidential, secret):
        client, _ = confidential

        with pytest.raises(OAuthError) as excinfo:
            services.clients.authenticate(client.client_id, secret)
        assert excinfo.value.error_code == "invalid_client"

    def test_public_client_must_not_send_secret(self, services, public_client):
        with pytest.raises(OAuthError):
            services.clients.authenticate(public_client.client_id, "anything")

    def test_suspended_client_cannot_authenticate(self, services, confidential):
        client, secret = confidential
        services.clients.update(client.client_id, status="suspended")

        with pytest.raises(OAuthError):
            services.clients.authenticate(client.client_id, secret)

    def test_registration_requires_openid_and_valid_redirects(self, services):
        with pytest.raises(ValidationError):
            services.clients.register("x", [REDIRECT], ["email"])
        with pytest.raises(ValidationError):
            services.clients.register("x", ["javascript:alert(1)"], ["openid"])
        with pytest.raises(ValidationError):
            services.clients.register("x", [], ["openid"])

    def test_rotate_secret_invalidates_previous(self, services, confidential):
        client, old_secret = confidential

        new_secret = services.clients.rotate_secret(client.client_id)

        assert services.clients.authenticate(client.client_id, new_secret)
        with pytest.raises(OAuthError):
            services.clients.authenticate(client.client_id, old_secret)

    def test_public_client_cannot_drop_pkce(self, services, public_client):
        with pytest.raises(ValidationError):
            services.clients.update(public_client.client_id, require_pkce=False)

    def test_unknown_client(self, services):
        with pytest.raises(NotFoundError):
            services.clients.get("missing")


class TestAuthorizationRequest:
    def test_unknown_client_is_not_redirectable(self, services):
        with pytest.raises(OAuthError) as excinfo:
            services.oauth.validate_authorization_request(_request("missing"))
        assert not excinfo.value.detail.get("redirectable")

    def test_unregistered_redirect_is_not_redirectable(self, services, confidential):
        client, _ = confidential
        request = _request(client.client_id, redirect_uri="https://evil.example.com/cb")

        with pytest.raises(OAuthError) as excinfo:
            services.oauth.validate_authorization_request(request)
        assert excinfo.value.error_code == "invalid_request"
        assert not excinfo.value.detail.get("redirectable")

    @pytest.mark.parametrize(
        "overrides, error",
        [
            ({"response_type": "token"}, "unsupported_response_type"),
            ({"scope": ["email"]}, "invalid_scope"),
            ({"scope": ["openid", "admin"]}, "invalid_scope"),
            ({"code_challenge": VERIFIER, "code_challenge_method": "S512"}, "invalid_request"),
            ({"code_challenge": "abc", "code_challenge_method": "plain"}, "invalid_request"),
            ({"code_challenge": "\u00e9" * 43, "code_challenge_method": "plain"}, "invalid_request"),
            ({"code_challenge_method": "S256"}, "invalid_request"),
        ],
    )
    def test_redirectable_errors(self, services, confidential, overrides, error):
        client, _ = confidential

        with pytest.raises(OAuthError) as excinfo:
            services.oauth.validate_authorization_request(_request(client.client_id, **overrides))
        assert excinfo.value.error_code == error
        assert excinfo.value.detail["redirectable"] is True

    def test_public_client_without_challenge(self, services, public_client):
        with pytest.raises(OAuthError) as excinfo:
            services.oauth.validate_authorization_request(_request(public_client.client_id))
        assert excinfo.value.error_code == "invalid_request"

    def test_challenge_method_defaults_to_plain(self, services, public_client):
        request = _request(public_client.client_id, code_challenge=PLAIN_VERIFIER)

        services.oauth.validate_authorization_request(request)

        assert request.code_challenge_method == "plain"


class TestCodeExchange:
    def test_issues_tokens_with_nonce(self, services, confidential, user):
        client, secret = confidential
        code = _code_for(services, client, user, ("openid", "email"), nonce="n-123")

        tokens = services.oauth.exchange_code(
            client_id=client.client_id, client_secret=secret, code=code.code, redirect_uri=REDIRECT
        )

        assert tokens["token_type"] == "Bearer"
        assert "refresh_token" not in tokens
        claims = services.oauth.signer.verify(tokens["id_token"], audience=client.client_id)
        assert claims["sub"] == user.id
        assert claims["nonce"] == "n-123"
        assert claims["email"] == "alice@example.com"
        assert "name" not in claims
        header = pyjwt.get_unverified_header(tokens["access_token"])
        assert header["kid"] == services.oauth.signer.key_id

    def test_replayed_code_revokes_issued_tokens(self, services, confidential, user):
        client, secret = confidential
        code = _code_for(services, client, user)
        kwargs = dict(client_id=client.client_id, client_secret=secret, code=code.code, redirect_uri=REDIRECT)
        tokens = services.oauth.exchange_code(**kwargs)

        with pytest.raises(OAuthError) as excinfo:
            services.oauth.exchange_code(**kwargs)

        assert excinfo.value.error_code == "invalid_grant"
        assert services.oauth.verify_access_token(tokens["access_token"]).reason == "revoked"
        rejected = services.audit.query(action="oauth.code_rejected")
        assert rejected[0].details["reason"] == "replayed"

    def test_redirect_uri_must_match(self, services, confidential, user):
        client, secret = confidential
        code = _code_for(services, client, user)

        with pytest.raises(OAuthError) as excinfo:
            services.oauth.exchange_code(
                client_id=client.client_id,
                client_secret=secret,
                code=code.code,
                redirect_uri="https://app.example.com/other",
            )
        assert excinfo.value.error_code == "invalid_grant"

    def test_expired_code(self, services, confidential, user):
        client, secret = confidential
        code = _code_for(services, client, user)
        services.clock.advance(seconds=601)

        with pytest.raises(OAuthError):
            services.oauth.exchange_code(
                client_id=client.client_id, client_secret=secret, code=code.code, redirect_uri=REDIRECT
            )

    def test_code_is_bound_to_client(self, services, confidential, user):
        client, _ = confidential
        other, other_secret = services.clients.register("Other", [REDIRECT], ["openid"])
        code = _code_for(services, client, user)

        with pytest.raises(OAuthError) as excinfo:
            services.oauth.exchange_code(
                client_id=other.client_id, client_secret=other_secret, code=code.code, redirect_uri=REDIRECT
            )
        assert excinfo.value.error_code == "invalid_grant"

    def test_pkce_s256(self, services, public_client, user):
        code = _code_for(
            services,
            public_client,
            user,
            code_challenge=pkce_challenge(VERIFIER),
            code_challenge_method="S256",
        )

        tokens = services.oauth.exchange_code(
            client_id=public_client.client_id,
            client_secret=None,
            code=code.code,
            redirect_uri=REDIRECT,
            code_verifier=VERIFIER,
        )

        assert tokens["access_token"]

    @pytest.mark.parametrize("verifier", [None, "wrong-verifier"])
    def test_pkce_failures(self, services, public_client, user, verifier):
        code = _code_for(
            services,
            public_client,
            user,
            code_challenge=pkce_challenge(VERIFIER),
            code_challenge_method="S256",
        )

        with pytest.raises(OAuthError) as excinfo:
            services.oauth.exchange_code(
                client_id=public_client.client_id,
                client_secret=None,
                code=code.code,
                redirect_uri=REDIRECT,
                code_verifier=verifier,
            )
        assert excinfo.value.error_code == "invalid_grant"

    def test_pkce_plain(self, services, public_client, user):
        code = _code_for(services, public_client, user, code_challenge=PLAIN_VERIFIER)

        tokens = services.oauth.exchange_code(
            client_id=public_client.client_id,
            client_secret=None,
            code=code.code,
            redirect_uri=REDIRECT,
            code_verifier=PLAIN_VERIFIER,
        )

        assert tokens["access_token"]

    def test_non_ascii_plain_verifier_is_invalid_grant(self, services, public_client, user):
        code = _code_for(services, public_client, user, code_challenge=PLAIN_VERIFIER)

        with pytest.raises(OAuthError) as excinfo:
            services.oauth.exchange_code(
                client_id=public_client.client_id,
                client_secret=None,
                code=code.code,
                redirect_uri=REDIRECT,
                code_verifier="é",
            )
        assert excinfo.value.error_code == "invalid_grant"


class TestRefresh:
    def _tokens(self, services, confidential, user, scope=("openid", "email", "offline_access")):
        client, secret = confidential
        code = _code_for(services, client, user, scope)
        return services.oauth.exchange_code(
            client_id=client.client_id, client_secret=secret, code=code.code, redirect_uri=REDIRECT
        )

    def test_rotation_issues_new_refresh_token(self, services, confidential, user):
        client, secret = confidential
        first = self._tokens(services, confidential, user)

        second = services.oauth.refresh(
            client_id=client.client_id, client_secret=secret, refresh_token=first["refresh_token"]
        )

        assert second["refresh_token"] != first["refresh_token"]
        assert second["scope"] == "openid email offline_access"

    def test_reuse_revokes_the_whole_family(self, services, confidential, user):
        client, secret = confidential
        first = self._tokens(services, confidential, user)
        second = services.oauth.refresh(
            client_id=client.client_id, client_secret=secret, refresh_token=first["refresh_token"]
        )

        with pytest.raises(OAuthError) as excinfo:
            services.oauth.refresh(
                client_id=client.client_id, client_secret=secret, refresh_token=first["refresh_token"]
            )

        assert excinfo.value.error_code == "invalid_grant"
        with pytest.raises(OAuthError):
            services.oauth.refresh(
                client_id=client.client_id, client_secret=secret, refresh_token=second["refresh_token"]
            )
        assert services.oauth.verify_access_token(second["access_token"]).reason == "revoked"
        assert services.audit.query(action="oauth.refresh_reuse_detected")

    def test_scope_can_only_narrow(self, services, confidential, user):
        client, secret = confidential
        first = self._tokens(services, confidential, user)

        with pytest.raises(OAuthError) as excinfo:
            services.oauth.refresh(
                client_id=client.client_id,
                client_secret=secret,
                refresh_token=first["refresh_token"],
                scope=["openid", "profile"],
            )
        assert excinfo.value.error_code == "invalid_scope"

        narrowed = services.oauth.refresh(
            client_id=client.client_id,
            client_secret=secret,
            refresh_token=first["refresh_token"],
            scope=["openid"],
        )
        assert narrowed["scope"] == "openid"

    def test_refresh_requires_offline_access(self, services, confidential, user):
        tokens = self._tokens(services, confidential, user, scope=("openid",))

        assert "refresh_token" not in tokens

    def test_client_without_refresh_grant(self, services, user):
        client, secret = services.clients.register("NoRefresh", [REDIRECT], ["openid", "offline_access"])
        code = _code_for(services, client, user, ("openid", "offline_access"))
        tokens = services.oauth.exchange_code(
            client_id=client.client_id, client_secret=secret, code=code.code, redirect_uri=REDIRECT
        )
        assert "refresh_token" not in tokens

        with pytest.raises(OAuthError) as excinfo:
            services.oauth.refresh(client_id=client.client_id, client_secret=secret, refresh_token="x")
        assert excinfo.value.error_code == "unauthorized_client"


class TestVerificationAndRevocation:
    def _access(self, services, confidential, user, scope=("openid", "profile")):
        client, secret = confidential
        code = _code_for(services, client, user, scope)
        return services.oauth.exchange_code(
            client_id=client.client_id, client_secret=secret, code=code.code, redirect_uri=REDIRECT
        )

    def test_userinfo_releases_only_granted_claims(self, services, confidential, user):
        tokens = self._access(services, confidential, user)

        claims = services.oauth.userinfo(tokens["access_token"])

        assert claims == {"sub": user.id, "name": "Alice"}

    def test_verify_reasons(self, services, confidential, user):
        tokens = self._access(services, confidential, user)

        assert services.oauth.verify_access_token(None).reason == "missing"
        assert services.oauth.verify_access_token("garbage").reason == "invalid_signature"
        assert services.oauth.verify_access_token(tokens["access_token"]).ok
        services.clock.advance(seconds=3601)
        assert services.oauth.verify_access_token(tokens["access_token"]).reason == "expired"

    def test_userinfo_rejects_bad_token(self, services):
        with pytest.raises(OAuthError) as excinfo:
            services.oauth.userinfo("garbage")
        assert excinfo.value.error_code == "invalid_token"

    def test_revoke_ignores_foreign_tokens(self, services, confidential, user):
        tokens = self._access(services, confidential, user)
        other, other_secret = services.clients.register("Other", [REDIRECT], ["openid"])

        services.oauth.revoke(tokens["access_token"], client_id=other.client_id, client_secret=other_secret)

        assert services.oauth.verify_access_token(tokens["access_token"]).ok

    def test_revoke_by_owner(self, services, confidential, user):
        client, secret = confidential
        tokens = self._access(services, confidential, user)

        services.oauth.revoke(tokens["access_token"], client_id=client.client_id, client_secret=secret)
        services.oauth.revoke("unknown-token", client_id=client.client_id, client_secret=secret)

        assert services.oauth.verify_access_token(tokens["access_token"]).reason == "revoked"

    def test_introspect(self, services, confidential, user):
        client, secret = confidential
        tokens = self._access(services, confidential, user)

        active = services.oauth.introspect(tokens["access_token"], client_id=client.client_id, client_secret=secret)
        unknown = services.oauth.introspect("nope", client_id=client.client_id, client_secret=secret)

        assert active["active"] is True
        assert active["sub"] == user.id
        assert active["scope"] == "openid profile"
        assert unknown == {"active": False}

    def test_introspect_requires_confidential_client(self, services, public_client):
        with pytest.raises(OAuthError):
            services.oauth.introspect("x", client_id=public_client.client_id, client_secret=None)

    def test_revoking_consent_kills_tokens(self, services, confidential, user):
        client, _ = confidential
        services.oauth.grant_consent(user.id, client.client_id, ["openid", "profile"])
        tokens = self._access(services, confidential, user)
        assert not services.oauth.needs_consent(user.id, client, ["openid"])

        assert services.oauth.revoke_consent(user.id, client.client_id) is True

        assert services.oauth.verify_access_token(tokens["access_token"]).reason == "revoked"
        assert services.oauth.needs_consent(user.id, client, ["openid"])
        assert services.oauth.revoke_consent(user.id, client.client_id) is False

    def test_consent_must_cover_requested_scopes(self, services, confidential, user):
        client, _ = confidential
        services.oauth.grant_consent(user.id, client.client_id, ["openid"])

        assert services.oauth.needs_consent(user.id, client, ["openid", "email"])


def test_discovery_document(services):
    document = services.oauth.discovery_document()

    assert document["issuer"] == "https://idp.example.com"
    assert document["jwks_uri"] == "https://idp.example.com/.well-known/jwks.json"
    assert document["code_challenge_methods_supported"] == ["S256", "plain"]
    assert "offline_access" in document["scopes_supported"]


def test_jwks_publishes_signing_key(signer):
    keys = signer.jwks()["keys"]

    assert len(keys) == 1
    assert keys[0]["kid"] == signer.key_id
    assert keys[0]["alg"] == "RS256"
    assert "d" not in keys[0]
