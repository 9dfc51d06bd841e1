"""HTTP surface for registration, login, passwordless flows and sessions."""

from fastapi.testclient import TestClient

from ssoidp.app import create_app
from ssoidp.service.runtime import STEP_UP_SETTING, get_runtime, reset_runtime_for_tests

PASSWORD = "correct horse battery"


def _register(api, email="alice@example.com", password=PASSWORD):
    return api.post("/v1/auth/register", json={"email": email, "password": password, "name": "Alice"})


def test_health_reports_components(api):
    response = api.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] in {"healthy", "unhealthy"}
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["filesystem"]["status"] == "healthy"
    assert response.headers["Cache-Control"].startswith("no-store")


def test_register_sets_session_cookie(api):
    response = _register(api)

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "ok"
    assert body["data"]["session_id"]
    assert body["request_id"] == response.headers["X-Request-ID"]
    cookie = response.headers["set-cookie"]
    assert "sso_session=" in cookie
    assert "HttpOnly" in cookie
    assert "samesite=lax" in cookie.lower()

    me = api.get("/v1/auth/session").json()["data"]
    assert me["user"]["email"] == "alice@example.com"
    assert me["user"]["login_methods"] == ["password"]
    assert me["session"]["current"] is True


def test_mutation_without_csrf_token_is_refused():
    client = TestClient(create_app())

    response = client.post("/v1/auth/login", json={"email": "a@example.com", "password": PASSWORD})

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "csrf_invalid"


def test_forged_csrf_header_is_refused(api):
    api.headers["X-CSRF-Token"] = "forged.0.value"

    response = _register(api)

    assert response.status_code == 403


def test_invalid_body_returns_envelope_without_echoing_input(api):
    response = api.post("/v1/auth/register", json={"email": "not-an-email", "password": "hunter2hunter2"})

    assert response.status_code == 400
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "validation_error"
    assert "hunter2hunter2" not in response.text


def test_login_failure_is_generic(api):
    _register(api)

    wrong = api.post("/v1/auth/login", json={"email": "alice@example.com", "password": "wrong password"})
    unknown = api.post("/v1/auth/login", json={"email": "ghost@example.com", "password": PASSWORD})

    assert wrong.status_code == unknown.status_code == 401
    assert wrong.json()["error"] == unknown.json()["error"]


def test_duplicate_registration_conflicts(api):
    _register(api)

    response = _register(api)

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "conflict"


def test_unauthenticated_session_lookup(api):
    response = api.get("/v1/auth/session")

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "unauthorized"


def test_bearer_session_token_skips_csrf(api):
    _register(api)
    token = api.cookies.get("sso_session")
    bare = TestClient(create_app())

    response = bare.delete("/v1/auth/sessions", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json()["data"] == {"revoked": 0}


def test_logout_clears_cookie_and_revokes(api):
    _register(api)
    token = api.cookies.get("sso_session")

    response = api.post("/v1/auth/logout")

    assert response.json()["data"] == {"logged_out": True}
    assert get_runtime().credentials.validate_session(token).reason == "revoked"
    assert api.get("/v1/auth/session").status_code == 401


def test_magic_link_flow(api, outbox):
    _register(api)
    api.cookies.delete("sso_session")

    accepted = api.post("/v1/auth/magic-link", json={"email": "alice@example.com"})
    ignored = api.post("/v1/auth/magic-link", json={"email": "ghost@example.com"})

    assert accepted.status_code == ignored.status_code == 202
    assert accepted.json()["data"] == ignored.json()["data"]
    links = [m for m in outbox if m["kind"] == "magic_link"]
    assert len(links) == 1

    verified = api.post("/v1/auth/magic-link/verify", json={"token": links[0]["token"]})
    assert verified.status_code == 200
    assert api.get("/v1/auth/session").json()["data"]["session"]["auth_method"] == "magic_link"

    replay = api.post("/v1/auth/magic-link/verify", json={"token": links[0]["token"]})
    assert replay.status_code == 401
    assert replay.json()["error"]["code"] == "invalid_token"


def test_password_reset_flow(api, outbox):
    _register(api)
    old_token = api.cookies.get("sso_session")

    api.post("/v1/auth/password-reset/request", json={"email": "alice@example.com"})
    reset_token = outbox[-1]["token"]
    confirmed = api.post(
        "/v1/auth/password-reset/confirm", json={"token": reset_token, "password": "new password 123"}
    )

    assert confirmed.status_code == 200
    assert confirmed.json()["data"]["email_verified"] is True
    assert get_runtime().credentials.validate_session(old_token).reason == "revoked"
    login = api.post("/v1/auth/login", json={"email": "alice@example.com", "password": "new password 123"})
    assert login.status_code == 200


def test_pin_step_up_over_http(api, outbox):
    runtime = get_runtime()
    runtime.store.set_system_setting(STEP_UP_SETTING, True)
    runtime.step_up.probability = 1.0
    _register(api)
    for _ in range(3):
        assert api.post("/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD}).json()[
            "data"
        ]["session_id"]
    api.cookies.delete("sso_session")

    pending = api.post("/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD})

    data = pending.json()["data"]
    assert data["step_up_required"] is True
    assert data["session_id"] is None
    assert "sso_session" not in pending.headers.get("set-cookie", "")

    pin = outbox[-1]["pin"]
    wrong = "000000" if pin != "000000" else "111111"
    bad = api.post("/v1/auth/pin/verify", json={"challenge_id": data["pin_challenge_id"], "pin": wrong})
    assert bad.status_code == 401
    assert bad.json()["error"]["code"] == "invalid_token"

    verified = api.post("/v1/auth/pin/verify", json={"challenge_id": data["pin_challenge_id"], "pin": pin})
    assert verified.status_code == 200
    assert verified.json()["data"]["session_id"]


def test_session_management(api):
    _register(api)
    other = TestClient(create_app())
    other_token = other.get("/v1/auth/csrf").json()["data"]["csrf_token"]
    other.headers["X-CSRF-Token"] = other_token
    other.post("/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD})

    sessions = api.get("/v1/auth/sessions").json()["data"]["items"]
    assert len(sessions) == 2
    foreign = next(s for s in sessions if not s["current"])

    response = api.delete("/v1/auth/sessions", params={"session_id": foreign["id"]})

    assert response.json()["data"] == {"revoked": 1}
    assert other.get("/v1/auth/session").status_code == 401
    assert api.get("/v1/auth/session").status_code == 200


def test_login_methods_protect_last_method(api):
    _register(api)

    methods = api.get("/v1/account/login-methods").json()["data"]["items"]
    response = api.delete("/v1/account/login-methods/password")

    assert methods == [{"method": "password", "can_unlink": False}]
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "last_login_method"


def test_unknown_social_provider_is_404(api):
    response = api.get("/v1/auth/social/github/start", follow_redirects=False)

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"


def test_strict_tier_returns_429_with_retry_after(monkeypatch, tmp_path):
    monkeypatch.setenv("RATE_LIMIT_STRICT_LIMIT", "2")
    reset_runtime_for_tests()
    client = TestClient(create_app())
    client.headers["X-CSRF-Token"] = client.get("/v1/auth/csrf").json()["data"]["csrf_token"]
    body = {"email": "ghost@example.com", "password": PASSWORD}

    statuses = [client.post("/v1/auth/login", json=body).status_code for _ in range(3)]

    assert statuses == [401, 401, 429]
    limited = client.post("/v1/auth/login", json=body)
    assert int(limited.headers["Retry-After"]) >= 1
    assert limited.json()["error"]["code"] == "rate_limited"
    assert get_runtime().audit.query(action="security.rate_limited")


def test_security_headers(api):
    response = api.get("/v1/auth/csrf")

    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert "frame-ancestors 'none'" in response.headers["Content-Security-Policy"]


def test_register_over_social_account_waits_for_confirmation(api, outbox):
    from ssoidp.storage.models import SocialIdentity

    runtime = get_runtime()
    user, _ = runtime.linker.resolve_social_identity(
        "google", SocialIdentity(provider_id="g-1", email="alice@example.com")
    )

    response = _register(api)

    assert response.status_code == 202
    assert response.json()["data"]["accepted"] is True
    assert "user_id" not in response.json()["data"]
    assert "sso_session" not in response.headers.get("set-cookie", "")
    assert api.get("/v1/auth/session").status_code == 401
    assert runtime.store.get_user(user.id).login_methods == ["google"]

    link = next(m for m in outbox if m["kind"] == "password_link")
    confirmed = api.post("/v1/auth/password-link/confirm", json={"token": link["token"]})

    assert confirmed.status_code == 200
    assert confirmed.json()["data"]["user_id"] == user.id
    me = api.get("/v1/auth/session").json()["data"]["user"]
    assert me["login_methods"] == ["password", "google"]


def test_non_ascii_tokens_are_rejected(api):
    verify = api.post("/v1/auth/magic-link/verify", json={"token": "abc.é"})
    reset = api.post(
        "/v1/auth/password-reset/confirm", json={"token": "abc.é", "password": "new password 123"}
    )
    link = api.post("/v1/auth/password-link/confirm", json={"token": "é.é"})

    for response in (verify, reset, link):
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"


def test_change_password_over_http(api):
    _register(api)
    other = TestClient(create_app())
    other.headers["X-CSRF-Token"] = other.get("/v1/auth/csrf").json()["data"]["csrf_token"]
    other.post("/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD})

    wrong = api.post(
        "/v1/auth/password/change",
        json={"current_password": "not the password", "new_password": "new password 123"},
    )
    changed = api.post(
        "/v1/auth/password/change",
        json={"current_password": PASSWORD, "new_password": "new password 123"},
    )

    assert wrong.status_code == 401
    assert "not the password" not in wrong.text
    assert changed.status_code == 200
    assert changed.json()["data"] == {"sessions_revoked": 1}
    assert other.get("/v1/auth/session").status_code == 401
    assert api.get("/v1/auth/session").status_code == 200


def test_email_verification_over_http(api, outbox):
    _register(api)
    token = next(m for m in outbox if m["kind"] == "verify_email")["token"]

    verified = api.post("/v1/auth/email/verify", json={"token": token})
    again = api.post("/v1/auth/email/verify/request")

    assert verified.status_code == 200
    assert verified.json()["data"]["email_verified"] is True
    assert again.status_code == 202
    assert again.json()["data"] == {"sent": False}
