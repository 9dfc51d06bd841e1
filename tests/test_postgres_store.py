import json
import os
import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from ssoidp.storage.errors import ConstraintViolation
from ssoidp.storage.models import AuthorizationCode, OAuthToken, SocialIdentity, utcnow
from ssoidp.storage.postgres import PostgresStore, _json, _pair_key

DATABASE_URL = os.getenv("TEST_DATABASE_URL")
needs_db = pytest.mark.skipif(not DATABASE_URL, reason="TEST_DATABASE_URL not set")


def test_json_helper_serializes_datetimes():
    at = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    assert json.loads(_json({"used_at": at})) == {"used_at": "2024-05-01T12:00:00+00:00"}
    with pytest.raises(TypeError):
        _json({"value": object()})


def test_pair_key():
    assert _pair_key("u1", "c1") == "u1:c1"


@pytest.fixture
def pg_store(tmp_path):
    store = PostgresStore(DATABASE_URL, str(tmp_path))
    yield store
    store.close()


def _email():
    return f"{uuid.uuid4().hex[:12]}@example.com"


@needs_db
def test_email_and_provider_uniqueness(pg_store):
    email = _email()
    provider_id = uuid.uuid4().hex
    pg_store.create_user(email, social_providers={"google": SocialIdentity(provider_id=provider_id)})

    with pytest.raises(ConstraintViolation):
        pg_store.create_user(email.upper())
    with pytest.raises(ConstraintViolation):
        pg_store.create_user(_email(), social_providers={"google": SocialIdentity(provider_id=provider_id)})


@needs_db
def test_code_is_consumed_once(pg_store):
    user = pg_store.create_user(_email(), password_hash="h")
    code = AuthorizationCode(
        code=uuid.uuid4().hex,
        client_id="client-1",
        user_id=user.id,
        redirect_uri="https://app.example.com/cb",
        scope=["openid"],
        expires_at=utcnow() + timedelta(minutes=10),
    )
    pg_store.create_authorization_code(code)
    barrier = threading.Barrier(4)
    winners = []

    def redeem():
        barrier.wait()
        if pg_store.consume_authorization_code(code.code, utcnow()) is not None:
            winners.append(True)

    threads = [threading.Thread(target=redeem) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert winners == [True]


@needs_db
def test_refresh_rotation_is_single_shot(pg_store):
    user = pg_store.create_user(_email(), password_hash="h")
    now = utcnow()
    token = pg_store.create_token(
        OAuthToken(
            jti=uuid.uuid4().hex,
            token_type="refresh",
            user_id=user.id,
            client_id="client-1",
            scope=["openid", "offline_access"],
            issued_at=now,
            expires_at=now + timedelta(days=1),
        )
    )

    first = pg_store.rotate_refresh_token(token.jti, now, "next-1")
    second = pg_store.rotate_refresh_token(token.jti, now, "next-2")

    assert first.replaced_by == "next-1"
    assert second is None
    assert pg_store.get_token(token.jti).replaced_by == "next-1"


@needs_db
def test_system_settings_roundtrip(pg_store):
    pg_store.set_system_setting("pin_step_up_enabled", False)

    assert pg_store.get_system_settings()["pin_step_up_enabled"] is False
