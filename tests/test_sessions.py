"""Credential store: opaque tokens, sliding expiry, revocation."""

import pytest

from ssoidp.service.errors import AuthenticationError
from ssoidp.service.sessions import CredentialStore, hash_token


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("alice@example.com", password_hash="x")


@pytest.fixture
def credentials(memory_store, clock):
    return CredentialStore(memory_store, ttl_minutes=30, clock=clock)


def test_only_token_hash_is_persisted(credentials, memory_store, user):
    token, session = credentials.create_session(user.id, ip_addr="10.0.0.1", user_agent="ua")

    stored = memory_store.get_session(session.id)
    assert stored.token_hash == hash_token(token)
    assert token not in stored.to_doc().values()


def test_validation_slides_expiry(credentials, user, clock):
    token, session = credentials.create_session(user.id)
    first_expiry = session.expires_at

    clock.advance(minutes=20)
    validated = credentials.validate_session(token)

    assert validated.ok
    assert validated.value.expires_at > first_expiry
    assert validated.value.last_seen_at == clock.now


def test_expired_session_is_rejected(credentials, user, clock):
    token, _ = credentials.create_session(user.id)
    clock.advance(minutes=31)

    result = credentials.validate_session(token)

    assert not result.ok
    assert result.reason == "expired"
    with pytest.raises(AuthenticationError):
        result.unwrap()


def test_revoked_session_never_validates_again(credentials, user, clock):
    token, _ = credentials.create_session(user.id)
    assert credentials.validate_session(token).ok

    assert credentials.revoke_session(token) is True
    assert credentials.revoke_session(token) is False

    result = credentials.validate_session(token)
    assert not result.ok
    assert result.reason == "revoked"


def test_unknown_and_missing_tokens_share_the_same_error(credentials):
    missing = credentials.validate_session(None)
    unknown = credentials.validate_session("not-a-real-token")

    assert missing.reason == "missing"
    assert unknown.reason == "not_found"
    assert missing.error.message == unknown.error.message


def test_fingerprint_change_keeps_session(credentials, user):
    token, _ = credentials.create_session(user.id, ip_addr="10.0.0.1", user_agent="ua")

    result = credentials.validate_session(token, ip_addr="192.168.1.9", user_agent="other")

    assert result.ok


def test_revoke_all_keeps_the_current_session(credentials, user):
    keep_token, keep = credentials.create_session(user.id)
    other_token, _ = credentials.create_session(user.id)

    assert credentials.revoke_all_for_user(user.id, except_session_id=keep.id) == 1
    assert credentials.validate_session(keep_token).ok
    assert not credentials.validate_session(other_token).ok
    assert [s.id for s in credentials.list_sessions(user.id)] == [keep.id]
