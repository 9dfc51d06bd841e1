from ssoidp.logging import get_correlation_id, sanitize_snapshot, set_correlation_id
from ssoidp.service.audit import AuditAction


def test_snapshots_never_carry_secrets(audit):
    entry = audit.record(
        AuditAction.CLIENT_REGISTERED,
        actor_id="admin",
        resource_type="oauth_client",
        resource_id="c1",
        after={
            "name": "Reports",
            "client_secret_hash": "$argon2id$...",
            "nested": {"refresh_token": "r", "pin": "123456", "scope": ["openid"]},
        },
    )

    assert entry.after["name"] == "Reports"
    assert entry.after["client_secret_hash"] == "[REDACTED]"
    assert entry.after["nested"] == {"refresh_token": "[REDACTED]", "pin": "[REDACTED]", "scope": ["openid"]}


def test_query_filters_newest_first(audit):
    audit.record(AuditAction.LOGIN_SUCCEEDED, actor_id="u1", resource_id="u1")
    audit.record(AuditAction.LOGOUT, actor_id="u1", resource_id="s1")
    audit.record(AuditAction.LOGIN_SUCCEEDED, actor_id="u2", resource_id="u2")

    assert [e.action for e in audit.query(actor_id="u1")] == ["auth.logout", "auth.login_succeeded"]
    assert [e.actor_id for e in audit.query(action="auth.login_succeeded")] == ["u2", "u1"]
    assert len(audit.query(limit=1)) == 1


def test_entries_survive_store_reload(memory_store, audit):
    from ssoidp.storage.memory import MemoryStore

    audit.record(AuditAction.SETTING_CHANGED, actor_id="admin", details={"key": "pin_step_up_enabled"})

    reloaded = MemoryStore(fs_root=str(memory_store.fs_root))

    entries = reloaded.list_audit_entries(action="settings.changed")
    assert entries[0].details == {"key": "pin_step_up_enabled"}


def test_sanitize_handles_lists_and_none():
    data = {"password": None, "items": [{"api_key": "k"}, "plain"]}

    assert sanitize_snapshot(data) == {"password": None, "items": [{"api_key": "[REDACTED]"}, "plain"]}


def test_correlation_id_roundtrip():
    assigned = set_correlation_id("req-123")

    assert assigned == "req-123"
    assert get_correlation_id() == "req-123"
    assert set_correlation_id(None)


def test_log_processor_masks_credentials_and_email():
    from ssoidp.logging import _redact_pii

    event = _redact_pii(
        None,
        "info",
        {"event": "x", "email": "alice@example.com", "pin": "123456", "token_type": "access", "user_id": "u1"},
    )

    assert event["email"] == "al***om"
    assert event["pin"] == "[REDACTED]"
    assert event["token_type"] == "access"
    assert event["user_id"] == "u1"
