"""Account linking and the at-least-one-login-method invariant."""

import threading

import pytest

from ssoidp.service.errors import (
    ConflictError,
    InvariantViolation,
    NotFoundError,
    ValidationError,
)
from ssoidp.storage.errors import ConstraintViolation
from ssoidp.storage.models import SocialIdentity


def _identity(provider_id="g-1", email="alice@example.com", name="Alice"):
    return SocialIdentity(provider_id=provider_id, email=email, name=name)


class TestResolveSocialIdentity:
    def test_new_identity_creates_verified_account(self, services):
        user, created = services.linker.resolve_social_identity("google", _identity())

        assert created is True
        assert user.login_methods == ["google"]
        assert user.email_verified is True

    def test_known_identity_signs_straight_in(self, services):
        first, _ = services.linker.resolve_social_identity("google", _identity())
        again, created = services.linker.resolve_social_identity(
            "google", _identity(email="changed@example.com")
        )

        assert created is False
        assert again.id == first.id

    def test_matching_email_links_automatically(self, services):
        user, _ = services.linker.register_password("alice@example.com", "hash")

        linked, created = services.linker.resolve_social_identity("facebook", _identity("fb-9"))

        assert created is False
        assert linked.id == user.id
        assert set(linked.login_methods) == {"password", "facebook"}
        entries = services.audit.query(action="account.provider_linked")
        assert entries and entries[0].details["automatic"] is True

    def test_identity_without_email_cannot_create_account(self, services):
        with pytest.raises(ValidationError):
            services.linker.resolve_social_identity("google", _identity(email=None))

    def test_unsupported_provider(self, services):
        with pytest.raises(ValidationError):
            services.linker.resolve_social_identity("github", _identity())


class TestRegisterPassword:
    def test_social_only_account_is_left_untouched(self, services):
        user, _ = services.linker.resolve_social_identity("google", _identity())

        existing, created = services.linker.register_password("alice@example.com", "hash")

        assert created is False
        assert existing.id == user.id
        assert services.store.get_user(user.id).login_methods == ["google"]
        assert not services.audit.query(action="account.provider_linked")

    def test_link_password_attaches_confirmed_password(self, services):
        user, _ = services.linker.resolve_social_identity("google", _identity())

        updated = services.linker.link_password(user.id, "hash", actor_ip="10.0.0.1")

        assert updated.login_methods == ["password", "google"]
        entry = services.audit.query(action="account.provider_linked")[0]
        assert entry.details == {"method": "password", "automatic": False}
        assert entry.after == {"login_methods": ["password", "google"]}
        with pytest.raises(ConflictError):
            services.linker.link_password(user.id, "hash2")

    def test_duplicate_password_registration_conflicts(self, services):
        services.linker.register_password("alice@example.com", "hash")

        with pytest.raises(ConflictError):
            services.linker.register_password("alice@example.com", "hash2")


class TestAdminLink:
    def test_requires_exact_email_match(self, services):
        user, _ = services.linker.register_password("alice@example.com", "hash")

        with pytest.raises(ValidationError) as excinfo:
            services.linker.admin_link(
                "admin", user.id, "google", provider_id="g-1", email="mallory@example.com"
            )
        assert excinfo.value.detail["reason"] == "email_mismatch"

    def test_links_and_audits(self, services):
        user, _ = services.linker.register_password("alice@example.com", "hash")

        updated = services.linker.admin_link(
            "admin-1", user.id, "google", provider_id="g-1", email="ALICE@example.com"
        )

        assert "google" in updated.login_methods
        entry = services.audit.query(action="account.provider_linked")[0]
        assert entry.actor_id == "admin-1"
        assert entry.before == {"login_methods": ["password"]}
        assert "google" in entry.after["login_methods"]

    def test_already_linked_provider_conflicts(self, services):
        user, _ = services.linker.register_password("alice@example.com", "hash")
        services.linker.admin_link("admin", user.id, "google", provider_id="g-1", email=user.email)

        with pytest.raises(ConflictError):
            services.linker.admin_link("admin", user.id, "google", provider_id="g-2", email=user.email)

    def test_identity_in_use_by_other_account_conflicts(self, services):
        services.linker.resolve_social_identity("google", _identity("g-1", "bob@example.com"))
        alice, _ = services.linker.register_password("alice@example.com", "hash")

        with pytest.raises(ConflictError):
            services.linker.admin_link("admin", alice.id, "google", provider_id="g-1", email=alice.email)

    def test_unknown_user(self, services):
        with pytest.raises(NotFoundError):
            services.linker.admin_link("admin", "missing", "google", provider_id="g", email="a@b.co")


class TestUnlink:
    def test_last_method_cannot_be_removed(self, services):
        user, _ = services.linker.register_password("alice@example.com", "hash")

        with pytest.raises(InvariantViolation):
            services.linker.unlink(user.id, user.id, "password")

        assert services.store.get_user(user.id).login_methods == ["password"]
        rejected = services.audit.query(action="account.unlink_rejected")
        assert rejected and rejected[0].outcome == "denied"

    def test_unlink_with_alternative_succeeds(self, services):
        user, _ = services.linker.register_password("alice@example.com", "hash")
        services.linker.resolve_social_identity("google", _identity())

        updated = services.linker.unlink(user.id, user.id, "password")

        assert updated.login_methods == ["google"]
        assert updated.password_hash is None

    def test_method_not_linked(self, services):
        user, _ = services.linker.register_password("alice@example.com", "hash")

        with pytest.raises(ValidationError):
            services.linker.unlink(user.id, user.id, "facebook")

    def test_concurrent_unlinks_leave_one_method(self, services):
        user, _ = services.linker.register_password("alice@example.com", "hash")
        services.linker.resolve_social_identity("google", _identity())
        barrier = threading.Barrier(2)
        outcomes = []

        def unlink(method):
            barrier.wait()
            try:
                services.linker.unlink(user.id, user.id, method)
                outcomes.append("ok")
            except InvariantViolation:
                outcomes.append("rejected")

        threads = [
            threading.Thread(target=unlink, args=("password",)),
            threading.Thread(target=unlink, args=("google",)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ["ok", "rejected"]
        assert len(services.store.get_user(user.id).login_methods) == 1

    def test_store_refuses_last_method_directly(self, services):
        user, _ = services.linker.register_password("alice@example.com", "hash")

        with pytest.raises(ConstraintViolation) as excinfo:
            services.store.remove_login_method(user.id, "password")
        assert excinfo.value.reason == "last_login_method"

    def test_describe_methods(self, services):
        user, _ = services.linker.register_password("alice@example.com", "hash")

        assert services.linker.describe_methods(user) == [{"method": "password", "can_unlink": False}]
