from __future__ import annotations

import json
import os
import tempfile
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ssoidp.logging import get_logger
from ssoidp.storage.errors import ConstraintViolation
from ssoidp.storage.models import (
    PASSWORD_METHOD,
    AppPermission,
    AuditLogEntry,
    AuthorizationCode,
    Consent,
    MagicLinkToken,
    OAuthClient,
    OAuthToken,
    PinChallenge,
    Session,
    SocialIdentity,
    SocialLoginState,
    User,
    _parse_datetime,
    utcnow,
)

_COLLECTIONS = (
    "users",
    "sessions",
    "clients",
    "codes",
    "tokens",
    "consents",
    "magic_links",
    "pin_challenges",
    "login_states",
    "app_permissions",
)


def _pair_key(user_id: str, client_id: str) -> str:
    return f"{user_id}:{client_id}"


class MemoryStore:
    """In-process document store persisted to a JSON file under ``fs_root``.

    Every read-modify-write runs under ``_data_lock`` so the conditional
    updates (``used_at`` null to now, attempt counters, last-method checks)
    are atomic for all threads of this process.
    """

    def __init__(self, fs_root: str = "/tmp/ssoidp") -> None:
        self.logger = get_logger(__name__)
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self._docs: Dict[str, Dict[str, Dict[str, Any]]] = {
            name: {} for name in _COLLECTIONS
        }
        self.audit_log: List[Dict[str, Any]] = []
        self.system_settings: Dict[str, Any] = {}
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    # users
    def create_user(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        name: Optional[str] = None,
        role: str = "user",
        social_providers: Optional[Dict[str, SocialIdentity]] = None,
        email_verified: bool = False,
    ) -> User:
        normalized = email.strip().lower()
        providers = dict(social_providers or {})
        with self._data_lock:
            if self._find_user_doc_by_email(normalized) is not None:
                raise ConstraintViolation(
                    "email already exists", {"field": "email", "reason": "email_exists"}
                )
            for provider, identity in providers.items():
                if self._find_user_doc_by_provider(provider, identity.provider_id) is not None:
                    raise ConstraintViolation(
                        "provider identity already linked",
                        {"provider": provider, "reason": "provider_in_use"},
                    )
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                name=name,
                social_providers=providers,
                role=role,
                email_verified=email_verified,
            )
            self._docs["users"][user.id] = user.to_doc()
            self._persist_state()
            return user

    def _find_user_doc_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return next(
            (doc for doc in self._docs["users"].values() if doc["email"] == email), None
        )

    def _find_user_doc_by_provider(
        self, provider: str, provider_id: str
    ) -> Optional[Dict[str, Any]]:
        for doc in self._docs["users"].values():
            identity = (doc.get("social_providers") or {}).get(provider)
            if identity and identity.get("provider_id") == provider_id:
                return doc
        return None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            doc = self._docs["users"].get(user_id)
            return User.from_doc(doc) if doc else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            doc = self._find_user_doc_by_email(email.strip().lower())
            return User.from_doc(doc) if doc else None

    def get_user_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        with self._data_lock:
            doc = self._find_user_doc_by_provider(provider, provider_id)
            return User.from_doc(doc) if doc else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            users = [User.from_doc(doc) for doc in self._docs["users"].values()]
        return sorted(users, key=lambda u: u.created_at, reverse=True)[:limit]

    def _mutate_user(self, user_id: str, **changes: Any) -> Optional[User]:
        with self._data_lock:
            doc = self._docs["users"].get(user_id)
            if doc is None:
                return None
            doc.update(changes)
            doc["updated_at"] = utcnow().isoformat()
            self._persist_state()
            return User.from_doc(doc)

    def set_password_hash(self, user_id: str, password_hash: str) -> Optional[User]:
        return self._mutate_user(user_id, password_hash=password_hash)

    def update_user_status(self, user_id: str, status: str) -> Optional[User]:
        return self._mutate_user(user_id, status=status)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self._mutate_user(user_id, email_verified=True)

    def record_login(self, user_id: str, at: datetime) -> Optional[User]:
        with self._data_lock:
            doc = self._docs["users"].get(user_id)
            if doc is None:
                return None
            return self._mutate_user(
                user_id,
                login_count=int(doc.get("login_count") or 0) + 1,
                last_login_at=at.isoformat(),
            )

    def add_social_provider(
        self, user_id: str, provider: str, identity: SocialIdentity
    ) -> Optional[User]:
        with self._data_lock:
            doc = self._docs["users"].get(user_id)
            if doc is None:
                return None
            providers = doc.setdefault("social_providers", {})
            if provider in providers:
                raise ConstraintViolation(
                    "provider already linked",
                    {"provider": provider, "reason": "provider_linked"},
                )
            owner = self._find_user_doc_by_provider(provider, identity.provider_id)
            if owner is not None:
                raise ConstraintViolation(
                    "provider identity already linked",
                    {"provider": provider, "reason": "provider_in_use"},
                )
            providers[provider] = identity.to_doc()
            return self._mutate_user(user_id)

    def remove_login_method(self, user_id: str, method: str) -> Optional[User]:
        """Remove ``method`` unless it is the user's last way to sign in.

        The count is re-checked under the lock immediately before the write so
        two concurrent unlinks cannot both pass.
        """
        with self._data_lock:
            doc = self._docs["users"].get(user_id)
            if doc is None:
                return None
            user = User.from_doc(doc)
            if method not in user.login_methods:
                raise ConstraintViolation(
                    "login method not linked", {"method": method, "reason": "not_linked"}
                )
            if len(user.login_methods) <= 1:
                raise ConstraintViolation(
                    "cannot remove the last login method",
                    {"method": method, "reason": "last_login_method"},
                )
            if method == PASSWORD_METHOD:
                return self._mutate_user(user_id, password_hash=None)
            doc["social_providers"].pop(method, None)
            return self._mutate_user(user_id)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self._docs["users"]:
                raise ConstraintViolation(
                    "session user missing", {"user_id": session.user_id, "reason": "user_not_found"}
                )
            self._docs["sessions"][session.id] = session.to_doc()
            self._persist_state()
            return session

    def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            doc = next(
                (
                    doc
                    for doc in self._docs["sessions"].values()
                    if doc["token_hash"] == token_hash
                ),
                None,
            )
            return Session.from_doc(doc) if doc else None

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            doc = self._docs["sessions"].get(session_id)
            return Session.from_doc(doc) if doc else None

    def touch_session(
        self, session_id: str, *, expires_at: datetime, seen_at: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            doc = self._docs["sessions"].get(session_id)
            if doc is None or doc.get("revoked_at") is not None:
                return None
            doc["expires_at"] = expires_at.isoformat()
            doc["last_seen_at"] = seen_at.isoformat()
            self._persist_state()
            return Session.from_doc(doc)

    def revoke_session(self, session_id: str, at: datetime) -> bool:
        with self._data_lock:
            doc = self._docs["sessions"].get(session_id)
            if doc is None or doc.get("revoked_at") is not None:
                return False
            doc["revoked_at"] = at.isoformat()
            self._persist_state()
            return True

    def revoke_user_sessions(
        self, user_id: str, at: datetime, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            revoked = 0
            for doc in self._docs["sessions"].values():
                if doc["user_id"] != user_id or doc.get("revoked_at") is not None:
                    continue
                if except_session_id and doc["id"] == except_session_id:
                    continue
                doc["revoked_at"] = at.isoformat()
                revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            sessions = [
                Session.from_doc(doc)
                for doc in self._docs["sessions"].values()
                if doc["user_id"] == user_id
            ]
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    # oauth clients
    def create_client(self, client: OAuthClient) -> OAuthClient:
        with self._data_lock:
            if client.client_id in self._docs["clients"]:
                raise ConstraintViolation(
                    "client already exists", {"client_id": client.client_id, "reason": "client_exists"}
                )
            self._docs["clients"][client.client_id] = client.to_doc()
            self._persist_state()
            return client

    def get_client(self, client_id: str) -> Optional[OAuthClient]:
        with self._data_lock:
            doc = self._docs["clients"].get(client_id)
            return OAuthClient.from_doc(doc) if doc else None

    def list_clients(self) -> List[OAuthClient]:
        with self._data_lock:
            return [OAuthClient.from_doc(doc) for doc in self._docs["clients"].values()]

    def update_client(self, client_id: str, **changes: Any) -> Optional[OAuthClient]:
        with self._data_lock:
            doc = self._docs["clients"].get(client_id)
            if doc is None:
                return None
            doc.update(changes)
            doc["updated_at"] = utcnow().isoformat()
            self._persist_state()
            return OAuthClient.from_doc(doc)

    # authorization codes
    def create_authorization_code(self, code: AuthorizationCode) -> AuthorizationCode:
        with self._data_lock:
            self._docs["codes"][code.code] = code.to_doc()
            self._persist_state()
            return code

    def get_authorization_code(self, code: str) -> Optional[AuthorizationCode]:
        with self._data_lock:
            doc = self._docs["codes"].get(code)
            return AuthorizationCode.from_doc(doc) if doc else None

    def consume_authorization_code(
        self, code: str, at: datetime
    ) -> Optional[AuthorizationCode]:
        """Atomically transition ``used_at`` from null to ``at``.

        Returns the consumed code, or None when it is unknown or already used.
        """
        return self._consume("codes", code, at, AuthorizationCode)

    def _consume(self, collection: str, key: str, at: datetime, model):
        with self._data_lock:
            doc = self._docs[collection].get(key)
            if doc is None or doc.get("used_at") is not None:
                return None
            doc["used_at"] = at.isoformat()
            self._persist_state()
            return model.from_doc(doc)

    # tokens
    def create_token(self, token: OAuthToken) -> OAuthToken:
        with self._data_lock:
            self._docs["tokens"][token.jti] = token.to_doc()
            self._persist_state()
            return token

    def get_token(self, jti: str) -> Optional[OAuthToken]:
        with self._data_lock:
            doc = self._docs["tokens"].get(jti)
            return OAuthToken.from_doc(doc) if doc else None

    def get_token_by_hash(self, token_hash: str) -> Optional[OAuthToken]:
        with self._data_lock:
            doc = next(
                (
                    doc
                    for doc in self._docs["tokens"].values()
                    if doc.get("token_hash") == token_hash
                ),
                None,
            )
            return OAuthToken.from_doc(doc) if doc else None

    def revoke_token(self, jti: str, at: datetime) -> bool:
        with self._data_lock:
            doc = self._docs["tokens"].get(jti)
            if doc is None or doc.get("revoked_at") is not None:
                return False
            doc["revoked_at"] = at.isoformat()
            self._persist_state()
            return True

    def rotate_refresh_token(
        self, jti: str, at: datetime, replaced_by: str
    ) -> Optional[OAuthToken]:
        """Retire a live refresh token; None when it was already retired."""
        with self._data_lock:
            doc = self._docs["tokens"].get(jti)
            if doc is None or doc.get("revoked_at") is not None:
                return None
            doc["revoked_at"] = at.isoformat()
            doc["replaced_by"] = replaced_by
            self._persist_state()
            return OAuthToken.from_doc(doc)

    def revoke_tokens(
        self, user_id: str, at: datetime, *, client_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            revoked = 0
            for doc in self._docs["tokens"].values():
                if doc["user_id"] != user_id or doc.get("revoked_at") is not None:
                    continue
                if client_id and doc["client_id"] != client_id:
                    continue
                doc["revoked_at"] = at.isoformat()
                revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    # consents
    def save_consent(
        self, user_id: str, client_id: str, scope: Iterable[str], at: datetime
    ) -> Consent:
        key = _pair_key(user_id, client_id)
        with self._data_lock:
            existing = self._docs["consents"].get(key)
            granted = list(scope)
            if existing and existing.get("revoked_at") is None:
                granted = sorted(set(existing.get("scope") or []) | set(granted))
            consent = Consent(
                id=key,
                user_id=user_id,
                client_id=client_id,
                scope=sorted(set(granted)),
                granted_at=at,
            )
            self._docs["consents"][key] = consent.to_doc()
            self._persist_state()
            return consent

    def get_consent(self, user_id: str, client_id: str) -> Optional[Consent]:
        with self._data_lock:
            doc = self._docs["consents"].get(_pair_key(user_id, client_id))
            if doc is None or doc.get("revoked_at") is not None:
                return None
            return Consent.from_doc(doc)

    def list_consents(self, user_id: str) -> List[Consent]:
        with self._data_lock:
            return [
                Consent.from_doc(doc)
                for doc in self._docs["consents"].values()
                if doc["user_id"] == user_id and doc.get("revoked_at") is None
            ]

    def revoke_consent(self, user_id: str, client_id: str, at: datetime) -> bool:
        with self._data_lock:
            doc = self._docs["consents"].get(_pair_key(user_id, client_id))
            if doc is None or doc.get("revoked_at") is not None:
                return False
            doc["revoked_at"] = at.isoformat()
            self._persist_state()
            return True

    # magic links
    def create_magic_link(self, token: MagicLinkToken) -> MagicLinkToken:
        with self._data_lock:
            self._docs["magic_links"][token.jti] = token.to_doc()
            self._persist_state()
            return token

    def consume_magic_link(self, jti: str, at: datetime) -> Optional[MagicLinkToken]:
        return self._consume("magic_links", jti, at, MagicLinkToken)

    # pin challenges
    def create_pin_challenge(self, challenge: PinChallenge) -> PinChallenge:
        with self._data_lock:
            self._docs["pin_challenges"][challenge.id] = challenge.to_doc()
            self._persist_state()
            return challenge

    def get_pin_challenge(self, challenge_id: str) -> Optional[PinChallenge]:
        with self._data_lock:
            doc = self._docs["pin_challenges"].get(challenge_id)
            return PinChallenge.from_doc(doc) if doc else None

    def invalidate_pin_challenges(self, user_id: str, at: datetime) -> int:
        with self._data_lock:
            closed = 0
            for doc in self._docs["pin_challenges"].values():
                if doc["user_id"] == user_id and doc.get("used_at") is None:
                    doc["used_at"] = at.isoformat()
                    closed += 1
            if closed:
                self._persist_state()
            return closed

    def record_pin_failure(self, challenge_id: str) -> Optional[PinChallenge]:
        with self._data_lock:
            doc = self._docs["pin_challenges"].get(challenge_id)
            if doc is None or doc.get("used_at") is not None:
                return None
            doc["attempts"] = int(doc.get("attempts") or 0) + 1
            self._persist_state()
            return PinChallenge.from_doc(doc)

    def consume_pin_challenge(
        self, challenge_id: str, at: datetime
    ) -> Optional[PinChallenge]:
        with self._data_lock:
            doc = self._docs["pin_challenges"].get(challenge_id)
            if doc is None or doc.get("used_at") is not None:
                return None
            if int(doc.get("attempts") or 0) >= int(doc.get("max_attempts") or 0):
                return None
            doc["used_at"] = at.isoformat()
            self._persist_state()
            return PinChallenge.from_doc(doc)

    # social login state
    def create_login_state(self, state: SocialLoginState) -> SocialLoginState:
        with self._data_lock:
            self._docs["login_states"][state.state] = state.to_doc()
            self._persist_state()
            return state

    def consume_login_state(self, state: str, at: datetime) -> Optional[SocialLoginState]:
        return self._consume("login_states", state, at, SocialLoginState)

    # app permissions
    def save_app_permission(self, permission: AppPermission) -> AppPermission:
        with self._data_lock:
            key = _pair_key(permission.user_id, permission.client_id)
            self._docs["app_permissions"][key] = permission.to_doc()
            self._persist_state()
            return permission

    def get_app_permission(self, user_id: str, client_id: str) -> Optional[AppPermission]:
        with self._data_lock:
            doc = self._docs["app_permissions"].get(_pair_key(user_id, client_id))
            return AppPermission.from_doc(doc) if doc else None

    def list_app_permissions(
        self,
        *,
        user_id: Optional[str] = None,
        client_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[AppPermission]:
        with self._data_lock:
            return [
                AppPermission.from_doc(doc)
                for doc in self._docs["app_permissions"].values()
                if (not user_id or doc["user_id"] == user_id)
                and (not client_id or doc["client_id"] == client_id)
                and (not status or doc["status"] == status)
            ]

    # audit log
    def append_audit_entry(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._data_lock:
            self.audit_log.append(entry.to_doc())
            self._persist_state()
            return entry

    def list_audit_entries(
        self,
        *,
        actor_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            matches = [
                doc
                for doc in reversed(self.audit_log)
                if (not actor_id or doc.get("actor_id") == actor_id)
                and (not resource_id or doc.get("resource_id") == resource_id)
                and (not action or doc.get("action") == action)
            ]
            return [AuditLogEntry.from_doc(doc) for doc in matches[:limit]]

    # system settings
    def get_system_settings(self) -> Dict[str, Any]:
        with self._data_lock:
            return dict(self.system_settings)

    def set_system_setting(self, key: str, value: Any) -> Dict[str, Any]:
        with self._data_lock:
            self.system_settings[key] = value
            self._persist_state()
            return dict(self.system_settings)

    # maintenance
    def sweep_expired(self, now: datetime) -> Dict[str, int]:
        """Delete artifacts whose ``expires_at`` has passed."""
        removed: Dict[str, int] = {}
        with self._data_lock:
            for collection in (
                "sessions",
                "codes",
                "tokens",
                "magic_links",
                "pin_challenges",
                "login_states",
            ):
                docs = self._docs[collection]
                stale = [
                    key
                    for key, doc in docs.items()
                    if _parse_datetime(doc.get("expires_at")) is not None
                    and _parse_datetime(doc["expires_at"]) <= now
                ]
                for key in stale:
                    docs.pop(key, None)
                removed[collection] = len(stale)
            if any(removed.values()):
                self._persist_state()
        return removed

    def _persist_state(self) -> None:
        state = {
            **{name: list(self._docs[name].values()) for name in _COLLECTIONS},
            "audit_log": self.audit_log,
            "system_settings": self.system_settings,
        }
        path = self._state_path()
        # Write to a temp file then rename so readers never see a torn file
        try:
            fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist identity store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        key_fields = {
            "users": "id",
            "sessions": "id",
            "clients": "client_id",
            "codes": "code",
            "tokens": "jti",
            "consents": "id",
            "magic_links": "jti",
            "pin_challenges": "id",
            "login_states": "state",
        }
        for name, key_field in key_fields.items():
            self._docs[name] = {doc[key_field]: doc for doc in data.get(name, [])}
        self._docs["app_permissions"] = {
            _pair_key(doc["user_id"], doc["client_id"]): doc
            for doc in data.get("app_permissions", [])
        }
        self.audit_log = list(data.get("audit_log", []))
        self.system_settings = dict(data.get("system_settings", {}))
        self.logger.info(
            "identity_store_loaded",
            path=str(path),
            users=len(self._docs["users"]),
            sessions=len(self._docs["sessions"]),
        )
        return True
