from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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
    utcnow,
)

# Every entity lives in a ``(id, doc JSONB)`` table; the typed dataclasses own the
# document shape, so the schema only carries keys, uniqueness and lookup indexes.
_DOC_TABLES = (
    "sso_user",
    "sso_session",
    "sso_oauth_client",
    "sso_authorization_code",
    "sso_oauth_token",
    "sso_consent",
    "sso_magic_link",
    "sso_pin_challenge",
    "sso_login_state",
    "sso_app_permission",
)

_EXPIRING_TABLES = {
    "sessions": "sso_session",
    "codes": "sso_authorization_code",
    "tokens": "sso_oauth_token",
    "magic_links": "sso_magic_link",
    "pin_challenges": "sso_pin_challenge",
    "login_states": "sso_login_state",
}

_SCHEMA_STATEMENTS = [
    *(
        f"CREATE TABLE IF NOT EXISTS {table} (id TEXT PRIMARY KEY, doc JSONB NOT NULL)"
        for table in _DOC_TABLES
    ),
    "CREATE UNIQUE INDEX IF NOT EXISTS sso_user_email_idx ON sso_user (lower(doc->>'email'))",
    """
    CREATE TABLE IF NOT EXISTS sso_user_provider (
        provider TEXT NOT NULL,
        provider_id TEXT NOT NULL,
        user_id TEXT NOT NULL REFERENCES sso_user(id) ON DELETE CASCADE,
        PRIMARY KEY (provider, provider_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS sso_session_token_idx ON sso_session ((doc->>'token_hash'))",
    "CREATE INDEX IF NOT EXISTS sso_session_user_idx ON sso_session ((doc->>'user_id'))",
    "CREATE INDEX IF NOT EXISTS sso_token_hash_idx ON sso_oauth_token ((doc->>'token_hash'))",
    "CREATE INDEX IF NOT EXISTS sso_token_user_idx ON sso_oauth_token ((doc->>'user_id'))",
    """
    CREATE TABLE IF NOT EXISTS sso_audit_log (
        seq BIGSERIAL PRIMARY KEY,
        id TEXT UNIQUE NOT NULL,
        doc JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sso_system_setting (
        name TEXT PRIMARY KEY,
        value JSONB,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
]


def _json(value: Any) -> str:
    def _default(obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        raise TypeError(f"unserializable value: {type(obj).__name__}")

    return json.dumps(value, default=_default)


def _pair_key(user_id: str, client_id: str) -> str:
    return f"{user_id}:{client_id}"


class PostgresStore:
    """Postgres-backed identity store.

    Single-use artifacts are consumed with conditional ``UPDATE ... RETURNING``
    statements so exactly one concurrent caller observes the transition.
    """

    def __init__(self, dsn: str, fs_root: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
            },
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row["ok"] == 1)

    def close(self) -> None:
        self.pool.close()

    # generic document helpers
    def _insert(self, table: str, key: str, doc: Dict[str, Any]) -> None:
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO {table} (id, doc) VALUES (%s, %s::jsonb)", (key, _json(doc))
            )

    def _upsert(self, table: str, key: str, doc: Dict[str, Any]) -> None:
        with self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO {table} (id, doc) VALUES (%s, %s::jsonb)
                ON CONFLICT (id) DO UPDATE SET doc = EXCLUDED.doc
                """,
                (key, _json(doc)),
            )

    def _get_doc(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT doc FROM {table} WHERE id = %s", (key,)).fetchone()
        return row["doc"] if row else None

    def _patch(
        self, table: str, key: str, changes: Dict[str, Any], *, condition: str = ""
    ) -> Optional[Dict[str, Any]]:
        """Merge ``changes`` into a document; ``condition`` guards the update."""
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE {table} SET doc = doc || %s::jsonb WHERE id = %s {condition} RETURNING doc",
                (_json(changes), key),
            ).fetchone()
        return row["doc"] if row else None

    def _select_docs(
        self, table: str, where: str = "TRUE", params: Iterable[Any] = ()
    ) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(f"SELECT doc FROM {table} WHERE {where}", tuple(params)).fetchall()
        return [row["doc"] for row in rows]

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
        user = User(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            password_hash=password_hash,
            name=name,
            social_providers=dict(social_providers or {}),
            role=role,
            email_verified=email_verified,
        )
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        "INSERT INTO sso_user (id, doc) VALUES (%s, %s::jsonb)",
                        (user.id, _json(user.to_doc())),
                    )
                    for provider, identity in user.social_providers.items():
                        conn.execute(
                            "INSERT INTO sso_user_provider (provider, provider_id, user_id) VALUES (%s, %s, %s)",
                            (provider, identity.provider_id, user.id),
                        )
        except errors.UniqueViolation as exc:
            if getattr(exc.diag, "constraint_name", None) == "sso_user_email_idx":
                raise ConstraintViolation(
                    "email already exists", {"field": "email", "reason": "email_exists"}
                )
            raise ConstraintViolation(
                "provider identity already linked", {"reason": "provider_in_use"}
            )
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        doc = self._get_doc("sso_user", user_id)
        return User.from_doc(doc) if doc else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        docs = self._select_docs(
            "sso_user", "lower(doc->>'email') = %s", (email.strip().lower(),)
        )
        return User.from_doc(docs[0]) if docs else None

    def get_user_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT u.doc FROM sso_user_provider p JOIN sso_user u ON u.id = p.user_id
                WHERE p.provider = %s AND p.provider_id = %s
                """,
                (provider, provider_id),
            ).fetchone()
        return User.from_doc(row["doc"]) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        docs = self._select_docs(
            "sso_user", "TRUE ORDER BY doc->>'created_at' DESC LIMIT %s", (limit,)
        )
        return [User.from_doc(doc) for doc in docs]

    def _mutate_user(self, user_id: str, **changes: Any) -> Optional[User]:
        doc = self._patch("sso_user", user_id, {**changes, "updated_at": utcnow()})
        return User.from_doc(doc) if doc else None

    def set_password_hash(self, user_id: str, password_hash: str) -> Optional[User]:
        return self._mutate_user(user_id, password_hash=password_hash)

    def update_user_status(self, user_id: str, status: str) -> Optional[User]:
        return self._mutate_user(user_id, status=status)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self._mutate_user(user_id, email_verified=True)

    def record_login(self, user_id: str, at: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE sso_user SET doc = doc || jsonb_build_object(
                    'login_count', COALESCE((doc->>'login_count')::int, 0) + 1,
                    'last_login_at', %s::text,
                    'updated_at', %s::text
                )
                WHERE id = %s RETURNING doc
                """,
                (at.isoformat(), at.isoformat(), user_id),
            ).fetchone()
        return User.from_doc(row["doc"]) if row else None

    def add_social_provider(
        self, user_id: str, provider: str, identity: SocialIdentity
    ) -> Optional[User]:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        "SELECT doc FROM sso_user WHERE id = %s FOR UPDATE", (user_id,)
                    ).fetchone()
                    if not row:
                        return None
                    user = User.from_doc(row["doc"])
                    if provider in user.social_providers:
                        raise ConstraintViolation(
                            "provider already linked",
                            {"provider": provider, "reason": "provider_linked"},
                        )
                    conn.execute(
                        "INSERT INTO sso_user_provider (provider, provider_id, user_id) VALUES (%s, %s, %s)",
                        (provider, identity.provider_id, user_id),
                    )
                    user.social_providers[provider] = identity
                    user.updated_at = utcnow()
                    conn.execute(
                        "UPDATE sso_user SET doc = %s::jsonb WHERE id = %s",
                        (_json(user.to_doc()), user_id),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "provider identity already linked",
                {"provider": provider, "reason": "provider_in_use"},
            )
        return user

    def remove_login_method(self, user_id: str, method: str) -> Optional[User]:
        """Remove ``method`` while holding the user row lock.

        The method count is evaluated inside the same transaction as the write,
        so concurrent unlinks serialize and the last method always survives.
        """
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT doc FROM sso_user WHERE id = %s FOR UPDATE", (user_id,)
                ).fetchone()
                if not row:
                    return None
                user = User.from_doc(row["doc"])
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
                    user.password_hash = None
                else:
                    user.social_providers.pop(method, None)
                    conn.execute(
                        "DELETE FROM sso_user_provider WHERE user_id = %s AND provider = %s",
                        (user_id, method),
                    )
                user.updated_at = utcnow()
                conn.execute(
                    "UPDATE sso_user SET doc = %s::jsonb WHERE id = %s",
                    (_json(user.to_doc()), user_id),
                )
        return user

    # sessions
    def create_session(self, session: Session) -> Session:
        if self._get_doc("sso_user", session.user_id) is None:
            raise ConstraintViolation(
                "session user missing", {"user_id": session.user_id, "reason": "user_not_found"}
            )
        self._insert("sso_session", session.id, session.to_doc())
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        doc = self._get_doc("sso_session", session_id)
        return Session.from_doc(doc) if doc else None

    def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]:
        docs = self._select_docs("sso_session", "doc->>'token_hash' = %s", (token_hash,))
        return Session.from_doc(docs[0]) if docs else None

    def touch_session(
        self, session_id: str, *, expires_at: datetime, seen_at: datetime
    ) -> Optional[Session]:
        doc = self._patch(
            "sso_session",
            session_id,
            {"expires_at": expires_at, "last_seen_at": seen_at},
            condition="AND doc->>'revoked_at' IS NULL",
        )
        return Session.from_doc(doc) if doc else None

    def revoke_session(self, session_id: str, at: datetime) -> bool:
        doc = self._patch(
            "sso_session",
            session_id,
            {"revoked_at": at},
            condition="AND doc->>'revoked_at' IS NULL",
        )
        return doc is not None

    def revoke_user_sessions(
        self, user_id: str, at: datetime, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE sso_session SET doc = doc || %s::jsonb
                WHERE doc->>'user_id' = %s AND doc->>'revoked_at' IS NULL AND id <> %s
                """,
                (_json({"revoked_at": at}), user_id, except_session_id or ""),
            )
            return result.rowcount

    def list_user_sessions(self, user_id: str) -> List[Session]:
        docs = self._select_docs(
            "sso_session",
            "doc->>'user_id' = %s ORDER BY doc->>'created_at' DESC",
            (user_id,),
        )
        return [Session.from_doc(doc) for doc in docs]

    # oauth clients
    def create_client(self, client: OAuthClient) -> OAuthClient:
        try:
            self._insert("sso_oauth_client", client.client_id, client.to_doc())
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "client already exists", {"client_id": client.client_id, "reason": "client_exists"}
            )
        return client

    def get_client(self, client_id: str) -> Optional[OAuthClient]:
        doc = self._get_doc("sso_oauth_client", client_id)
        return OAuthClient.from_doc(doc) if doc else None

    def list_clients(self) -> List[OAuthClient]:
        return [OAuthClient.from_doc(doc) for doc in self._select_docs("sso_oauth_client")]

    def update_client(self, client_id: str, **changes: Any) -> Optional[OAuthClient]:
        doc = self._patch("sso_oauth_client", client_id, {**changes, "updated_at": utcnow()})
        return OAuthClient.from_doc(doc) if doc else None

    # authorization codes
    def create_authorization_code(self, code: AuthorizationCode) -> AuthorizationCode:
        self._insert("sso_authorization_code", code.code, code.to_doc())
        return code

    def get_authorization_code(self, code: str) -> Optional[AuthorizationCode]:
        doc = self._get_doc("sso_authorization_code", code)
        return AuthorizationCode.from_doc(doc) if doc else None

    def consume_authorization_code(
        self, code: str, at: datetime
    ) -> Optional[AuthorizationCode]:
        doc = self._patch(
            "sso_authorization_code",
            code,
            {"used_at": at},
            condition="AND doc->>'used_at' IS NULL",
        )
        return AuthorizationCode.from_doc(doc) if doc else None

    # tokens
    def create_token(self, token: OAuthToken) -> OAuthToken:
        self._insert("sso_oauth_token", token.jti, token.to_doc())
        return token

    def get_token(self, jti: str) -> Optional[OAuthToken]:
        doc = self._get_doc("sso_oauth_token", jti)
        return OAuthToken.from_doc(doc) if doc else None

    def get_token_by_hash(self, token_hash: str) -> Optional[OAuthToken]:
        docs = self._select_docs("sso_oauth_token", "doc->>'token_hash' = %s", (token_hash,))
        return OAuthToken.from_doc(docs[0]) if docs else None

    def revoke_token(self, jti: str, at: datetime) -> bool:
        doc = self._patch(
            "sso_oauth_token", jti, {"revoked_at": at}, condition="AND doc->>'revoked_at' IS NULL"
        )
        return doc is not None

    def rotate_refresh_token(
        self, jti: str, at: datetime, replaced_by: str
    ) -> Optional[OAuthToken]:
        doc = self._patch(
            "sso_oauth_token",
            jti,
            {"revoked_at": at, "replaced_by": replaced_by},
            condition="AND doc->>'revoked_at' IS NULL",
        )
        return OAuthToken.from_doc(doc) if doc else None

    def revoke_tokens(
        self, user_id: str, at: datetime, *, client_id: Optional[str] = None
    ) -> int:
        where = "doc->>'user_id' = %s AND doc->>'revoked_at' IS NULL"
        params: List[Any] = [_json({"revoked_at": at}), user_id]
        if client_id:
            where += " AND doc->>'client_id' = %s"
            params.append(client_id)
        with self._connect() as conn:
            result = conn.execute(
                f"UPDATE sso_oauth_token SET doc = doc || %s::jsonb WHERE {where}", params
            )
            return result.rowcount

    # consents
    def save_consent(
        self, user_id: str, client_id: str, scope: Iterable[str], at: datetime
    ) -> Consent:
        key = _pair_key(user_id, client_id)
        granted = set(scope)
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT doc FROM sso_consent WHERE id = %s FOR UPDATE", (key,)
                ).fetchone()
                if row and row["doc"].get("revoked_at") is None:
                    granted |= set(row["doc"].get("scope") or [])
                consent = Consent(
                    id=key, user_id=user_id, client_id=client_id, scope=sorted(granted), granted_at=at
                )
                conn.execute(
                    """
                    INSERT INTO sso_consent (id, doc) VALUES (%s, %s::jsonb)
                    ON CONFLICT (id) DO UPDATE SET doc = EXCLUDED.doc
                    """,
                    (key, _json(consent.to_doc())),
                )
        return consent

    def get_consent(self, user_id: str, client_id: str) -> Optional[Consent]:
        doc = self._get_doc("sso_consent", _pair_key(user_id, client_id))
        if doc is None or doc.get("revoked_at") is not None:
            return None
        return Consent.from_doc(doc)

    def list_consents(self, user_id: str) -> List[Consent]:
        docs = self._select_docs(
            "sso_consent", "doc->>'user_id' = %s AND doc->>'revoked_at' IS NULL", (user_id,)
        )
        return [Consent.from_doc(doc) for doc in docs]

    def revoke_consent(self, user_id: str, client_id: str, at: datetime) -> bool:
        doc = self._patch(
            "sso_consent",
            _pair_key(user_id, client_id),
            {"revoked_at": at},
            condition="AND doc->>'revoked_at' IS NULL",
        )
        return doc is not None

    # magic links
    def create_magic_link(self, token: MagicLinkToken) -> MagicLinkToken:
        self._insert("sso_magic_link", token.jti, token.to_doc())
        return token

    def consume_magic_link(self, jti: str, at: datetime) -> Optional[MagicLinkToken]:
        doc = self._patch(
            "sso_magic_link", jti, {"used_at": at}, condition="AND doc->>'used_at' IS NULL"
        )
        return MagicLinkToken.from_doc(doc) if doc else None

    # pin challenges
    def create_pin_challenge(self, challenge: PinChallenge) -> PinChallenge:
        self._insert("sso_pin_challenge", challenge.id, challenge.to_doc())
        return challenge

    def get_pin_challenge(self, challenge_id: str) -> Optional[PinChallenge]:
        doc = self._get_doc("sso_pin_challenge", challenge_id)
        return PinChallenge.from_doc(doc) if doc else None

    def invalidate_pin_challenges(self, user_id: str, at: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE sso_pin_challenge SET doc = doc || %s::jsonb
                WHERE doc->>'user_id' = %s AND doc->>'used_at' IS NULL
                """,
                (_json({"used_at": at}), user_id),
            )
            return result.rowcount

    def record_pin_failure(self, challenge_id: str) -> Optional[PinChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE sso_pin_challenge
                SET doc = jsonb_set(doc, '{attempts}', to_jsonb(COALESCE((doc->>'attempts')::int, 0) + 1))
                WHERE id = %s AND doc->>'used_at' IS NULL
                RETURNING doc
                """,
                (challenge_id,),
            ).fetchone()
        return PinChallenge.from_doc(row["doc"]) if row else None

    def consume_pin_challenge(
        self, challenge_id: str, at: datetime
    ) -> Optional[PinChallenge]:
        doc = self._patch(
            "sso_pin_challenge",
            challenge_id,
            {"used_at": at},
            condition=(
                "AND doc->>'used_at' IS NULL"
                " AND COALESCE((doc->>'attempts')::int, 0) < (doc->>'max_attempts')::int"
            ),
        )
        return PinChallenge.from_doc(doc) if doc else None

    # social login state
    def create_login_state(self, state: SocialLoginState) -> SocialLoginState:
        self._insert("sso_login_state", state.state, state.to_doc())
        return state

    def consume_login_state(self, state: str, at: datetime) -> Optional[SocialLoginState]:
        doc = self._patch(
            "sso_login_state", state, {"used_at": at}, condition="AND doc->>'used_at' IS NULL"
        )
        return SocialLoginState.from_doc(doc) if doc else None

    # app permissions
    def save_app_permission(self, permission: AppPermission) -> AppPermission:
        self._upsert(
            "sso_app_permission",
            _pair_key(permission.user_id, permission.client_id),
            permission.to_doc(),
        )
        return permission

    def get_app_permission(self, user_id: str, client_id: str) -> Optional[AppPermission]:
        doc = self._get_doc("sso_app_permission", _pair_key(user_id, client_id))
        return AppPermission.from_doc(doc) if doc else None

    def list_app_permissions(
        self,
        *,
        user_id: Optional[str] = None,
        client_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[AppPermission]:
        clauses = ["TRUE"]
        params: List[Any] = []
        for key, value in (("user_id", user_id), ("client_id", client_id), ("status", status)):
            if value:
                clauses.append(f"doc->>'{key}' = %s")
                params.append(value)
        docs = self._select_docs("sso_app_permission", " AND ".join(clauses), params)
        return [AppPermission.from_doc(doc) for doc in docs]

    # audit log
    def append_audit_entry(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO sso_audit_log (id, doc) VALUES (%s, %s::jsonb)",
                (entry.id, _json(entry.to_doc())),
            )
        return entry

    def list_audit_entries(
        self,
        *,
        actor_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        clauses = ["TRUE"]
        params: List[Any] = []
        for key, value in (("actor_id", actor_id), ("resource_id", resource_id), ("action", action)):
            if value:
                clauses.append(f"doc->>'{key}' = %s")
                params.append(value)
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT doc FROM sso_audit_log WHERE {' AND '.join(clauses)} ORDER BY seq DESC LIMIT %s",
                params,
            ).fetchall()
        return [AuditLogEntry.from_doc(row["doc"]) for row in rows]

    # system settings
    def get_system_settings(self) -> Dict[str, Any]:
        with self._connect() as conn:
            rows = conn.execute("SELECT name, value FROM sso_system_setting").fetchall()
        return {row["name"]: row["value"] for row in rows}

    def set_system_setting(self, key: str, value: Any) -> Dict[str, Any]:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sso_system_setting (name, value, updated_at) VALUES (%s, %s::jsonb, now())
                ON CONFLICT (name) DO UPDATE SET value = EXCLUDED.value, updated_at = now()
                """,
                (key, _json(value)),
            )
        return self.get_system_settings()

    # maintenance
    def sweep_expired(self, now: datetime) -> Dict[str, int]:
        removed: Dict[str, int] = {}
        with self._connect() as conn:
            for collection, table in _EXPIRING_TABLES.items():
                result = conn.execute(
                    f"DELETE FROM {table} WHERE (doc->>'expires_at')::timestamptz <= %s",
                    (now,),
                )
                removed[collection] = result.rowcount
        return removed
