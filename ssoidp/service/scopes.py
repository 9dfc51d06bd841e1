from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from ssoidp.storage.models import User

OPENID = "openid"
PROFILE = "profile"
EMAIL = "email"
OFFLINE_ACCESS = "offline_access"

STANDARD_SCOPES = (OPENID, PROFILE, EMAIL, OFFLINE_ACCESS)

# Claims each scope unlocks; nothing outside this table is ever released
SCOPE_CLAIMS: Dict[str, tuple] = {
    PROFILE: ("name",),
    EMAIL: ("email", "email_verified"),
}


def parse_scope(raw: Optional[str | Iterable[str]]) -> List[str]:
    """Split a space-delimited scope string, keeping first-seen order."""
    if raw is None:
        return []
    items = raw.split() if isinstance(raw, str) else list(raw)
    seen: List[str] = []
    for item in items:
        item = item.strip()
        if item and item not in seen:
            seen.append(item)
    return seen


def format_scope(scopes: Iterable[str]) -> str:
    return " ".join(scopes)


def supported_scopes(extra: Iterable[str] = ()) -> List[str]:
    return list(STANDARD_SCOPES) + [s for s in extra if s not in STANDARD_SCOPES]


def claims_for(user: User, scopes: Iterable[str]) -> Dict[str, Any]:
    granted = set(scopes)
    values = {
        "name": user.name,
        "email": user.email,
        "email_verified": user.email_verified,
    }
    claims: Dict[str, Any] = {"sub": user.id}
    for scope, names in SCOPE_CLAIMS.items():
        if scope not in granted:
            continue
        for name in names:
            if values.get(name) is not None:
                claims[name] = values[name]
    return claims
