from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or invariant check fails.

    ``detail["reason"]`` names the violated constraint (``email_exists``,
    ``provider_linked``, ``last_login_method``...) so services can map it onto
    their own error taxonomy.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def reason(self) -> Optional[str]:
        return self.detail.get("reason")


__all__ = ["ConstraintViolation"]
