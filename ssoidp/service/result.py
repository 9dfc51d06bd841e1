from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from ssoidp.service.errors import ServiceError

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a verification step.

    ``error`` is what the caller may see; ``reason`` is the internal cause
    (``expired``, ``revoked``, ``not_found``...) kept for logs and the audit
    trail so callers cannot enumerate accounts or credentials.
    """

    value: Optional[T] = None
    error: Optional[ServiceError] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ServiceError, reason: Optional[str] = None) -> "Result[T]":
        return cls(error=error, reason=reason)

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


__all__ = ["Result"]
