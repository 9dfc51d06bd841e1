"""structlog setup shared by every module.

Configured once at import from ``LOG_LEVEL``, ``LOG_JSON`` and
``LOG_DEV_MODE``. Each event carries the request's correlation id, and
credential values never reach the sink: they are replaced outright, while
email addresses keep two characters at each end so operators can still tell
accounts apart.
"""

from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

REDACTED = "[REDACTED]"

_request_id: ContextVar[Optional[str]] = ContextVar("ssoidp_request_id", default=None)

# Exact keys that always hold a credential, in logs and audit snapshots alike
_CREDENTIAL_KEYS = frozenset(
    {
        "password",
        "password_hash",
        "secret",
        "client_secret",
        "client_secret_hash",
        "server_secret",
        "token",
        "token_hash",
        "refresh_token",
        "access_token",
        "id_token",
        "session_token",
        "csrf_token",
        "pin",
        "pin_hash",
        "code",
        "code_verifier",
        "authorization",
        "cookie",
        "private_key",
        "api_key",
    }
)
_CREDENTIAL_SUFFIXES = ("_password", "_secret", "_token", "_hash", "_pin", "_verifier", "_key")


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the id for the current request, minting one when the caller sent none."""
    value = correlation_id or uuid.uuid4().hex
    _request_id.set(value)
    return value


def is_credential_key(key: str) -> bool:
    normalized = key.lower().replace("-", "_").replace(" ", "_")
    return normalized in _CREDENTIAL_KEYS or normalized.endswith(_CREDENTIAL_SUFFIXES)


def _is_email_key(key: str) -> bool:
    lowered = key.lower()
    return lowered == "to" or lowered.endswith("email")


def mask_email(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _bind_correlation_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    request_id = get_correlation_id()
    if request_id and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = request_id
    return event_dict


def _redact_pii(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if key == "event" or value is None:
            continue
        if is_credential_key(key):
            event_dict[key] = REDACTED
        elif _is_email_key(key) and isinstance(value, str):
            event_dict[key] = mask_email(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _bind_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def sanitize_snapshot(data: Any, *, _depth: int = 0) -> Any:
    """Copy of an audit before/after document with credential values replaced.

    ``None`` stays ``None`` so a snapshot still shows that a field was unset.
    """
    if _depth > 20:
        return "[max depth exceeded]"
    if isinstance(data, dict):
        return {
            key: (
                (REDACTED if value is not None else None)
                if isinstance(key, str) and is_credential_key(key)
                else sanitize_snapshot(value, _depth=_depth + 1)
            )
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [sanitize_snapshot(item, _depth=_depth + 1) for item in data]
    return data
