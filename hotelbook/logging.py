from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request correlation id, set by the request-id middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Substrings that mark a value as credential material
_SECRET_KEY_PARTS = ("password", "secret", "token", "authorization", "otp", "api_key")
# Exact keys that carry one-time codes or hashes
_SECRET_EXACT_KEYS = frozenset({"code", "otp_code", "hash", "password_hash"})


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def is_secret_key(key: str) -> bool:
    lower_key = key.lower().replace("-", "_")
    if lower_key in _SECRET_EXACT_KEYS:
        return True
    return any(part in lower_key for part in _SECRET_KEY_PARTS)


def mask_email(value: str) -> str:
    """Mask an email address for logs: ``jo***@example.com``."""
    if "@" not in value:
        return value[:2] + "***" if len(value) > 2 else "***"
    local, domain = value.rsplit("@", 1)
    return f"{local[:2]}***@{domain}"


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor that masks emails and drops credential values from log entries."""
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        value = event_dict[key]
        if is_secret_key(key):
            event_dict[key] = "[REDACTED]"
        elif "email" in key.lower() and isinstance(value, str):
            event_dict[key] = mask_email(value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Initialize logging on module import
_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


def scrub_sensitive(data: Any, *, depth: int = 0, max_depth: int = 10) -> Any:
    """Drop credential-bearing keys from nested dicts and lists.

    Used for audit metadata, which is persisted and must never hold
    passwords, one-time codes or tokens.
    """
    if depth > max_depth:
        return "[max depth exceeded]"

    if isinstance(data, dict):
        return {
            key: scrub_sensitive(value, depth=depth + 1, max_depth=max_depth)
            for key, value in data.items()
            if not is_secret_key(str(key))
        }
    if isinstance(data, (list, tuple)):
        return [scrub_sensitive(item, depth=depth + 1, max_depth=max_depth) for item in data]
    return data
