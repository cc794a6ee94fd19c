from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, MutableMapping, Optional

import structlog

# X-Request-ID of the request being served, bound by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current context and return it."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


# Substrings of field names whose values are masked before rendering
SENSITIVE_FIELD_MARKERS = (
    "password",
    "secret",
    "token",
    "authorization",
    "apikey",
    "api_key",
    "email",
    "phone",
    "otp",
)

# Digests and ids that merely contain a marker
_REDACTION_EXEMPT = frozenset({"token_hash", "token_id", "refresh_tokens_revoked"})


def mask_value(value: str, *, keep: int = 2) -> str:
    """``+15551234567`` -> ``+1***67``; values too short to mask become ``***``."""
    if len(value) <= keep * 2:
        return "***"
    return f"{value[:keep]}***{value[-keep:]}"


def _redact_pii(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask phone numbers, emails, OTPs and bearer secrets.

    Only string values are touched; counts and flags under a sensitive name
    stay readable.
    """
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if lowered in _REDACTION_EXEMPT or not isinstance(value, str):
            continue
        if any(marker in lowered for marker in SENSITIVE_FIELD_MARKERS):
            event_dict[key] = mask_value(value)
    return event_dict


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline used by every ``get_logger`` logger.

    ``development_mode`` (or ``json_output=False``) switches the renderer to
    colored console output; otherwise one JSON object is printed per event.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that must not reach a client: SQL, connection strings, credentials, tracebacks
_LEAKY_FRAGMENTS = [
    re.compile(r"(?i)\b(select|insert|update|delete)\b\s+.{0,50}"),
    re.compile(r"(?i)\b(postgres(?:ql)?|redis)://\S+"),
    re.compile(r"(?i)connection\s+.*\s+(failed|refused|timeout)"),
    re.compile(r"(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*\S+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]

MAX_ERROR_MESSAGE_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Make an upstream error message safe to log or return to a client."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern in _LEAKY_FRAGMENTS:
        result = pattern.sub(replacement, result)
    if len(result) > MAX_ERROR_MESSAGE_LENGTH:
        result = result[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return result


__all__ = [
    "configure_logging",
    "get_correlation_id",
    "get_logger",
    "mask_value",
    "sanitize_error_message",
    "set_correlation_id",
]
