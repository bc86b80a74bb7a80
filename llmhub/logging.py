from __future__ import annotations

import hashlib
import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request id bound by the HTTP middleware and echoed in X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Field names whose values are never logged in full
_SENSITIVE_KEYS = ("password", "secret", "token", "authorization", "email")
# Values under these suffixes were fingerprinted by the caller
_FINGERPRINT_SUFFIXES = ("_hash", "_prefix")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context and return it."""
    request_id = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(request_id)
    return request_id


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    request_id = get_correlation_id()
    if request_id:
        event_dict["correlation_id"] = request_id
    return event_dict


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials, tokens and addresses before rendering."""
    for key, value in list(event_dict.items()):
        name = key.lower()
        if name.endswith(_FINGERPRINT_SUFFIXES) or not isinstance(value, str):
            continue
        if any(marker in name for marker in _SENSITIVE_KEYS):
            event_dict[key] = _mask(value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the process-wide structlog pipeline.

    JSON lines are the default; ``development_mode`` (or ``json_output=False``)
    switches to the colored console renderer.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
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

    level = getattr(logging, log_level.upper(), logging.INFO)
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in _TRUTHY


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def email_hash(email: str) -> str:
    """Short stable fingerprint of an address for log correlation."""
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()[:12]


def token_prefix(token: Optional[str]) -> Optional[str]:
    return token[:8] if token else None


# Fragments that describe internals and must not reach a client
_INTERNAL_DETAIL_PATTERNS = [
    re.compile(p)
    for p in (
        r"(?i)\b(select|insert|update|delete)\b.{0,80}",
        r"(?i)\b(psycopg|postgres(ql)?|sqlstate)\b\S*",
        r"(?i)(?:/(?:home|root|srv|tmp|var|usr|opt|etc))(?:/[^\s'\"]+)+",
        r"(?i)(password|secret|token|dsn)\s*[:=]\s*\S+",
        r"(?i)traceback \(most recent call last\).*",
    )
]
_MAX_CLIENT_MESSAGE = 300


def sanitize_error_message(message: Optional[str], *, replacement: str = "[redacted]") -> str:
    """Strip SQL, paths, inline credentials and tracebacks from a client-facing message."""
    if not message or not isinstance(message, str):
        return "internal server error"
    cleaned = message
    for pattern in _INTERNAL_DETAIL_PATTERNS:
        cleaned = pattern.sub(replacement, cleaned)
    if len(cleaned) > _MAX_CLIENT_MESSAGE:
        cleaned = cleaned[: _MAX_CLIENT_MESSAGE - 3] + "..."
    return cleaned
