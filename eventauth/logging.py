from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request id for the current request, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


# Field names whose values are credentials or addresses
_CREDENTIAL_FIELDS = frozenset(
    {
        "password",
        "current_password",
        "new_password",
        "token",
        "access_token",
        "refresh_token",
        "raw_token",
        "authorization",
        "secret",
        "api_key",
        "email",
    }
)
_CREDENTIAL_SUFFIXES = ("_password", "_token", "_secret")
# Metadata about credentials, never the credential itself
_SAFE_FIELDS = frozenset({"token_type"})
_SAFE_SUFFIXES = ("_hash", "_id", "_type", "_set")


def _is_credential_field(key: str) -> bool:
    name = key.lower()
    if name in _SAFE_FIELDS or name.endswith(_SAFE_SUFFIXES):
        return False
    return name in _CREDENTIAL_FIELDS or name.endswith(_CREDENTIAL_SUFFIXES)


def _mask(value: str) -> str:
    if len(value) <= 8:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask string values of credential fields before they are rendered."""
    for key, value in event_dict.items():
        if isinstance(value, str) and _is_credential_field(key):
            event_dict[key] = _mask(value)
    return event_dict


def _truthy(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    dev_mode: Optional[bool] = None,
) -> None:
    """Set up structlog for the service.

    Arguments default to ``LOG_LEVEL``, ``LOG_JSON`` and ``LOG_DEV_MODE``.
    Dev mode or ``LOG_JSON=false`` selects the console renderer.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _truthy("LOG_JSON", "true")
    if dev_mode is None:
        dev_mode = _truthy("LOG_DEV_MODE", "false")

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Shapes of sensitive text that library errors in this service can carry:
# redis URLs with credentials, signed tokens, and key=value secrets
_ERROR_SCRUBBERS = (
    re.compile(r"rediss?://[^\s@/]*@[^\s]+"),
    re.compile(r"[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}"),
    re.compile(r"(?i)\b(password|secret|token|authorization)\b\s*[:=]\s*\S+"),
)
_MAX_ERROR_LENGTH = 300


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub credentials and tokens from error text bound for a response or log."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _ERROR_SCRUBBERS:
        error = pattern.sub(replacement, error)
    if len(error) > _MAX_ERROR_LENGTH:
        error = error[: _MAX_ERROR_LENGTH - 3] + "..."
    return error
