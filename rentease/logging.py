from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, echoed back in X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Key fragments whose values are credentials and never logged
_CREDENTIAL_MARKERS = ("password", "secret", "token", "otp", "authorization", "cookie")
# Keys that carry a mailbox; logged as a hint only
_CONTACT_KEYS = frozenset({"email", "to", "recipient"})
_REDACTED = "[redacted]"
# Compact JWS (our access and refresh tokens) embedded in free-form values
_JWS_PATTERN = re.compile(r"eyJ[\w-]+\.[\w-]+\.[\w-]*")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_request_context(**values: Any) -> None:
    """Attach request-scoped fields (client ip, path) to every log line."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**values)


def redact_email(email: Optional[str]) -> str:
    """Reduce an email address to a loggable hint (``jo***@example.com``)."""
    if not email or "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    if local.endswith("***"):
        return email
    return f"{local[:2]}***@{domain}"


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop credential values, reduce mailboxes to hints and mask stray tokens."""
    for key, value in list(event_dict.items()):
        if key == "event" or value is None:
            continue
        lower_key = key.lower()
        if any(marker in lower_key for marker in _CREDENTIAL_MARKERS):
            event_dict[key] = _REDACTED
        elif lower_key in _CONTACT_KEYS and isinstance(value, str):
            event_dict[key] = redact_email(value)
        elif isinstance(value, str) and "eyJ" in value:
            event_dict[key] = _JWS_PATTERN.sub(_REDACTED, value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
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
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
    ]

    if development_mode or not json_output:
        renderer = [structlog.dev.ConsoleRenderer(colors=development_mode)]
    else:
        renderer = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
