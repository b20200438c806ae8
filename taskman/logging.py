from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware in taskman.app
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Adopt ``correlation_id`` for the current context, generating one if absent."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _inject_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


# Values under these keys are dropped entirely
_SECRET_KEYS = ("password", "secret", "authorization", "token")
# Non-secret fields whose names happen to contain a secret key
_SAFE_KEYS = {"token_fingerprint", "token_reason", "token_type"}


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def _scrub_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Keep passwords, bearer tokens and signing keys out of log output.

    Email addresses keep their first character and domain so support can
    still correlate a failed signup with a user report.
    """
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key in _SAFE_KEYS or not isinstance(value, str):
            continue
        if any(secret in lower_key for secret in _SECRET_KEYS):
            event_dict[key] = "[redacted]"
        elif "email" in lower_key:
            event_dict[key] = _mask_email(value)
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline used by the API, scripts and tests.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        json_output: Render one JSON object per line when True
        development_mode: Colored console output regardless of ``json_output``
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _inject_correlation_id,
        _scrub_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
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


configure_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUE_VALUES,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUE_VALUES,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
