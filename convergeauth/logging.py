from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request id for the HTTP request being served, set by middleware in app.py
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Values under these keys are credentials and are never logged, even partially
_SECRET_KEYS = ("secret", "token", "authorization", "cookie", "password", "code", "challenge", "assertion")
_EMAIL_KEYS = ("email", "to")
_PASSTHROUGH_KEYS = {"event", "error_code", "status_code"}


def get_correlation_id() -> Optional[str]:
    return request_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context and return it."""
    cid = correlation_id or uuid.uuid4().hex
    request_id_var.set(cid)
    return cid


def redact_email(email: Optional[str]) -> str:
    """Shorten an address to something safe to put in a log line."""
    if not email or "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _add_request_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = request_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _scrub_credentials(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask secrets outright and shorten any email address that slipped through."""
    for key, value in list(event_dict.items()):
        if key in _PASSTHROUGH_KEYS or not isinstance(value, str):
            continue
        lowered = key.lower()
        if lowered in _EMAIL_KEYS or lowered.endswith("email"):
            if "***" not in value:
                event_dict[key] = redact_email(value)
        elif any(marker in lowered for marker in _SECRET_KEYS):
            event_dict[key] = "***"
    return event_dict


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """(Re)configure structlog for the process.

    JSON lines are the default; ``development_mode`` or ``json_output=False``
    switches to the coloured console renderer.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_request_id,
        _scrub_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend(
            [
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ]
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
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
