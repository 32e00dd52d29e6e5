from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Bound by the HTTP middleware for the lifetime of one request
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Credentials are never worth keeping, even partially
_SECRET_KEYS = ("password", "secret", "token", "authorization", "code")
# Contact details keep a hint of their shape for support
_CONTACT_KEYS = ("email", "phone")
_PASSTHROUGH_SUFFIXES = ("_hash", "_type", "_count")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the caller's request id, or a fresh UUID, to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def email_fingerprint(email: str) -> str:
    """Stable, non-reversible handle for an email address in log lines."""
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()[:16]


def _stamp_request(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask_contact(value: str) -> str:
    local, sep, domain = value.partition("@")
    if sep:
        return f"{local[:2]}***@{domain}"
    return value[:2] + "***" if len(value) > 4 else "***"


def _scrub_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Blank credential-looking values and mask contact details."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key in ("event", "error_code") or lower_key.endswith(_PASSTHROUGH_SUFFIXES):
            continue
        if not isinstance(value, str) or not value:
            continue
        if any(part in lower_key for part in _SECRET_KEYS):
            event_dict[key] = "[redacted]"
        elif any(part in lower_key for part in _CONTACT_KEYS):
            event_dict[key] = _mask_contact(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    """Install the structlog pipeline.

    JSON lines are the production format; ``dev_mode`` or ``json_output=False``
    switches to the coloured console renderer.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _stamp_request,
        _scrub_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
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


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
