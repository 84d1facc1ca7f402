from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

SERVICE_NAME = "trafficlearn-auth"

# per-request id, echoed back in the X-Request-ID header
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# values under these keys never reach the log output
_SECRET_KEYS = ("password", "secret", "token", "cookie", "authorization")
_MASKED = "[redacted]"


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request id for this context, generating one when absent."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _stamp_request(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def mask_email(value: str) -> str:
    """``aline@example.com`` -> ``a***@example.com``; the domain stays readable."""
    local, sep, domain = value.partition("@")
    if not sep:
        return _MASKED
    return f"{local[:1]}***@{domain}"


def _scrub_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop credential values and mask email addresses and session ids."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if any(secret in lower_key for secret in _SECRET_KEYS):
            if value is not None:
                event_dict[key] = _MASKED
        elif "email" in lower_key and isinstance(value, str):
            event_dict[key] = mask_email(value)
        elif lower_key == "session_id" and isinstance(value, str):
            event_dict[key] = value[:8]
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline; JSON lines unless console output is requested."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _stamp_request,
        _scrub_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
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


def log_activity(
    action: str,
    user_id: Optional[int] = None,
    details: str = "",
    *,
    ip_addr: Optional[str] = None,
    logger: Optional[Any] = None,
) -> None:
    """Record an account action such as ``User Login`` or ``User Registration``."""
    log = logger or get_logger("activity")
    log.info(
        "user_activity",
        action=action,
        user_id=user_id,
        ip_addr=ip_addr or "unknown",
        details=details,
    )


def log_security_event(event: str, logger: Optional[Any] = None, **fields: Any) -> None:
    """Warn about a rejected credential, token or access attempt."""
    log = logger or get_logger("security")
    log.warning(event, security_event=True, **fields)
