from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional, Tuple

import structlog

# X-Request-ID of the request being served
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
# (session_id, user_id) once the request has authenticated
identity_var: ContextVar[Optional[Tuple[str, str]]] = ContextVar("request_identity", default=None)

_SENSITIVE_EXACT = frozenset({"authorization", "code", "email", "password", "to"})
_SENSITIVE_SUFFIXES = ("_token", "_secret", "_password", "_code", "_email", "token", "secret")
# Keys ending in a sensitive suffix that only ever carry identifiers or labels
_NOT_SENSITIVE = frozenset({"error_code", "status_code"})


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Adopt the caller's request id, or mint one, for the current context."""
    value = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(value)
    return value


def bind_identity(session_id: str, user_id: str) -> None:
    identity_var.set((session_id, user_id))


def clear_identity() -> None:
    identity_var.set(None)


def mask_secret(value: str) -> str:
    """Keep the first and last two characters of a sensitive string."""
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    if lowered in _NOT_SENSITIVE:
        return False
    return lowered in _SENSITIVE_EXACT or lowered.endswith(_SENSITIVE_SUFFIXES)


def _add_request_context(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    identity = identity_var.get()
    if identity is not None:
        event_dict.setdefault("session_id", identity[0])
        event_dict.setdefault("user_id", identity[1])
    return event_dict


def _mask_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask refresh tokens, reset codes, secrets and addresses before rendering."""
    for key, value in event_dict.items():
        if key != "event" and isinstance(value, str) and is_sensitive_key(key):
            event_dict[key] = mask_secret(value)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    """Install the structlog pipeline.

    JSON lines are the default; ``json_output=False`` switches to the colored
    console renderer for local development.
    """
    level_no = logging.getLevelName(level.upper())
    if not isinstance(level_no, int):
        level_no = logging.INFO
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_request_context,
        _mask_sensitive,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", True) and not _env_flag("LOG_DEV_MODE", False),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
