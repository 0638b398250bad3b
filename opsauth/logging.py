from __future__ import annotations

import logging
import os
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, get_contextvars

# Credential material; the value is never logged in any form
SECRET_FIELDS = frozenset(
    {
        "password",
        "current_password",
        "new_password",
        "password_hash",
        "bootstrap_admin_password",
        "access_token",
        "refresh_token",
        "refresh_token_hash",
        "signing_key",
        "authorization",
    }
)
REDACTED = "[redacted]"


def get_correlation_id() -> Optional[str]:
    return get_contextvars().get("correlation_id")


@contextmanager
def auth_call_context(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Scope the log context of one facade call.

    A nested call reuses the outer correlation id. Whatever was bound inside
    (``user_id``, ``session_id``) is dropped again on exit.
    """
    saved = get_contextvars()
    cid = correlation_id or saved.get("correlation_id") or str(uuid.uuid4())
    bind_contextvars(correlation_id=cid)
    try:
        yield cid
    finally:
        clear_contextvars()
        bind_contextvars(**saved)


def bind_subject(user_id: Optional[str] = None, session_id: Optional[str] = None) -> None:
    """Attach the user and session an operation acts on, once they are known."""
    fields = {"user_id": user_id, "session_id": session_id}
    bind_contextvars(**{k: v for k, v in fields.items() if v is not None})


def _mask_email(value: str) -> str:
    local, _, domain = value.partition("@")
    return f"{local[:1]}***@{domain}" if domain else "***"


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        name = key.lower()
        if name in SECRET_FIELDS:
            event_dict[key] = REDACTED
        elif name == "email" and isinstance(value, str):
            event_dict[key] = _mask_email(value)
    return event_dict


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

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
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true") and not _env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.typing.FilteringBoundLogger:
    return structlog.get_logger().bind(logger=name)
