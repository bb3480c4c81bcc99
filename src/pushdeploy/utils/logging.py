"""Logging configuration utilities."""

import logging
import sys
from typing import Optional, TextIO

import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars


SENSITIVE_KEYS = {
    "password",
    "secret",
    "token",
    "api_key",
    "apikey",
    "authorization",
    "auth",
    "private_key",
    "pkey",
    "passphrase",
    "webhook_secret",
    "signature",
}


def _redact_sensitive(_, __, event_dict: dict) -> dict:
    """Redact sensitive fields in the structured log."""
    for key in list(event_dict.keys()):
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = "[REDACTED]"
    return event_dict


def setup_logging(log_level: str = "INFO", log_format: str = "json", stream: Optional[TextIO] = None) -> None:
    """Configure structured logging."""
    stream = stream or sys.stdout

    logging.basicConfig(
        format="%(message)s",
        stream=stream,
        level=getattr(logging, log_level.upper()),
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_sensitive,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, log_level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )


def bind_run_context(run_id: Optional[str] = None, target_id: Optional[str] = None) -> None:
    """Bind correlation fields for orchestration logs using contextvars.

    Each asyncio task runs in a copy of the creating context, so fields bound
    inside a per-target task do not leak into sibling targets.
    """
    if run_id:
        bind_contextvars(runId=run_id)
    if target_id:
        bind_contextvars(targetId=target_id)


def clear_run_context() -> None:
    unbind_contextvars("runId", "targetId")
