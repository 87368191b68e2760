"""Structured logging for keygate.

structlog, configured once per process. Every event emitted while a request
is in flight carries that request's ``request_id`` (bound by
AccessLogMiddleware). Events never carry the shared proxy key: any field
whose name looks like it holds the key is masked before rendering.

Output is one JSON object per line on stdout, or colourised console output
when ``JSON_LOGS=false``.
"""

import logging
import sys
import time
from contextvars import ContextVar, Token
from typing import Optional

import structlog
from structlog.types import EventDict, Processor

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Event keys that must never be rendered in clear.
_SECRET_KEYS: frozenset[str] = frozenset({"proxy_key", "x-proxy-key", "x_proxy_key"})

_REDACTED = "[REDACTED]"


def add_request_id(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id
    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Epoch seconds, float."""
    event_dict["timestamp"] = time.time()
    return event_dict


def redact_secrets(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    for key in event_dict.keys() & _SECRET_KEYS:
        event_dict[key] = _REDACTED
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """(Re)configure structlog and the stdlib root logger.

    Args:
        log_level:   DEBUG, INFO, WARNING, ERROR or CRITICAL.
        json_output: JSON lines when True, console renderer otherwise.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_id,
        add_timestamp,
        structlog.processors.add_log_level,
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=True),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # uvicorn and httpx log through the stdlib; keep them at the same level.
    logging.basicConfig(level=level, stream=sys.stdout, format="%(message)s")
    logging.getLogger().setLevel(level)


def get_logger(name: str = "keygate") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def set_request_id(request_id: str) -> Token:
    """Bind ``request_id`` to the current context; returns the reset token."""
    return request_id_var.set(request_id)


def clear_request_id(token: Optional[Token] = None) -> None:
    """Restore the previous request id (or clear it when no token is given)."""
    if token is not None:
        request_id_var.reset(token)
    else:
        request_id_var.set(None)


# Defaults until main.py reconfigures from the environment
configure_logging()
