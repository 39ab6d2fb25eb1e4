from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import structlog

_REDACTED_KEYS = {"api_key", "authorization"}
_configured = False


def redact(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {k: ("hidden" if k.lower() in _REDACTED_KEYS and v is not None else v) for k, v in payload.items()}


def configure_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    global _configured

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[*shared_processors, structlog.processors.EventRenamer(to="event"), renderer],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, log_level.upper(), logging.INFO)),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
    _configured = True


def get_logger(name: str):
    if not _configured:
        configure_logging()
    return structlog.get_logger(name)
