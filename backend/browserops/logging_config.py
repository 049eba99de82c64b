# backend/browserops/logging_config.py
"""
structlog setup shared by the API process and RQ job entry points.

Components log through `structlog.get_logger(__name__)` with key/value events;
this module decides how those events are rendered.
"""

from __future__ import annotations

import logging
import sys

import structlog

from browserops.settings import settings

_configured = False


def configure_logging(level: str | None = None, json_logs: bool | None = None) -> None:
    """Configure structlog over stdlib logging. Safe to call more than once."""
    global _configured
    if _configured:
        return

    log_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)
    use_json = settings.log_json if json_logs is None else json_logs

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    renderer = (
        structlog.processors.JSONRenderer()
        if use_json
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _configured = True
