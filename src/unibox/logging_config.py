"""Structured logging setup for the API process."""

import logging
import sys
from typing import Any

import sentry_sdk
import structlog

from unibox.config import settings


def _sentry_breadcrumbs(
    _logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Mirror log events into Sentry breadcrumbs; errors are captured."""
    level = event_dict.get("level", "info")
    message = event_dict.get("event", "")
    standard_keys = {"event", "level", "timestamp", "logger", "filename", "lineno"}
    extra_data = {k: v for k, v in event_dict.items() if k not in standard_keys}

    sentry_sdk.add_breadcrumb(
        message=str(message),
        category="log",
        level=level,
        data=extra_data or None,
    )

    if method_name in ("error", "exception", "critical"):
        exc_info = event_dict.get("exc_info")
        if isinstance(exc_info, tuple):
            sentry_sdk.capture_exception(exc_info[1])
        elif exc_info is None or exc_info is False:
            with sentry_sdk.isolation_scope() as scope:
                for key, value in extra_data.items():
                    scope.set_extra(key, value)
                sentry_sdk.capture_message(
                    str(message),
                    level="error" if method_name == "error" else "fatal",
                )

    return event_dict


def configure_logging(
    service_name: str = "unibox",
    log_level: int | None = None,
    json_format: bool | None = None,
) -> structlog.stdlib.BoundLogger:
    """Configure stdlib logging and structlog together.

    Console output in development, JSON everywhere else. Call once at
    startup, after ``init_sentry``.
    """
    if log_level is None:
        log_level = logging.DEBUG if settings.DEBUG else logging.INFO
    if json_format is None:
        json_format = settings.ENVIRONMENT != "development"

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    # Avoid duplicate handlers on hot reload
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if settings.SENTRY_DSN:
        processors.append(_sentry_breadcrumbs)
    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger(service_name)  # type: ignore[no-any-return]
