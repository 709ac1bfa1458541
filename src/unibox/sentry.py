"""Sentry SDK initialization."""

import logging
from dataclasses import dataclass, field
from typing import Any

import sentry_sdk
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

DEFAULT_TRACES_SAMPLE_RATE = 0.2
DEV_TRACES_SAMPLE_RATE = 1.0

SENSITIVE_HEADERS = (
    "authorization",
    "cookie",
    "x-api-key",
    "x-unipile-signature",
    "x-webhook-token",
)
SENSITIVE_EXTRA_KEYS = ("password", "token", "secret", "api_key", "connection_data")

HEALTH_TRANSACTIONS = frozenset({"/health", "/readiness", "/liveness"})


@dataclass
class SentryConfig:
    """Configuration for Sentry SDK initialization."""

    service_name: str
    dsn: str | None = None
    environment: str | None = None
    release: str | None = None
    traces_sample_rate: float | None = None
    profiles_sample_rate: float | None = None
    enable_db_tracing: bool = True
    enable_redis_tracing: bool = False
    additional_integrations: list[Any] = field(default_factory=list)


def _build_integrations(cfg: SentryConfig) -> list[Any]:
    integrations: list[Any] = [
        StarletteIntegration(transaction_style="endpoint"),
        FastApiIntegration(transaction_style="endpoint"),
        HttpxIntegration(),
        AsyncioIntegration(),
        LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
    ]
    if cfg.enable_db_tracing:
        integrations.append(SqlalchemyIntegration())
    if cfg.enable_redis_tracing:
        integrations.append(RedisIntegration())
    integrations.extend(cfg.additional_integrations)
    return integrations


def _before_send(event: Any, _hint: dict[str, Any]) -> Any:
    """Scrub credentials and webhook signatures from error events."""
    request = event.get("request")
    if request is not None:
        headers = request.get("headers")
        if isinstance(headers, dict):
            for header in SENSITIVE_HEADERS:
                for key in list(headers):
                    if key.lower() == header:
                        headers[key] = "[Filtered]"

    extra = event.get("extra")
    if isinstance(extra, dict):
        for key in list(extra):
            if any(sensitive in key.lower() for sensitive in SENSITIVE_EXTRA_KEYS):
                extra[key] = "[Filtered]"
    return event


def _before_send_transaction(event: Any, _hint: dict[str, Any]) -> Any:
    if event.get("transaction", "") in HEALTH_TRANSACTIONS:
        return None
    return event


def init_sentry(config: SentryConfig) -> bool:
    """Initialize Sentry.

    Returns:
        True if Sentry was initialized, False when no DSN is configured.
    """
    if not config.dsn:
        return False

    environment = config.environment or "development"
    traces_rate = config.traces_sample_rate
    if traces_rate is None:
        traces_rate = (
            DEFAULT_TRACES_SAMPLE_RATE if environment == "production" else DEV_TRACES_SAMPLE_RATE
        )

    sentry_sdk.init(
        dsn=config.dsn,
        environment=environment,
        release=config.release or f"{config.service_name}@0.1.0",
        traces_sample_rate=traces_rate,
        profiles_sample_rate=config.profiles_sample_rate,
        integrations=_build_integrations(config),
        before_send=_before_send,
        before_send_transaction=_before_send_transaction,
        send_default_pii=False,
        attach_stacktrace=True,
        max_breadcrumbs=100,
        server_name=config.service_name,
        ignore_errors=[
            "ConnectionResetError",
            "asyncio.CancelledError",
            "KeyboardInterrupt",
            "SystemExit",
        ],
    )
    sentry_sdk.set_tag("service", config.service_name)
    return True
