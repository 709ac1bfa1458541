"""Sensitive data logging filter.

A structlog processor that masks credentials before log events are
rendered. Account connection payloads and webhook signatures are treated as
secrets along with the usual tokens and keys.
"""

import re
from collections.abc import MutableMapping
from typing import Any

import structlog

# Field names (or fragments of them) whose values are always masked
SENSITIVE_FIELDS = frozenset(
    {
        "password",
        "secret",
        "token",
        "api_key",
        "apikey",
        "authorization",
        "bearer",
        "credential",
        "cookie",
        "signature",
        "connection_data",
        "database_url",
        "private_key",
        "jwt",
        "smtp_password",
    }
)

# Values that look like secrets regardless of their field name
SENSITIVE_PATTERNS = [
    # JWTs
    re.compile(r"eyJ[A-Za-z0-9_-]*\.eyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]*"),
    re.compile(r"Bearer\s+[A-Za-z0-9_.-]+", re.IGNORECASE),
    # SendGrid keys
    re.compile(r"SG\.[A-Za-z0-9_-]{16,}\.[A-Za-z0-9_-]{16,}"),
    re.compile(r"api[-_]?key[-_:]?\s*[A-Za-z0-9]{16,}", re.IGNORECASE),
    # Bare hex digests such as HMAC signatures; fp_ message fingerprints are kept
    re.compile(r"\b[a-fA-F0-9]{40,}\b"),
]

REDACTED = "***REDACTED***"


def _is_sensitive_field(key: str) -> bool:
    key_lower = key.lower().replace("-", "_")
    return any(sensitive in key_lower for sensitive in SENSITIVE_FIELDS)


def _redact_sensitive_value(value: str) -> str:
    for pattern in SENSITIVE_PATTERNS:
        if pattern.search(value):
            return REDACTED
    return value


def _redact_value(value: Any) -> Any:
    if isinstance(value, MutableMapping):
        return _redact_dict(value)
    if isinstance(value, list):
        return [_redact_value(item) for item in value]
    if isinstance(value, str):
        return _redact_sensitive_value(value)
    return value


def _redact_dict(data: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Recursively redact sensitive data from a dictionary (in place)."""
    for key in list(data.keys()):
        if key == "event":
            continue
        if _is_sensitive_field(key):
            data[key] = REDACTED
        else:
            data[key] = _redact_value(data[key])
    return data


def redact_sensitive_data(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Structlog processor that redacts sensitive data from log events."""
    return _redact_dict(event_dict)


def configure_logging_filter() -> None:
    """Insert the redaction processor into the structlog chain.

    Idempotent. The processor goes right after the timestamper so every
    renderer sees redacted values.
    """
    current_processors = structlog.get_config().get("processors", [])

    processor_names = [getattr(p, "__name__", str(p)) for p in current_processors]
    if "redact_sensitive_data" in processor_names:
        return

    insert_index = 0
    for i, proc in enumerate(current_processors):
        proc_name = getattr(proc, "__name__", type(proc).__name__)
        if "timestamp" in proc_name.lower():
            insert_index = i + 1
            break

    new_processors = list(current_processors)
    new_processors.insert(insert_index, redact_sensitive_data)
    structlog.configure(processors=new_processors)

    structlog.get_logger().info("Sensitive data logging filter configured")
