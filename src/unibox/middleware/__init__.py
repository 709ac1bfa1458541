# Middleware modules
from unibox.middleware.logging_filter import (
    configure_logging_filter,
    redact_sensitive_data,
)

__all__ = [
    "configure_logging_filter",
    "redact_sensitive_data",
]
