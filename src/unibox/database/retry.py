"""Bounded retry for transient storage failures."""

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

from unibox.config import settings
from unibox.exceptions import TransientStorageError

logger = structlog.get_logger()

T = TypeVar("T")

# Errors worth retrying: lock contention, dropped connections, pool timeouts
RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    OperationalError,
    InterfaceError,
    TimeoutError,
)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, RETRYABLE_ERRORS):
        return True
    # asyncpg serialization/deadlock failures surface as DBAPIError with a pgcode
    if isinstance(exc, DBAPIError):
        pgcode = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
        return pgcode in ("40001", "40P01", "55P03")
    return False


async def run_with_storage_retry(
    operation: str,
    func: Callable[[], Awaitable[T]],
    *,
    max_attempts: int | None = None,
) -> T:
    """Run ``func`` with exponential backoff and jitter on transient errors.

    ``func`` must open and commit its own transaction so that each attempt
    starts from a clean session. Raises TransientStorageError once the
    attempts are exhausted.
    """
    attempts = max_attempts or settings.STORAGE_RETRY_MAX_ATTEMPTS
    retry_delay = settings.STORAGE_RETRY_INITIAL_DELAY
    backoff_multiplier = settings.STORAGE_RETRY_BACKOFF

    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except Exception as e:
            if not _is_retryable(e):
                raise
            if attempt >= attempts:
                logger.error(
                    "Storage retries exhausted",
                    operation=operation,
                    attempts=attempt,
                    error=str(e),
                )
                raise TransientStorageError(operation, attempt, str(e)) from e
            # Add jitter to prevent thundering herd
            jitter = random.uniform(0, retry_delay * 0.5)
            logger.warning(
                "Transient storage error, retrying",
                operation=operation,
                attempt=attempt,
                delay=round(retry_delay + jitter, 3),
                error=str(e),
            )
            await asyncio.sleep(retry_delay + jitter)
            retry_delay *= backoff_multiplier

    # Unreachable: the loop either returns or raises
    raise TransientStorageError(operation, attempts, "no attempts made")
