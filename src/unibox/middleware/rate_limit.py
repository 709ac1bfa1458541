"""Rate limiting using slowapi with an optional Redis backend."""

from typing import Any

import redis.asyncio as redis
import structlog
from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from unibox.config import settings

logger = structlog.get_logger()


def get_client_identifier(request: Request) -> str:
    """Rate limit key: the authenticated user when known, else the client IP."""
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    return f"ip:{get_remote_address(request)}"


def _storage_uri() -> str | None:
    uri = settings.RATE_LIMIT_STORAGE_URL or settings.REDIS_URL
    if not uri:
        logger.info("Rate limit storage not configured, using in-memory rate limiting")
    return uri


def _create_limiter() -> Limiter:
    storage_uri = _storage_uri()
    try:
        return Limiter(
            key_func=get_client_identifier,
            storage_uri=storage_uri or "memory://",
            storage_options={"socket_connect_timeout": 5} if storage_uri else {},  # type: ignore[dict-item]
            strategy="fixed-window",
            headers_enabled=True,
        )
    except Exception as e:
        logger.warning(
            "Failed to initialize rate limit storage, falling back to in-memory",
            error=str(e),
        )
        return Limiter(
            key_func=get_client_identifier,
            storage_uri="memory://",
            strategy="fixed-window",
            headers_enabled=True,
        )


limiter = _create_limiter()

# Rate limit categories
RATE_LIMIT_STANDARD = f"{settings.RATE_LIMIT_PER_MINUTE}/minute"
RATE_LIMIT_SEND = "60/minute"  # Outbound sends hit external providers
RATE_LIMIT_WEBHOOK = "1000/minute"  # Provider bursts on reconnect
RATE_LIMIT_HEALTH = "1000/minute"


# ============================================================================
# Socket connect throttling (Redis-backed, only when Redis is configured)
# ============================================================================

SOCKET_CONNECT_PREFIX = "unibox:ratelimit:ws:"
SOCKET_CONNECT_WINDOW = 60  # seconds
SOCKET_CONNECT_MAX = 60  # connections per window per client


class _RedisClientHolder:
    """Container for the Redis client to avoid a global statement."""

    client: Any = None


_redis_holder = _RedisClientHolder()


async def get_redis_client() -> Any:
    if _redis_holder.client is None:
        _redis_holder.client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=5,
        )
    return _redis_holder.client


async def close_redis_client() -> None:
    if _redis_holder.client is not None:
        await _redis_holder.client.aclose()
        _redis_holder.client = None


async def check_socket_connect_rate(client_key: str) -> bool:
    """Whether a socket connection attempt is within the per-client budget.

    Always allowed without Redis. With Redis the check fails closed: a
    connection is refused when the counter cannot be read.
    """
    if not settings.REDIS_URL:
        return True
    try:
        client = await get_redis_client()
        key = f"{SOCKET_CONNECT_PREFIX}{client_key}"
        pipe = client.pipeline()
        pipe.incr(key)
        pipe.expire(key, SOCKET_CONNECT_WINDOW)
        results = await pipe.execute()
    except Exception as e:
        logger.exception("Socket connect rate check failed, rejecting", error=str(e))
        return False

    count = int(results[0])
    if count > SOCKET_CONNECT_MAX:
        logger.warning(
            "Socket connect rate limit exceeded",
            key=client_key,
            count=count,
            limit=SOCKET_CONNECT_MAX,
        )
        return False
    return True
