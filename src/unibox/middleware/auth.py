"""Authentication middleware for JWT validation."""

from collections.abc import Awaitable, Callable
from datetime import timedelta
from uuid import uuid4

import structlog
from fastapi import HTTPException, Request, Response
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware

from unibox.config import settings
from unibox.utils.timeutil import utcnow

logger = structlog.get_logger()

ACCESS_TOKEN_TTL = timedelta(hours=12)


def _create_error_response(
    request: Request, content: str, status_code: int, media_type: str = "application/json"
) -> Response:
    """Create an error response with CORS headers.

    This ensures 401 responses include CORS headers so the browser
    can properly read the response instead of blocking it.
    """
    response = Response(content=content, status_code=status_code, media_type=media_type)

    origin = request.headers.get("origin")
    if origin and origin in settings.CORS_ORIGINS:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Headers"] = (
            "Authorization, Content-Type, Accept, Origin, X-Requested-With, X-Request-ID"
        )

    return response


# Paths that don't require authentication
# Use tuples: (path, is_prefix) where is_prefix=True allows subpaths
PUBLIC_PATHS: list[tuple[str, bool]] = [
    ("/health", False),
    ("/api/webhooks", True),  # Provider webhooks (signature / shared-secret auth)
    ("/api/v1/webhooks", True),
    ("/socket.io", True),  # Socket.IO authenticates on connect
    ("/api/docs", True),
    ("/api/openapi.json", False),
]


def _is_public_path(request_path: str) -> bool:
    """Check if the request path is public.

    Uses exact matching or prefix matching with proper boundary checks
    to prevent path traversal bypasses.
    """
    for path, is_prefix in PUBLIC_PATHS:
        if is_prefix:
            if request_path == path or request_path.startswith((path + "/", path + "?")):
                return True
        elif request_path == path:
            return True
    return False


def create_access_token(user_id: str, expires_delta: timedelta | None = None) -> str:
    """Issue an access token for a user id."""
    now = utcnow()
    payload = {
        "sub": user_id,
        "jti": str(uuid4()),
        "iat": int(now.timestamp()),
        "exp": int((now + (expires_delta or ACCESS_TOKEN_TTL)).timestamp()),
        "type": "access",
    }
    return str(jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM))


def decode_access_token(token: str) -> str | None:
    """Validate a JWT and return its subject, or None if it is not acceptable."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError as e:
        logger.warning("JWT validation failed", error=str(e))
        return None

    user_id = payload.get("sub")
    if not user_id:
        logger.warning("JWT payload missing user ID")
        return None
    return str(user_id)


def _extract_token(request: Request) -> str | None:
    # Prefer the httpOnly cookie, fall back to the Authorization header
    token = request.cookies.get(settings.COOKIE_ACCESS_TOKEN)
    if token:
        return token
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        parts = auth_header.split(" ")
        if len(parts) == 2:
            return parts[1]
    return None


class AuthMiddleware(BaseHTTPMiddleware):
    """JWT authentication middleware."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        """Process request and validate JWT token."""
        if request.method == "OPTIONS":
            return await call_next(request)

        if _is_public_path(request.url.path):
            return await call_next(request)

        token = _extract_token(request)
        if not token:
            if settings.AUTH_PERMISSIVE:
                request.state.user_id = settings.DEFAULT_USER_ID
                return await call_next(request)
            return _create_error_response(request, '{"detail": "Authentication required"}', 401)

        user_id = decode_access_token(token)
        if user_id is None:
            return _create_error_response(request, '{"detail": "Invalid or expired token"}', 401)

        request.state.user_id = user_id
        return await call_next(request)


def get_current_user_id(request: Request) -> str:
    """Get current user ID from request state.

    Args:
        request: The FastAPI request object

    Returns:
        The authenticated user's ID

    Raises:
        HTTPException: If user is not authenticated
    """
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return str(user_id)
