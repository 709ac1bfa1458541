"""Tests for authentication middleware."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from fastapi import FastAPI, HTTPException, Request
from fastapi.testclient import TestClient
from jose import jwt as jose_jwt

from unibox.config import settings
from unibox.middleware.auth import (
    PUBLIC_PATHS,
    AuthMiddleware,
    _is_public_path,
    create_access_token,
    decode_access_token,
    get_current_user_id,
)


class TestIsPublicPath:
    """Tests for _is_public_path function."""

    def test_exact_match_public_path(self) -> None:
        """Health is public only as an exact path."""
        assert _is_public_path("/health") is True
        assert _is_public_path("/healthz") is False

    def test_webhook_endpoints_are_public(self) -> None:
        """Webhooks authenticate with signatures, not JWTs."""
        assert _is_public_path("/api/webhooks/unipile") is True
        assert _is_public_path("/api/v1/webhooks/email") is True

    def test_prefix_boundaries(self) -> None:
        """A prefix match must end at a path boundary."""
        assert _is_public_path("/api/webhooksfoo") is False
        assert _is_public_path("/socket.io/") is True

    def test_channel_endpoints_require_auth(self) -> None:
        assert _is_public_path("/api/channels/usage") is False
        assert _is_public_path("/api/v1/channels/whatsapp/accounts") is False

    def test_public_paths_are_tuples(self) -> None:
        for path, is_prefix in PUBLIC_PATHS:
            assert path.startswith("/")
            assert isinstance(is_prefix, bool)


class TestTokens:
    """Tests for access token issue and validation."""

    def test_round_trip(self) -> None:
        token = create_access_token("user-42")
        assert decode_access_token(token) == "user-42"

    def test_expired_token(self) -> None:
        token = create_access_token("user-42", expires_delta=timedelta(seconds=-10))
        assert decode_access_token(token) is None

    def test_wrong_secret(self) -> None:
        token = jose_jwt.encode(
            {"sub": "user-42"}, "some-other-secret", algorithm=settings.JWT_ALGORITHM
        )
        assert decode_access_token(token) is None

    def test_missing_subject(self) -> None:
        """A signed token without ``sub`` is not a user token."""
        token = jose_jwt.encode(
            {"type": "access"}, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM
        )
        assert decode_access_token(token) is None

    def test_garbage(self) -> None:
        assert decode_access_token("not-a-jwt") is None


class TestGetCurrentUserId:
    def test_returns_user_id(self) -> None:
        request = MagicMock(spec=Request)
        request.state.user_id = "user-42"
        assert get_current_user_id(request) == "user-42"

    def test_missing_user_raises_401(self) -> None:
        request = MagicMock(spec=Request)
        request.state.user_id = None
        with pytest.raises(HTTPException) as exc_info:
            get_current_user_id(request)
        assert exc_info.value.status_code == 401


@pytest.fixture
def app() -> FastAPI:
    """Minimal app behind the auth middleware."""
    test_app = FastAPI()
    test_app.add_middleware(AuthMiddleware)

    @test_app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @test_app.get("/api/private")
    async def private(request: Request) -> dict[str, str]:
        return {"user_id": get_current_user_id(request)}

    return test_app


class TestAuthMiddleware:
    """Tests for AuthMiddleware dispatch."""

    def test_public_path_without_token(self, app: FastAPI) -> None:
        response = TestClient(app).get("/health")
        assert response.status_code == 200

    def test_private_path_without_token(self, app: FastAPI) -> None:
        response = TestClient(app).get("/api/private")
        assert response.status_code == 401
        assert response.json() == {"detail": "Authentication required"}

    def test_bearer_token(self, app: FastAPI) -> None:
        token = create_access_token("user-42")
        response = TestClient(app).get(
            "/api/private", headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 200
        assert response.json() == {"user_id": "user-42"}

    def test_cookie_token(self, app: FastAPI) -> None:
        client = TestClient(app)
        client.cookies.set(settings.COOKIE_ACCESS_TOKEN, create_access_token("user-42"))
        response = client.get("/api/private")
        assert response.json() == {"user_id": "user-42"}

    def test_invalid_token(self, app: FastAPI) -> None:
        response = TestClient(app).get(
            "/api/private", headers={"Authorization": "Bearer invalid"}
        )
        assert response.status_code == 401
        assert response.json() == {"detail": "Invalid or expired token"}

    def test_permissive_mode_maps_to_default_user(
        self, app: FastAPI, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Without a token, permissive mode uses the configured default user."""
        monkeypatch.setattr(settings, "AUTH_PERMISSIVE", True)
        response = TestClient(app).get("/api/private")
        assert response.json() == {"user_id": settings.DEFAULT_USER_ID}

    def test_options_passes_through(self, app: FastAPI) -> None:
        response = TestClient(app).options("/api/private")
        # No route handles OPTIONS, but the middleware does not answer 401
        assert response.status_code != 401
