"""Client for the UniPile relay API.

Only the calls the inbox needs are implemented: sending a message into an
existing chat. The HTTP client is shared across requests and closed by the
application lifespan.
"""

import asyncio
import random
from http import HTTPStatus
from typing import Any

import httpx
import structlog

from unibox.config import settings
from unibox.exceptions import (
    ProviderClientError,
    ProviderConnectionError,
    ProviderHTTPError,
    ProviderNotConfiguredError,
)
from unibox.services.senders import OutboundMessage, SendResult

logger = structlog.get_logger()

# Connection errors are retried; HTTP error responses are not
MAX_CONNECT_RETRIES = 2
RETRY_INITIAL_DELAY = 0.5


class _HttpClientManager:
    """Manager for the shared HTTP client with lazy initialization."""

    _instance: httpx.AsyncClient | None = None

    @classmethod
    def get(cls) -> httpx.AsyncClient:
        if cls._instance is None:
            cls._instance = httpx.AsyncClient(
                base_url=settings.UNIPILE_BASE_URL,
                timeout=httpx.Timeout(settings.HTTP_TIMEOUT_UNIPILE, connect=10.0),
            )
        return cls._instance

    @classmethod
    async def close(cls) -> None:
        if cls._instance is not None:
            await cls._instance.aclose()
            cls._instance = None


def get_http_client() -> httpx.AsyncClient:
    """Get or create the shared HTTP client."""
    return _HttpClientManager.get()


async def close_http_client() -> None:
    """Close the HTTP client on shutdown."""
    await _HttpClientManager.close()


class UnipileClient:
    """Thin wrapper over the relay's REST API."""

    def __init__(
        self,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else settings.UNIPILE_API_KEY
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client or get_http_client()

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            raise ProviderNotConfiguredError
        return {"X-API-KEY": self._api_key, "accept": "application/json"}

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Make a request, retrying connection failures with backoff."""
        kwargs["headers"] = {**kwargs.get("headers", {}), **self._headers()}
        retry_delay = RETRY_INITIAL_DELAY

        for attempt in range(MAX_CONNECT_RETRIES + 1):
            try:
                response = await self.client.request(method, path, **kwargs)
                response.raise_for_status()
                if response.status_code == HTTPStatus.NO_CONTENT:
                    return None
                return response.json()
            except httpx.HTTPStatusError as e:
                logger.warning(
                    "Relay API HTTP error",
                    path=path,
                    status_code=e.response.status_code,
                    detail=e.response.text[:500],
                )
                raise ProviderHTTPError(e.response.status_code, e.response.text) from e
            except httpx.RequestError as e:
                if attempt >= MAX_CONNECT_RETRIES:
                    logger.warning(
                        "Relay API unreachable after retries",
                        path=path,
                        attempts=attempt + 1,
                        error=str(e),
                    )
                    raise ProviderConnectionError(str(e)) from e
                jitter = random.uniform(0, retry_delay * 0.5)
                logger.info(
                    "Relay API connection error, retrying",
                    path=path,
                    attempt=attempt + 1,
                    retry_in=retry_delay + jitter,
                )
                await asyncio.sleep(retry_delay + jitter)
                retry_delay *= 2

        raise ProviderConnectionError(f"Request failed after {MAX_CONNECT_RETRIES + 1} attempts")

    async def send_message(
        self,
        account_id: str,
        chat_id: str,
        text: str,
        attachments: list[dict[str, Any]] | None = None,
        quote_id: str | None = None,
    ) -> dict[str, Any]:
        """Send a text message into an existing chat.

        Returns:
            The relay's response body (``data`` unwrapped when present).
        """
        body: dict[str, Any] = {"text": text, "type": "text"}
        if attachments:
            body["attachments"] = attachments
        if quote_id:
            body["quote_id"] = quote_id
        result = await self._request(
            "POST",
            f"/api/v1/accounts/{account_id}/chats/{chat_id}/messages",
            json=body,
        )
        if isinstance(result, dict) and isinstance(result.get("data"), dict):
            return dict(result["data"])
        return dict(result or {})


class UnipileSender:
    """MessageSender for every provider reached through the relay."""

    def __init__(self, client: UnipileClient | None = None) -> None:
        self._client = client or UnipileClient()

    async def send(self, message: OutboundMessage) -> SendResult:
        try:
            response = await self._client.send_message(
                message.external_account_id,
                message.external_conversation_id,
                message.body,
                attachments=message.attachments or None,
                quote_id=message.reply_to_external_id,
            )
        except ProviderClientError as e:
            return SendResult(success=False, error=e.message, raw={"status_code": e.status_code})

        external_id = response.get("message_id") or response.get("provider_id") or response.get("id")
        return SendResult(
            success=True,
            external_message_id=str(external_id) if external_id else None,
            raw=response,
        )
