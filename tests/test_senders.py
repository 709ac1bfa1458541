"""Tests for outbound senders (registry, relay client, email)."""

import json

import httpx
import pytest
from helpers import FakeSender

from unibox.exceptions import ProviderHTTPError, ProviderNotConfiguredError
from unibox.services.email import EmailSender, _threading_headers
from unibox.services.senders import OutboundMessage, SenderRegistry, SendResult
from unibox.services.unipile_client import UnipileClient, UnipileSender


def _message(**overrides: object) -> OutboundMessage:
    values: dict[str, object] = {
        "provider": "whatsapp",
        "external_account_id": "acc-1",
        "external_conversation_id": "chat-1",
        "body": "Hello",
    }
    values.update(overrides)
    return OutboundMessage(**values)  # type: ignore[arg-type]


def _relay(handler: httpx.MockTransport) -> UnipileClient:
    client = httpx.AsyncClient(transport=handler, base_url="https://relay.test")
    return UnipileClient(api_key="relay-key", client=client)


@pytest.mark.unit
class TestSenderRegistry:
    @pytest.mark.asyncio
    async def test_provider_specific_sender_wins(self) -> None:
        default, email = FakeSender(), FakeSender()
        registry = SenderRegistry(default=default)
        registry.register("email", email)

        await registry.send(_message(provider="email"))
        await registry.send(_message(provider="telegram"))

        assert len(email.sent) == 1
        assert len(default.sent) == 1

    @pytest.mark.asyncio
    async def test_missing_sender_is_a_failed_send(self) -> None:
        result = await SenderRegistry().send(_message())
        assert result.success is False
        assert "whatsapp" in (result.error or "")


@pytest.mark.unit
class TestUnipileSender:
    @pytest.mark.asyncio
    async def test_sends_into_chat(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"data": {"message_id": "wa-99"}})

        sender = UnipileSender(_relay(httpx.MockTransport(handler)))

        result = await sender.send(_message(reply_to_external_id="wa-1"))

        assert result == SendResult(
            success=True, external_message_id="wa-99", raw={"message_id": "wa-99"}
        )
        [request] = seen
        assert request.url.path == "/api/v1/accounts/acc-1/chats/chat-1/messages"
        assert request.headers["X-API-KEY"] == "relay-key"
        assert json.loads(request.content) == {"text": "Hello", "type": "text", "quote_id": "wa-1"}

    @pytest.mark.asyncio
    async def test_http_error_is_a_failed_send(self) -> None:
        def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(422, text="chat not found")

        sender = UnipileSender(_relay(httpx.MockTransport(handler)))

        result = await sender.send(_message())

        assert result.success is False
        assert "chat not found" in (result.error or "")
        assert result.raw == {"status_code": 422}

    @pytest.mark.asyncio
    async def test_client_raises_http_error(self) -> None:
        def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="boom")

        with pytest.raises(ProviderHTTPError) as exc_info:
            await _relay(httpx.MockTransport(handler)).send_message("acc-1", "chat-1", "Hi")
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_missing_api_key(self) -> None:
        client = UnipileClient(api_key="", client=httpx.AsyncClient(base_url="https://relay.test"))
        with pytest.raises(ProviderNotConfiguredError):
            await client.send_message("acc-1", "chat-1", "Hi")


@pytest.mark.unit
class TestEmailSender:
    @pytest.mark.asyncio
    async def test_console_backend_replies_to_conversation_sender(self) -> None:
        sender = EmailSender(backend="console")
        message = _message(
            provider="email",
            external_conversation_id="<root@example.com>",
            chat_info={"sender": {"address": "ada@example.com"}},
        )

        result = await sender.send(message)

        assert result.success is True
        assert result.external_message_id is not None

    @pytest.mark.asyncio
    async def test_no_recipient_is_a_failed_send(self) -> None:
        sender = EmailSender(backend="console")

        result = await sender.send(_message(provider="email", external_conversation_id="thread-1"))

        assert result.success is False

    def test_threading_headers(self) -> None:
        headers = _threading_headers(
            _message(thread_id="<root@example.com>", reply_to_external_id="<b@example.com>")
        )
        assert headers == {
            "In-Reply-To": "<b@example.com>",
            "References": "<root@example.com> <b@example.com>",
        }

    def test_no_threading_headers_for_new_thread(self) -> None:
        assert _threading_headers(_message()) == {}
