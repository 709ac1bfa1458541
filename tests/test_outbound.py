"""Tests for the outbound send pipeline (metering, provider results, fan-out)."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from helpers import (
    OTHER_USER_ID,
    USER_ID,
    FakeSender,
    RecordingSession,
    fetch_conversations,
    fetch_counter,
    fetch_messages,
    seed_account,
    seed_conversation,
    seed_counter,
    seed_entitlement,
    wait_for_events,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from unibox.exceptions import (
    AccountNotConnected,
    ConversationNotFound,
    ExternalSendFailure,
    LimitExceeded,
    MessageNotFound,
    MessageNotRetryable,
    TransientStorageError,
)
from unibox.pipeline.outbound import OutboundService
from unibox.services.senders import SendResult
from unibox.websocket.broadcaster import FanoutBroadcaster


async def _conversation(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    limit: int = 50,
    sent: int = 0,
    status: str = "connected",
) -> str:
    account_id = await seed_account(session_factory, status=status)
    await seed_entitlement(session_factory, limit=limit)
    if sent:
        await seed_counter(session_factory, sent=sent)
    return await seed_conversation(session_factory, account_id)


@pytest.mark.integration
class TestSend:
    @pytest.mark.asyncio
    async def test_successful_send(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        outbound: OutboundService,
        broadcaster: FanoutBroadcaster,
        sender: FakeSender,
    ) -> None:
        conversation_id = await _conversation(session_factory)
        origin = RecordingSession("sid-origin")
        other = RecordingSession("sid-other")
        broadcaster.subscribe(USER_ID, origin.handle())
        broadcaster.subscribe(USER_ID, other.handle())

        outcome = await outbound.send(
            USER_ID, conversation_id, "Hi Ada", origin_sid="sid-origin"
        )

        assert outcome.send_result.success is True
        assert outcome.message.status == "sent"
        assert outcome.message.sync_status == "synced"
        assert outcome.message.external_message_id == "ext-1"
        assert outcome.payload["direction"] == "out"
        assert outcome.payload["from"] == "+15550001"
        assert outcome.payload["to"] == "chat-1"

        [delivered] = sender.sent
        assert delivered.body == "Hi Ada"
        assert delivered.external_account_id == "acc-1"
        assert delivered.external_conversation_id == "chat-1"

        counter = await fetch_counter(session_factory)
        assert counter is not None
        assert counter.messages_sent == 1

        [conversation] = await fetch_conversations(session_factory)
        assert conversation.last_message_at is not None

        await wait_for_events(other, 1)
        await asyncio.sleep(0.05)
        assert other.names() == ["new_message"]
        assert origin.events == []

    @pytest.mark.asyncio
    async def test_limit_reached_creates_no_message(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        outbound: OutboundService,
        sender: FakeSender,
    ) -> None:
        conversation_id = await _conversation(session_factory, limit=50, sent=50)

        with pytest.raises(LimitExceeded) as exc_info:
            await outbound.send(USER_ID, conversation_id, "one too many")

        assert exc_info.value.limit == 50
        assert exc_info.value.sent == 50
        assert exc_info.value.provider == "whatsapp"
        assert sender.sent == []
        assert await fetch_messages(session_factory) == []

    @pytest.mark.asyncio
    async def test_no_entitlement_means_no_sends(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        outbound: OutboundService,
    ) -> None:
        account_id = await seed_account(session_factory)
        conversation_id = await seed_conversation(session_factory, account_id)

        with pytest.raises(LimitExceeded) as exc_info:
            await outbound.send(USER_ID, conversation_id, "hello")
        assert exc_info.value.limit == 0

    @pytest.mark.asyncio
    async def test_provider_failure_is_recorded_and_still_counted(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        outbound: OutboundService,
        sender: FakeSender,
    ) -> None:
        conversation_id = await _conversation(session_factory)
        sender.result = SendResult(success=False, error="recipient unreachable")

        with pytest.raises(ExternalSendFailure) as exc_info:
            await outbound.send(USER_ID, conversation_id, "Hi")

        assert exc_info.value.detail == "recipient unreachable"
        [message] = await fetch_messages(session_factory)
        assert exc_info.value.message_id == message.id
        assert message.status == "failed"
        assert message.sync_status == "failed"
        assert message.sync_attempts == 1
        assert message.provider_metadata["last_error"] == "recipient unreachable"

        counter = await fetch_counter(session_factory)
        assert counter is not None
        assert counter.messages_sent == 1

    @pytest.mark.asyncio
    async def test_sender_exception_is_a_failed_send(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        outbound: OutboundService,
        sender: FakeSender,
    ) -> None:
        conversation_id = await _conversation(session_factory)
        sender.error = ConnectionError("relay down")

        with pytest.raises(ExternalSendFailure) as exc_info:
            await outbound.send(USER_ID, conversation_id, "Hi")

        assert "relay down" in exc_info.value.detail
        [message] = await fetch_messages(session_factory)
        assert message.status == "failed"

    @pytest.mark.asyncio
    async def test_foreign_conversation_is_not_found(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        outbound: OutboundService,
        sender: FakeSender,
    ) -> None:
        conversation_id = await _conversation(session_factory)

        with pytest.raises(ConversationNotFound):
            await outbound.send(OTHER_USER_ID, conversation_id, "Hi")

        assert sender.sent == []
        assert await fetch_counter(session_factory) is None

    @pytest.mark.asyncio
    async def test_disconnected_account_cannot_send(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        outbound: OutboundService,
    ) -> None:
        conversation_id = await _conversation(session_factory, status="needs_action")

        with pytest.raises(AccountNotConnected) as exc_info:
            await outbound.send(USER_ID, conversation_id, "Hi")

        assert exc_info.value.status == "needs_action"
        assert await fetch_counter(session_factory) is None

    @pytest.mark.asyncio
    async def test_reply_to_unknown_message_reserves_nothing(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        outbound: OutboundService,
    ) -> None:
        conversation_id = await _conversation(session_factory)

        with pytest.raises(MessageNotFound):
            await outbound.send(USER_ID, conversation_id, "Hi", reply_to_message_id="nope")

        assert await fetch_counter(session_factory) is None

    @pytest.mark.asyncio
    async def test_reply_links_parent(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        outbound: OutboundService,
        sender: FakeSender,
    ) -> None:
        conversation_id = await _conversation(session_factory)
        first = await outbound.send(USER_ID, conversation_id, "first")

        reply = await outbound.send(
            USER_ID, conversation_id, "second", reply_to_message_id=first.message.id
        )

        assert reply.message.parent_message_id == first.message.id
        assert reply.message.is_reply is True
        assert sender.sent[1].reply_to_external_id == "ext-1"
        messages = {m.id: m for m in await fetch_messages(session_factory)}
        assert messages[first.message.id].reply_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_sends_at_last_slot(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        outbound: OutboundService,
    ) -> None:
        conversation_id = await _conversation(session_factory, limit=50, sent=49)

        results = await asyncio.gather(
            outbound.send(USER_ID, conversation_id, "a"),
            outbound.send(USER_ID, conversation_id, "b"),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, BaseException)]
        rejections = [r for r in results if isinstance(r, LimitExceeded)]
        assert len(successes) == 1
        assert len(rejections) == 1
        counter = await fetch_counter(session_factory)
        assert counter is not None
        assert counter.messages_sent == 50
        assert len(await fetch_messages(session_factory)) == 1


@pytest.mark.integration
class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_failed_message(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        outbound: OutboundService,
        sender: FakeSender,
    ) -> None:
        conversation_id = await _conversation(session_factory)
        sender.result = SendResult(success=False, error="timeout")
        with pytest.raises(ExternalSendFailure) as exc_info:
            await outbound.send(USER_ID, conversation_id, "Hi")
        message_id = exc_info.value.message_id
        assert message_id is not None

        sender.result = SendResult(success=True, external_message_id="ext-retry")
        outcome = await outbound.retry(USER_ID, message_id)

        assert outcome.message.id == message_id
        assert outcome.message.status == "sent"
        assert outcome.message.sync_status == "synced"
        assert outcome.message.external_message_id == "ext-retry"
        assert len(await fetch_messages(session_factory)) == 1

        # Each attempt is metered
        counter = await fetch_counter(session_factory)
        assert counter is not None
        assert counter.messages_sent == 2

    @pytest.mark.asyncio
    async def test_sent_message_is_not_retryable(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        outbound: OutboundService,
    ) -> None:
        conversation_id = await _conversation(session_factory)
        outcome = await outbound.send(USER_ID, conversation_id, "Hi")

        with pytest.raises(MessageNotRetryable):
            await outbound.retry(USER_ID, outcome.message.id)

    @pytest.mark.asyncio
    async def test_retry_of_foreign_message_is_not_found(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        outbound: OutboundService,
        sender: FakeSender,
    ) -> None:
        conversation_id = await _conversation(session_factory)
        sender.result = SendResult(success=False, error="timeout")
        with pytest.raises(ExternalSendFailure) as exc_info:
            await outbound.send(USER_ID, conversation_id, "Hi")
        assert exc_info.value.message_id is not None

        with pytest.raises(MessageNotFound):
            await outbound.retry(OTHER_USER_ID, exc_info.value.message_id)

    @pytest.mark.asyncio
    async def test_concurrent_retries_send_once(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        outbound: OutboundService,
        sender: FakeSender,
    ) -> None:
        conversation_id = await _conversation(session_factory)
        sender.result = SendResult(success=False, error="timeout")
        with pytest.raises(ExternalSendFailure) as exc_info:
            await outbound.send(USER_ID, conversation_id, "Hi")
        message_id = exc_info.value.message_id
        assert message_id is not None
        sender.result = SendResult(success=True, external_message_id="ext-retry")

        results = await asyncio.gather(
            outbound.retry(USER_ID, message_id),
            outbound.retry(USER_ID, message_id),
            return_exceptions=True,
        )

        assert sorted(type(r).__name__ for r in results) == [
            "MessageNotRetryable",
            "SendOutcome",
        ]
        # The original attempt plus exactly one retry reached the provider
        assert len(sender.sent) == 2
        counter = await fetch_counter(session_factory)
        assert counter is not None
        assert counter.messages_sent == 2
        [message] = await fetch_messages(session_factory)
        assert message.status == "sent"

    @pytest.mark.asyncio
    async def test_refused_retry_leaves_message_failed(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        outbound: OutboundService,
        sender: FakeSender,
    ) -> None:
        conversation_id = await _conversation(session_factory, limit=1)
        sender.result = SendResult(success=False, error="timeout")
        with pytest.raises(ExternalSendFailure) as exc_info:
            await outbound.send(USER_ID, conversation_id, "Hi")
        message_id = exc_info.value.message_id
        assert message_id is not None

        with pytest.raises(LimitExceeded):
            await outbound.retry(USER_ID, message_id)

        assert len(sender.sent) == 1
        [message] = await fetch_messages(session_factory)
        assert message.status == "failed"
        assert message.sync_status == "failed"


@pytest.mark.integration
class TestUnrecordedSendResult:
    """The provider answered but the result could not be stored."""

    @pytest.fixture
    def lost_result(
        self, outbound: OutboundService, monkeypatch: pytest.MonkeyPatch
    ) -> AsyncMock:
        apply_result = AsyncMock(
            side_effect=TransientStorageError("record send result", 5, "database is locked")
        )
        monkeypatch.setattr(outbound, "_apply_result", apply_result)
        return apply_result

    @pytest.mark.asyncio
    async def test_accepted_send_is_flagged_for_reconciliation(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        outbound: OutboundService,
        sender: FakeSender,
        lost_result: AsyncMock,
    ) -> None:
        conversation_id = await _conversation(session_factory)

        with pytest.raises(TransientStorageError):
            await outbound.send(USER_ID, conversation_id, "Hi")

        assert len(sender.sent) == 1
        [message] = await fetch_messages(session_factory)
        assert message.sync_status == "failed"
        assert message.sync_attempts == 1
        assert message.provider_metadata["unrecorded_send"]["external_message_id"] == "ext-1"
        # Already delivered, so a retry must not send it again
        assert message.status == "pending"
        with pytest.raises(MessageNotRetryable):
            await outbound.retry(USER_ID, message.id)

    @pytest.mark.asyncio
    async def test_rejected_send_stays_retryable(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        outbound: OutboundService,
        sender: FakeSender,
        lost_result: AsyncMock,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        conversation_id = await _conversation(session_factory)
        sender.result = SendResult(success=False, error="timeout")

        with pytest.raises(TransientStorageError):
            await outbound.send(USER_ID, conversation_id, "Hi")

        [message] = await fetch_messages(session_factory)
        assert message.status == "failed"
        assert message.sync_status == "failed"

        monkeypatch.undo()
        sender.result = SendResult(success=True, external_message_id="ext-retry")
        outcome = await outbound.retry(USER_ID, message.id)
        assert outcome.message.status == "sent"
