"""Seed helpers, webhook payload builders and fakes shared by the tests."""

import asyncio
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from unibox.database.models import (
    ACCOUNT_CONNECTED,
    DIRECTION_OUT,
    ChannelAccount,
    ChannelConversation,
    ChannelEntitlement,
    ChannelMessage,
    UsageCounter,
)
from unibox.services.senders import OutboundMessage, SendResult
from unibox.services.usage_ledger import current_period
from unibox.utils.timeutil import utcnow
from unibox.websocket.broadcaster import SessionHandle

USER_ID = "user-1"
OTHER_USER_ID = "user-2"
EXTERNAL_ACCOUNT_ID = "acc-1"


# ============================================================================
# Seed helpers
# ============================================================================


async def seed_account(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    user_id: str = USER_ID,
    provider: str = "whatsapp",
    external_account_id: str = EXTERNAL_ACCOUNT_ID,
    status: str = ACCOUNT_CONNECTED,
    connection_data: dict[str, Any] | None = None,
) -> str:
    """Insert a channel account and return its id."""
    async with session_factory() as session:
        account = ChannelAccount(
            user_id=user_id,
            provider=provider,
            external_account_id=external_account_id,
            status=status,
            connection_data=connection_data or {"phone_number": "+15550001"},
            account_info={},
        )
        session.add(account)
        await session.commit()
        return account.id


async def seed_entitlement(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    user_id: str = USER_ID,
    provider: str = "whatsapp",
    limit: int = 100,
    source: str = "plan",
    limits: dict[str, Any] | None = None,
    expires_at: datetime | None = None,
    is_active: bool = True,
) -> None:
    async with session_factory() as session:
        session.add(
            ChannelEntitlement(
                user_id=user_id,
                provider=provider,
                source=source,
                is_active=is_active,
                expires_at=expires_at,
                limits=limits if limits is not None else {"messages_per_period": limit},
                entitlement_metadata={},
            )
        )
        await session.commit()


async def seed_counter(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    user_id: str = USER_ID,
    provider: str = "whatsapp",
    sent: int = 0,
    received: int = 0,
) -> None:
    async with session_factory() as session:
        session.add(
            UsageCounter(
                user_id=user_id,
                provider=provider,
                period=current_period(),
                messages_sent=sent,
                messages_received=received,
                usage_metrics={},
            )
        )
        await session.commit()


async def seed_conversation(
    session_factory: async_sessionmaker[AsyncSession],
    account_id: str,
    *,
    external_conversation_id: str = "chat-1",
) -> str:
    async with session_factory() as session:
        conversation = ChannelConversation(
            account_id=account_id,
            external_conversation_id=external_conversation_id,
            title="Chat",
            unread_count=0,
            status="active",
            chat_info={},
        )
        session.add(conversation)
        await session.commit()
        return conversation.id


async def seed_outbound_message(
    session_factory: async_sessionmaker[AsyncSession],
    conversation_id: str,
    *,
    external_message_id: str | None = "ext-out-1",
    status: str = "sent",
    sync_status: str = "synced",
    body: str = "hello from us",
) -> str:
    async with session_factory() as session:
        message = ChannelMessage(
            conversation_id=conversation_id,
            external_message_id=external_message_id,
            direction=DIRECTION_OUT,
            body=body,
            attachments=[],
            sent_at=utcnow(),
            status=status,
            provider_metadata={},
            sync_status=sync_status,
        )
        session.add(message)
        await session.commit()
        return message.id


async def fetch_counter(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    user_id: str = USER_ID,
    provider: str = "whatsapp",
) -> UsageCounter | None:
    async with session_factory() as session:
        result = await session.execute(
            select(UsageCounter).where(
                UsageCounter.user_id == user_id,
                UsageCounter.provider == provider,
                UsageCounter.period == current_period(),
            )
        )
        return result.scalar_one_or_none()


async def fetch_conversations(
    session_factory: async_sessionmaker[AsyncSession],
) -> list[ChannelConversation]:
    async with session_factory() as session:
        result = await session.execute(select(ChannelConversation))
        return list(result.scalars().all())


async def fetch_messages(
    session_factory: async_sessionmaker[AsyncSession],
    conversation_id: str | None = None,
) -> list[ChannelMessage]:
    async with session_factory() as session:
        query = select(ChannelMessage).order_by(ChannelMessage.sent_at.asc())
        if conversation_id:
            query = query.where(ChannelMessage.conversation_id == conversation_id)
        result = await session.execute(query)
        return list(result.scalars().all())


# ============================================================================
# Webhook payloads
# ============================================================================


def message_webhook(
    message_id: str | None = "m1",
    *,
    chat_id: str = "chat-1",
    account_id: str = EXTERNAL_ACCOUNT_ID,
    text: str = "Hello there",
    timestamp: str = "2024-05-01T10:00:00Z",
    **extra: Any,
) -> dict[str, Any]:
    """Wrapped relay new-message webhook."""
    data: dict[str, Any] = {
        "account_id": account_id,
        "account_type": "WHATSAPP",
        "chat_id": chat_id,
        "message": text,
        "timestamp": timestamp,
        "sender": {"attendee_id": "contact-9", "attendee_name": "Ada"},
        **extra,
    }
    if message_id is not None:
        data["message_id"] = message_id
    return {"event": "message.new", "data": data}


# ============================================================================
# Live sessions and senders
# ============================================================================


class RecordingSession:
    """A live session that records every event it is sent."""

    def __init__(self, sid: str, user_id: str = USER_ID) -> None:
        self.sid = sid
        self.user_id = user_id
        self.events: list[tuple[str, dict[str, Any]]] = []
        self.closed = False

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))

    async def close(self) -> None:
        self.closed = True

    def handle(self) -> SessionHandle:
        return SessionHandle(sid=self.sid, user_id=self.user_id, send=self.send, close=self.close)

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


async def wait_for_events(session: RecordingSession, count: int, timeout: float = 1.0) -> None:
    """Wait until ``session`` has recorded at least ``count`` events."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while len(session.events) < count:
        if loop.time() > deadline:
            raise AssertionError(f"expected {count} events, got {session.names()}")
        await asyncio.sleep(0.01)


class FakeSender:
    """Sender returning a configurable result and recording what it was given."""

    def __init__(self, result: SendResult | None = None, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.sent: list[OutboundMessage] = []

    async def send(self, message: OutboundMessage) -> SendResult:
        self.sent.append(message)
        if self.error is not None:
            raise self.error
        if self.result is not None:
            return self.result
        return SendResult(success=True, external_message_id=f"ext-{len(self.sent)}")


