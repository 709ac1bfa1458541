"""User actions on inbox state: ownership lookups, mark read, delete.

Writes go through the same conversation critical section as ingestion so
the unread count is never recomputed concurrently.
"""

from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from unibox.config import settings
from unibox.database.connection import async_session_factory
from unibox.database.models import ChannelAccount, ChannelConversation, ChannelMessage
from unibox.database.retry import run_with_storage_retry
from unibox.exceptions import AccountNotFound, ConversationNotFound, MessageNotFound
from unibox.pipeline import conversation as state
from unibox.pipeline.locks import KeyedLocks, conversation_locks
from unibox.websocket.broadcaster import FanoutBroadcaster, get_broadcaster
from unibox.websocket.payloads import EVENT_CONVERSATION_READ, EVENT_MESSAGE_DELETED

logger = structlog.get_logger()


async def get_owned_account(db: AsyncSession, user_id: str, account_id: str) -> ChannelAccount:
    result = await db.execute(
        select(ChannelAccount).where(
            ChannelAccount.id == account_id,
            ChannelAccount.user_id == user_id,
        )
    )
    account = result.scalar_one_or_none()
    if account is None:
        raise AccountNotFound(account_id)
    return account


async def get_owned_conversation(
    db: AsyncSession, user_id: str, conversation_id: str
) -> ChannelConversation:
    """Load a conversation if it belongs to one of the user's accounts."""
    result = await db.execute(
        select(ChannelConversation)
        .join(ChannelAccount, ChannelAccount.id == ChannelConversation.account_id)
        .where(
            ChannelConversation.id == conversation_id,
            ChannelAccount.user_id == user_id,
        )
        .execution_options(populate_existing=True)
    )
    conversation = result.scalar_one_or_none()
    if conversation is None:
        raise ConversationNotFound(conversation_id)
    return conversation


async def get_owned_message(db: AsyncSession, user_id: str, message_id: str) -> ChannelMessage:
    result = await db.execute(
        select(ChannelMessage)
        .join(ChannelConversation, ChannelConversation.id == ChannelMessage.conversation_id)
        .join(ChannelAccount, ChannelAccount.id == ChannelConversation.account_id)
        .where(
            ChannelMessage.id == message_id,
            ChannelMessage.is_deleted.is_(False),
            ChannelAccount.user_id == user_id,
        )
    )
    message = result.scalar_one_or_none()
    if message is None:
        raise MessageNotFound(message_id)
    return message


class InboxActions:
    """Read and delete actions with fan-out to the user's sessions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        broadcaster: FanoutBroadcaster | None = None,
        locks: KeyedLocks | None = None,
        lock_timeout: float | None = None,
    ) -> None:
        self._session_factory = session_factory or async_session_factory
        self._broadcaster = broadcaster or get_broadcaster()
        self._locks = locks if locks is not None else conversation_locks
        self._lock_timeout = lock_timeout or settings.CONVERSATION_LOCK_TIMEOUT

    async def mark_read(
        self,
        user_id: str,
        conversation_id: str,
        message_ids: list[str] | None = None,
        origin_sid: str | None = None,
    ) -> dict[str, Any]:
        """Mark inbound messages read and tell the user's other sessions."""
        async with self._locks.hold(conversation_id, self._lock_timeout):
            payload = await run_with_storage_retry(
                "mark conversation read",
                lambda: self._mark_read(user_id, conversation_id, message_ids),
            )
        self._broadcaster.publish(
            user_id, EVENT_CONVERSATION_READ, payload, exclude_sid=origin_sid
        )
        return payload

    async def _mark_read(
        self, user_id: str, conversation_id: str, message_ids: list[str] | None
    ) -> dict[str, Any]:
        async with self._session_factory() as db:
            await get_owned_conversation(db, user_id, conversation_id)
            await state.lock_conversation(db, conversation_id)
            marked = await state.mark_read(db, conversation_id, message_ids)
            conversation = await get_owned_conversation(db, user_id, conversation_id)
            await db.commit()
            logger.info(
                "Conversation marked read",
                conversation_id=conversation_id,
                marked=marked,
                unread_count=conversation.unread_count,
            )
            return {
                "conversation_id": conversation_id,
                "marked": marked,
                "unread_count": conversation.unread_count,
            }

    async def delete_message(
        self, user_id: str, message_id: str, origin_sid: str | None = None
    ) -> str:
        """Soft-delete a message and tell the user's other sessions.

        Returns:
            The message's conversation id.
        """
        conversation_id = await run_with_storage_retry(
            "locate message", lambda: self._message_conversation(user_id, message_id)
        )
        async with self._locks.hold(conversation_id, self._lock_timeout):
            unread_count = await run_with_storage_retry(
                "delete message", lambda: self._soft_delete(conversation_id, message_id)
            )
        logger.info("Message deleted", message_id=message_id, conversation_id=conversation_id)
        self._broadcaster.publish(
            user_id,
            EVENT_MESSAGE_DELETED,
            {
                "message_id": message_id,
                "conversation_id": conversation_id,
                "unread_count": unread_count,
            },
            exclude_sid=origin_sid,
        )
        return conversation_id

    async def _message_conversation(self, user_id: str, message_id: str) -> str:
        async with self._session_factory() as db:
            message = await get_owned_message(db, user_id, message_id)
            return message.conversation_id

    async def _soft_delete(self, conversation_id: str, message_id: str) -> int:
        async with self._session_factory() as db:
            await state.lock_conversation(db, conversation_id)
            unread_count = await state.soft_delete(db, conversation_id, message_id)
            await db.commit()
            return unread_count


_actions: InboxActions | None = None


def get_inbox_actions() -> InboxActions:
    global _actions
    if _actions is None:
        _actions = InboxActions()
    return _actions
