"""Outbound send pipeline.

request -> ownership and account checks -> reserve usage (commit)
-> pending message (commit) -> external send -> record result (commit)
-> fan-out to the user's other sessions

The reservation is taken before the provider is contacted and is never
given back, so a failed send still counts against the limit.
"""

from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from unibox.config import settings
from unibox.database.connection import async_session_factory
from unibox.database.models import (
    ACCOUNT_CONNECTED,
    DIRECTION_OUT,
    ChannelAccount,
    ChannelConversation,
    ChannelMessage,
)
from unibox.database.retry import run_with_storage_retry
from unibox.exceptions import (
    AccountNotConnected,
    ConversationNotFound,
    ExternalSendFailure,
    LimitExceeded,
    MessageNotFound,
    MessageNotRetryable,
    TransientStorageError,
)
from unibox.pipeline import conversation as state
from unibox.pipeline.locks import KeyedLocks, conversation_locks
from unibox.services import usage_ledger
from unibox.services.email import get_email_sender
from unibox.services.senders import OutboundMessage, SenderRegistry, SendResult
from unibox.services.unipile_client import UnipileSender
from unibox.websocket.broadcaster import FanoutBroadcaster, get_broadcaster
from unibox.websocket.payloads import EVENT_NEW_MESSAGE, message_payload

logger = structlog.get_logger()


@dataclass(frozen=True)
class _SendTarget:
    user_id: str
    account_id: str
    account_status: str
    provider: str
    external_account_id: str
    conversation_id: str
    external_conversation_id: str
    connection_data: dict[str, Any] = field(default_factory=dict)
    chat_info: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class _PendingMessage:
    message_id: str
    parent_external_id: str | None
    thread_id: str | None


@dataclass
class SendOutcome:
    """A recorded outbound message and the provider's answer."""

    message: ChannelMessage
    send_result: SendResult
    payload: dict[str, Any]


def build_sender_registry() -> SenderRegistry:
    """Relay providers go through UniPile; email has its own sender."""
    registry = SenderRegistry(default=UnipileSender())
    registry.register("email", get_email_sender())
    return registry


class OutboundService:
    """Sends user messages through providers with usage metering."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        broadcaster: FanoutBroadcaster | None = None,
        registry: SenderRegistry | None = None,
        locks: KeyedLocks | None = None,
        lock_timeout: float | None = None,
    ) -> None:
        self._session_factory = session_factory or async_session_factory
        self._broadcaster = broadcaster or get_broadcaster()
        self._registry = registry or build_sender_registry()
        self._locks = locks if locks is not None else conversation_locks
        self._lock_timeout = lock_timeout or settings.CONVERSATION_LOCK_TIMEOUT

    async def send(
        self,
        user_id: str,
        conversation_id: str,
        body: str,
        attachments: list[dict[str, Any]] | None = None,
        subject: str | None = None,
        reply_to_message_id: str | None = None,
        origin_sid: str | None = None,
    ) -> SendOutcome:
        """Send a message into one of the user's conversations.

        Raises:
            ConversationNotFound: Unknown conversation or owned by someone else.
            MessageNotFound: ``reply_to_message_id`` is not in this conversation.
            AccountNotConnected: The conversation's account cannot send.
            LimitExceeded: The period's send limit is used up.
            ExternalSendFailure: The provider did not accept the message; it
                is recorded as failed.
            TransientStorageError: Storage stayed unavailable.
        """
        target = await run_with_storage_retry(
            "load send target",
            lambda: self._load_target(user_id, conversation_id, reply_to_message_id),
        )
        self._require_connected(target)
        await self._reserve(target)

        async with self._locks.hold(conversation_id, self._lock_timeout):
            pending = await run_with_storage_retry(
                "record pending message",
                lambda: self._record_pending(
                    target, body, attachments, subject, reply_to_message_id, user_id
                ),
            )

        outbound = self._outbound_message(
            target,
            body=body,
            subject=subject,
            attachments=attachments or [],
            reply_to_external_id=pending.parent_external_id,
            thread_id=pending.thread_id,
        )
        message_id = pending.message_id
        return await self._deliver_and_record(target, message_id, outbound, origin_sid)

    async def retry(
        self,
        user_id: str,
        message_id: str,
        origin_sid: str | None = None,
    ) -> SendOutcome:
        """Send a failed outbound message again.

        The message is claimed first, under the conversation lock, so only one
        of several concurrent retries reaches the provider. A retry is a new
        send for metering purposes: it reserves again. When the reservation is
        refused the claim is given back and the message stays failed.
        """
        message, target = await run_with_storage_retry(
            "load retry target", lambda: self._load_retry_target(user_id, message_id)
        )
        if message.direction != DIRECTION_OUT or message.status != state.STATUS_FAILED:
            raise MessageNotRetryable(message_id, message.status)
        self._require_connected(target)

        async with self._locks.hold(target.conversation_id, self._lock_timeout):
            claimed, current_status, parent_external_id = await run_with_storage_retry(
                "claim message retry", lambda: self._claim_retry(message)
            )
        if not claimed:
            raise MessageNotRetryable(message_id, current_status)

        try:
            await self._reserve(target)
        except (LimitExceeded, TransientStorageError):
            async with self._locks.hold(target.conversation_id, self._lock_timeout):
                await run_with_storage_retry(
                    "release message retry", lambda: self._release_retry(message)
                )
            raise

        outbound = self._outbound_message(
            target,
            body=message.body,
            subject=message.subject,
            attachments=list(message.attachments or []),
            reply_to_external_id=parent_external_id,
            thread_id=message.thread_id,
        )
        logger.info("Retrying outbound message", message_id=message_id, user_id=user_id)
        return await self._deliver_and_record(target, message_id, outbound, origin_sid)

    # ------------------------------------------------------------------

    @staticmethod
    def _require_connected(target: _SendTarget) -> None:
        if target.account_status != ACCOUNT_CONNECTED:
            raise AccountNotConnected(target.account_id, target.account_status)

    async def _reserve(self, target: _SendTarget) -> None:
        reservation = await run_with_storage_retry(
            "reserve send", lambda: self._reserve_once(target)
        )
        if not reservation.reserved:
            raise LimitExceeded(
                target.provider, reservation.sent, reservation.limit, reservation.period
            )

    async def _reserve_once(self, target: _SendTarget) -> usage_ledger.SendReservation:
        async with self._session_factory() as db:
            reservation = await usage_ledger.reserve_send(db, target.user_id, target.provider)
            await db.commit()
            return reservation

    async def _load_target(
        self,
        user_id: str,
        conversation_id: str,
        reply_to_message_id: str | None = None,
    ) -> _SendTarget:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ChannelConversation, ChannelAccount)
                .join(ChannelAccount, ChannelAccount.id == ChannelConversation.account_id)
                .where(
                    ChannelConversation.id == conversation_id,
                    ChannelAccount.user_id == user_id,
                )
            )
            row = result.one_or_none()
            if row is None:
                raise ConversationNotFound(conversation_id)
            conversation, account = row

            # Validate the reply target before any usage is reserved
            if reply_to_message_id:
                parent = await db.execute(
                    select(ChannelMessage.id).where(
                        ChannelMessage.id == reply_to_message_id,
                        ChannelMessage.conversation_id == conversation_id,
                    )
                )
                if parent.scalar_one_or_none() is None:
                    raise MessageNotFound(reply_to_message_id)
            return _SendTarget(
                user_id=account.user_id,
                account_id=account.id,
                account_status=account.status,
                provider=account.provider,
                external_account_id=account.external_account_id,
                conversation_id=conversation.id,
                external_conversation_id=conversation.external_conversation_id,
                connection_data=dict(account.connection_data or {}),
                chat_info=dict(conversation.chat_info or {}),
            )

    async def _load_retry_target(
        self, user_id: str, message_id: str
    ) -> tuple[ChannelMessage, _SendTarget]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ChannelMessage.conversation_id)
                .join(
                    ChannelConversation,
                    ChannelConversation.id == ChannelMessage.conversation_id,
                )
                .join(ChannelAccount, ChannelAccount.id == ChannelConversation.account_id)
                .where(
                    ChannelMessage.id == message_id,
                    ChannelMessage.is_deleted.is_(False),
                    ChannelAccount.user_id == user_id,
                )
            )
            conversation_id = result.scalar_one_or_none()
            if conversation_id is None:
                raise MessageNotFound(message_id)
            message = await state.get_message(db, message_id)
        target = await self._load_target(user_id, str(conversation_id))
        return message, target

    async def _record_pending(
        self,
        target: _SendTarget,
        body: str,
        attachments: list[dict[str, Any]] | None,
        subject: str | None,
        reply_to_message_id: str | None,
        sender_id: str,
    ) -> _PendingMessage:
        async with self._session_factory() as db:
            await state.lock_conversation(db, target.conversation_id)
            message = await state.create_outbound(
                db,
                target.conversation_id,
                body,
                subject=subject,
                attachments=attachments,
                parent_message_id=reply_to_message_id,
                sender_id=sender_id,
            )
            parent_external_id = None
            if reply_to_message_id:
                parent = await state.get_message(db, reply_to_message_id)
                parent_external_id = parent.external_message_id
            await db.commit()
            return _PendingMessage(message.id, parent_external_id, message.thread_id)

    async def _claim_retry(self, message: ChannelMessage) -> tuple[bool, str, str | None]:
        async with self._session_factory() as db:
            await state.lock_conversation(db, message.conversation_id)
            if not await state.claim_retry(db, message.id):
                current = await state.get_message(db, message.id)
                await db.rollback()
                return False, current.status, None
            parent_external_id = None
            if message.parent_message_id:
                parent = await state.get_message(db, message.parent_message_id)
                parent_external_id = parent.external_message_id
            await db.commit()
            return True, state.STATUS_PENDING, parent_external_id

    async def _release_retry(self, message: ChannelMessage) -> None:
        async with self._session_factory() as db:
            await state.lock_conversation(db, message.conversation_id)
            await state.release_retry(db, message.id)
            await db.commit()

    @staticmethod
    def _outbound_message(
        target: _SendTarget,
        *,
        body: str,
        subject: str | None,
        attachments: list[dict[str, Any]],
        reply_to_external_id: str | None,
        thread_id: str | None,
    ) -> OutboundMessage:
        return OutboundMessage(
            provider=target.provider,
            external_account_id=target.external_account_id,
            external_conversation_id=target.external_conversation_id,
            body=body,
            subject=subject,
            attachments=attachments,
            reply_to_external_id=reply_to_external_id,
            thread_id=thread_id,
            connection_data=target.connection_data,
            chat_info=target.chat_info,
        )

    async def _deliver(self, message_id: str, outbound: OutboundMessage) -> SendResult:
        """Hand the message to its provider; any sender error is a failed send."""
        try:
            return await self._registry.send(outbound)
        except Exception as e:
            logger.exception(
                "Sender raised while delivering message",
                message_id=message_id,
                provider=outbound.provider,
            )
            return SendResult(success=False, error=str(e) or type(e).__name__)

    async def _deliver_and_record(
        self,
        target: _SendTarget,
        message_id: str,
        outbound: OutboundMessage,
        origin_sid: str | None,
    ) -> SendOutcome:
        send_result = await self._deliver(message_id, outbound)

        try:
            async with self._locks.hold(target.conversation_id, self._lock_timeout):
                message, payload = await run_with_storage_retry(
                    "record send result",
                    lambda: self._apply_result(target, message_id, send_result),
                )
        except TransientStorageError:
            await self._flag_unrecorded(target, message_id, send_result)
            raise

        try:
            self._broadcaster.publish(
                target.user_id, EVENT_NEW_MESSAGE, payload, exclude_sid=origin_sid
            )
        except Exception:
            logger.exception("Fan-out publish failed", user_id=target.user_id, message_id=message_id)

        if not send_result.success:
            raise ExternalSendFailure(
                target.provider, send_result.error or "send failed", message_id=message_id
            )
        return SendOutcome(message=message, send_result=send_result, payload=payload)

    async def _apply_result(
        self,
        target: _SendTarget,
        message_id: str,
        send_result: SendResult,
    ) -> tuple[ChannelMessage, dict[str, Any]]:
        async with self._session_factory() as db:
            await state.lock_conversation(db, target.conversation_id)
            message = await state.apply_outbound(
                db, target.conversation_id, message_id, send_result
            )
            payload = message_payload(
                message,
                connection_data=target.connection_data,
                recipient=target.external_conversation_id,
            )
            await db.commit()
            return message, payload

    async def _flag_unrecorded(
        self,
        target: _SendTarget,
        message_id: str,
        send_result: SendResult,
    ) -> None:
        """One last write so a send whose result was lost can be reconciled."""
        try:
            async with self._locks.hold(target.conversation_id, self._lock_timeout):
                async with self._session_factory() as db:
                    await state.lock_conversation(db, target.conversation_id)
                    await state.mark_unrecorded(db, message_id, send_result)
                    await db.commit()
        except (TransientStorageError, SQLAlchemyError):
            logger.exception(
                "Could not flag unrecorded send result",
                message_id=message_id,
                provider=target.provider,
                success=send_result.success,
                external_message_id=send_result.external_message_id,
            )
            return
        logger.error(
            "Send result not recorded, message flagged for reconciliation",
            message_id=message_id,
            provider=target.provider,
            success=send_result.success,
            external_message_id=send_result.external_message_id,
        )


_service: OutboundService | None = None


def get_outbound_service() -> OutboundService:
    """Get the process-wide outbound service."""
    global _service
    if _service is None:
        _service = OutboundService()
    return _service
