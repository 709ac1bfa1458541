"""Webhook ingestion pipeline.

raw webhook -> normalize -> resolve identity -> admit (duplicates stop here)
-> record receipt -> apply to conversation -> commit -> fan-out

Identity resolution commits on its own, since a conversation row created
for a message that later fails to apply is harmless. Admission, usage and
conversation state commit together in one transaction. That transaction runs
inside the conversation's critical section: an in-process lock keyed by
conversation id, plus a row lock on the conversation for other processes.
Nothing is published until it has committed.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from unibox.config import settings
from unibox.database.connection import async_session_factory
from unibox.database.models import ChannelAccount, ChannelConversation, ChannelMessage
from unibox.database.retry import run_with_storage_retry
from unibox.exceptions import MalformedPayload, UnknownAccount
from unibox.pipeline import conversation as state
from unibox.pipeline.events import (
    AccountStatusEvent,
    InboundEvent,
    MessageStatusEvent,
    RawEvent,
)
from unibox.pipeline.identity import ResolvedIdentity, resolve, resolve_account
from unibox.pipeline.idempotency import Duplicate, admit
from unibox.pipeline.locks import KeyedLocks, conversation_locks
from unibox.pipeline.normalizer import normalize
from unibox.services import usage_ledger
from unibox.websocket.broadcaster import FanoutBroadcaster, get_broadcaster
from unibox.websocket.payloads import (
    EVENT_ACCOUNT_STATUS,
    EVENT_MESSAGE_STATUS,
    EVENT_NEW_MESSAGE,
    message_payload,
    status_payload,
)

logger = structlog.get_logger()


class IngestStatus(str, Enum):
    """Outcome of one webhook delivery."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    DROPPED = "dropped"
    REJECTED = "rejected"
    UPDATED = "updated"


@dataclass
class IngestResult:
    """What happened to a webhook delivery."""

    status: IngestStatus
    message_id: str | None = None
    conversation_id: str | None = None
    detail: str | None = None

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {"status": self.status.value}
        if self.message_id:
            body["message_id"] = self.message_id
        if self.conversation_id:
            body["conversation_id"] = self.conversation_id
        if self.detail:
            body["detail"] = self.detail
        return body


class WebhookPipeline:
    """Turns provider webhooks into durable inbox state and live events."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        broadcaster: FanoutBroadcaster | None = None,
        locks: KeyedLocks | None = None,
        lock_timeout: float | None = None,
    ) -> None:
        self._session_factory = session_factory or async_session_factory
        self._broadcaster = broadcaster or get_broadcaster()
        self._lock_timeout = lock_timeout or settings.CONVERSATION_LOCK_TIMEOUT
        self._conversation_locks = locks if locks is not None else conversation_locks

    @property
    def conversation_locks(self) -> KeyedLocks:
        return self._conversation_locks

    async def handle(self, provider_hint: str | None, body: Any) -> IngestResult:
        """Process one webhook body.

        Business outcomes (duplicates, unknown accounts, malformed payloads,
        unknown event types) are returned as results. Only
        TransientStorageError propagates, once retries are exhausted.
        """
        try:
            event = normalize(provider_hint, body)
        except MalformedPayload as e:
            logger.warning("Malformed webhook payload rejected", reason=e.reason, field=e.field)
            return IngestResult(status=IngestStatus.REJECTED, detail=e.reason)

        try:
            if isinstance(event, InboundEvent):
                return await self._ingest_message(event)
            if isinstance(event, MessageStatusEvent):
                return await self._ingest_status(event)
            if isinstance(event, AccountStatusEvent):
                return await self._ingest_account_status(event)
        except UnknownAccount as e:
            logger.warning(
                "Webhook for unknown account dropped",
                external_account_id=e.external_account_id,
                provider=e.provider,
            )
            return IngestResult(status=IngestStatus.DROPPED, detail="unknown account")

        type_tag = event.type_tag if isinstance(event, RawEvent) else type(event).__name__
        logger.info("Webhook event ignored", event_type=type_tag)
        return IngestResult(status=IngestStatus.IGNORED, detail=type_tag)

    # ------------------------------------------------------------------
    # New messages
    # ------------------------------------------------------------------

    async def _ingest_message(self, event: InboundEvent) -> IngestResult:
        identity = await run_with_storage_retry(
            "resolve identity", lambda: self._resolve_identity(event)
        )

        async with self._conversation_locks.hold(identity.conversation_id, self._lock_timeout):
            message_id, payload = await run_with_storage_retry(
                "apply inbound message", lambda: self._apply_message(identity, event)
            )

        if payload is None:
            return IngestResult(
                status=IngestStatus.DUPLICATE,
                message_id=message_id,
                conversation_id=identity.conversation_id,
            )

        logger.info(
            "Inbound message stored",
            message_id=message_id,
            conversation_id=identity.conversation_id,
            user_id=identity.user_id,
            provider=identity.provider,
        )
        self._publish(identity.user_id, EVENT_NEW_MESSAGE, payload)
        return IngestResult(
            status=IngestStatus.PROCESSED,
            message_id=message_id,
            conversation_id=identity.conversation_id,
        )

    async def _resolve_identity(self, event: InboundEvent) -> ResolvedIdentity:
        async with self._session_factory() as db:
            identity = await resolve(db, event)
            await db.commit()
            return identity

    async def _apply_message(
        self, identity: ResolvedIdentity, event: InboundEvent
    ) -> tuple[str | None, dict[str, Any] | None]:
        """Admit, count and apply in one transaction.

        Returns:
            The message id and its live payload, or (existing id, None) for a
            duplicate delivery.
        """
        async with self._session_factory() as db:
            await state.lock_conversation(db, identity.conversation_id)

            admission = await admit(
                db,
                identity.conversation_id,
                event.external_message_id,
                state.build_inbound_values(event),
            )
            if isinstance(admission, Duplicate):
                await db.rollback()
                return admission.message_id, None

            metrics = {"attachments": len(event.attachments)} if event.attachments else None
            await usage_ledger.record_received(db, identity.user_id, identity.provider, metrics)
            message = await state.apply_inbound(
                db, identity.conversation_id, event, admission.message_id
            )
            payload = message_payload(message, connection_data=identity.account.connection_data)
            await db.commit()
            return message.id, payload

    # ------------------------------------------------------------------
    # Delivery / read receipts
    # ------------------------------------------------------------------

    async def _ingest_status(self, event: MessageStatusEvent) -> IngestResult:
        located = await run_with_storage_retry(
            "locate receipt target", lambda: self._locate_status_target(event)
        )
        if located is None:
            return IngestResult(status=IngestStatus.IGNORED, detail="unknown message")
        user_id, conversation_id = located

        async with self._conversation_locks.hold(conversation_id, self._lock_timeout):
            payload = await run_with_storage_retry(
                "apply message status", lambda: self._apply_status(conversation_id, event)
            )

        if payload is None:
            return IngestResult(status=IngestStatus.DUPLICATE, conversation_id=conversation_id)
        self._publish(user_id, EVENT_MESSAGE_STATUS, payload)
        return IngestResult(
            status=IngestStatus.UPDATED,
            message_id=payload["id"],
            conversation_id=conversation_id,
        )

    async def _locate_status_target(self, event: MessageStatusEvent) -> tuple[str, str] | None:
        async with self._session_factory() as db:
            account = await resolve_account(db, event.external_account_id, event.provider)
            query = (
                select(ChannelConversation.id)
                .join(ChannelMessage, ChannelMessage.conversation_id == ChannelConversation.id)
                .where(
                    ChannelConversation.account_id == account.account_id,
                    ChannelMessage.external_message_id == event.external_message_id,
                )
            )
            if event.external_conversation_id:
                query = query.where(
                    ChannelConversation.external_conversation_id == event.external_conversation_id
                )
            result = await db.execute(query.limit(1))
            conversation_id = result.scalar_one_or_none()
            if conversation_id is None:
                logger.info(
                    "Receipt for unknown message ignored",
                    external_message_id=event.external_message_id,
                )
                return None
            return account.user_id, str(conversation_id)

    async def _apply_status(
        self, conversation_id: str, event: MessageStatusEvent
    ) -> dict[str, Any] | None:
        async with self._session_factory() as db:
            await state.lock_conversation(db, conversation_id)
            message = await state.apply_status(
                db,
                conversation_id,
                event.external_message_id,
                event.status,
                event.occurred_at,
            )
            if message is None:
                await db.rollback()
                return None
            payload = status_payload(message)
            await db.commit()
            return payload

    # ------------------------------------------------------------------
    # Account status
    # ------------------------------------------------------------------

    async def _ingest_account_status(self, event: AccountStatusEvent) -> IngestResult:
        updated = await run_with_storage_retry(
            "apply account status", lambda: self._apply_account_status(event)
        )
        if not updated:
            raise UnknownAccount(event.external_account_id or event.connection_id or "unknown")
        for account_id, user_id in updated:
            self._publish(
                user_id,
                EVENT_ACCOUNT_STATUS,
                {"account_id": account_id, "status": event.status},
            )
        return IngestResult(status=IngestStatus.UPDATED, detail=event.status)

    async def _apply_account_status(self, event: AccountStatusEvent) -> list[tuple[str, str]]:
        """Status and connection data are single-owner fields; plain updates suffice."""
        async with self._session_factory() as db:
            query = select(ChannelAccount)
            if event.external_account_id:
                query = query.where(ChannelAccount.external_account_id == event.external_account_id)
            else:
                query = query.where(
                    or_(
                        ChannelAccount.connection_data["connectionId"].as_string()
                        == event.connection_id,
                        ChannelAccount.connection_data["connection_id"].as_string()
                        == event.connection_id,
                    )
                )
            result = await db.execute(query)
            accounts = list(result.scalars().all())

            updated: list[tuple[str, str]] = []
            for account in accounts:
                values: dict[str, Any] = {"status": event.status}
                if event.connection_data:
                    values["connection_data"] = {
                        **(account.connection_data or {}),
                        **event.connection_data,
                    }
                await db.execute(
                    update(ChannelAccount).where(ChannelAccount.id == account.id).values(**values)
                )
                updated.append((account.id, account.user_id))
                logger.info(
                    "Account status updated",
                    account_id=account.id,
                    status=event.status,
                )
            await db.commit()
            return updated

    def _publish(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        """Fan out after commit; failures are logged and never undo the write."""
        try:
            self._broadcaster.publish(user_id, event, payload)
        except Exception:
            logger.exception("Fan-out publish failed", user_id=user_id, event=event)


_pipeline: WebhookPipeline | None = None


def get_webhook_pipeline() -> WebhookPipeline:
    """Get the process-wide webhook pipeline."""
    global _pipeline
    if _pipeline is None:
        _pipeline = WebhookPipeline()
    return _pipeline
