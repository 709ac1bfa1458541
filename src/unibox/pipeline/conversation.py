"""Conversation state machine.

Applies admitted inbound messages, outbound send results, provider receipts
and read actions to conversation and message state.

Message lifecycles:

- inbound:  received -> read
- outbound: pending -> sent -> delivered -> read, with failed reachable
  from pending and sent

Sync lifecycle: pending -> synced | failed, failed -> retrying -> synced |
failed. ``sync_attempts`` only moves on failure.

Conversation counters are written only here. ``last_message_at`` only ever
advances, and ``unread_count`` is always recomputed as the number of
inbound, non-deleted messages that are not read.
"""

from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from unibox.database.models import (
    DIRECTION_IN,
    DIRECTION_OUT,
    ChannelConversation,
    ChannelMessage,
    _generate_uuid,
)
from unibox.exceptions import ConversationNotFound, MessageNotFound
from unibox.pipeline.events import Direction, InboundEvent
from unibox.services.senders import SendResult
from unibox.utils.timeutil import ensure_utc, utcnow

logger = structlog.get_logger()

# Message statuses
STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_DELIVERED = "delivered"
STATUS_READ = "read"
STATUS_FAILED = "failed"
STATUS_RECEIVED = "received"

# Sync statuses
SYNC_PENDING = "pending"
SYNC_SYNCED = "synced"
SYNC_FAILED = "failed"
SYNC_RETRYING = "retrying"

INBOUND_TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_RECEIVED: frozenset({STATUS_READ}),
    STATUS_READ: frozenset(),
}

OUTBOUND_TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_PENDING: frozenset({STATUS_SENT, STATUS_DELIVERED, STATUS_READ, STATUS_FAILED}),
    STATUS_SENT: frozenset({STATUS_DELIVERED, STATUS_READ, STATUS_FAILED}),
    STATUS_DELIVERED: frozenset({STATUS_READ}),
    STATUS_READ: frozenset(),
    # A failed message goes back to pending when it is retried
    STATUS_FAILED: frozenset({STATUS_PENDING}),
}


def can_transition(direction: str, current: str, new: str) -> bool:
    """Whether a message may move from ``current`` to ``new``."""
    transitions = INBOUND_TRANSITIONS if direction == DIRECTION_IN else OUTBOUND_TRANSITIONS
    return new in transitions.get(current, frozenset())


def build_inbound_values(event: InboundEvent) -> dict[str, Any]:
    """Column values for a message admitted from a provider event."""
    outgoing = event.direction == Direction.OUT
    provider_metadata: dict[str, Any] = {
        "account_id": event.external_account_id,
        "chat_id": event.external_conversation_id,
        "message_id": event.external_message_id,
        "sender": event.raw.get("sender") or event.raw.get("from_attendee"),
        "is_group": event.is_group,
        "fingerprinted": event.fingerprinted,
    }
    for key in ("quoted", "chat_content_type", "message_type", "is_event", "folder"):
        if key in event.raw:
            provider_metadata[key] = event.raw[key]
    if event.parent_external_id:
        provider_metadata["parent_external_id"] = event.parent_external_id

    return {
        "direction": DIRECTION_OUT if outgoing else DIRECTION_IN,
        "body": event.body,
        "subject": event.subject,
        "attachments": list(event.attachments),
        "sender_id": event.sender_id,
        "sender_name": event.sender_display_name,
        "sent_at": event.occurred_at,
        "status": STATUS_SENT if outgoing else STATUS_RECEIVED,
        "provider_metadata": provider_metadata,
        "thread_id": event.thread_id,
        "is_reply": bool(event.parent_external_id),
        "reply_count": 0,
        "sync_status": SYNC_PENDING,
        "sync_attempts": 0,
        "is_deleted": False,
    }


async def lock_conversation(db: AsyncSession, conversation_id: str) -> ChannelConversation:
    """Load a conversation with a row lock held until the transaction ends.

    SQLite has no row locks; its single writer lock plus the in-process
    conversation lock give the same ordering.
    """
    result = await db.execute(
        select(ChannelConversation)
        .where(ChannelConversation.id == conversation_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    conversation = result.scalar_one_or_none()
    if conversation is None:
        raise ConversationNotFound(conversation_id)
    return conversation


async def get_message(db: AsyncSession, message_id: str) -> ChannelMessage:
    """Load a message with fresh column values."""
    result = await db.execute(
        select(ChannelMessage)
        .where(ChannelMessage.id == message_id)
        .execution_options(populate_existing=True)
    )
    message = result.scalar_one_or_none()
    if message is None:
        raise MessageNotFound(message_id)
    return message


async def advance_last_message_at(db: AsyncSession, conversation_id: str, moment: datetime) -> bool:
    """Move last_message_at forward to ``moment``; older moments are ignored.

    Returns:
        True if the timestamp advanced.
    """
    moment = ensure_utc(moment)
    result = await db.execute(
        update(ChannelConversation)
        .where(
            ChannelConversation.id == conversation_id,
            or_(
                ChannelConversation.last_message_at.is_(None),
                ChannelConversation.last_message_at < moment,
            ),
        )
        .values(last_message_at=moment)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


async def recompute_unread(db: AsyncSession, conversation_id: str) -> int:
    """Set unread_count to the number of unread inbound messages."""
    unread = (
        select(func.count(ChannelMessage.id))
        .where(
            ChannelMessage.conversation_id == conversation_id,
            ChannelMessage.direction == DIRECTION_IN,
            ChannelMessage.status != STATUS_READ,
            ChannelMessage.is_deleted.is_(False),
        )
        .scalar_subquery()
    )
    await db.execute(
        update(ChannelConversation)
        .where(ChannelConversation.id == conversation_id)
        .values(unread_count=unread)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(
        select(ChannelConversation.unread_count).where(ChannelConversation.id == conversation_id)
    )
    return int(result.scalar_one())


async def _link_reply(
    db: AsyncSession,
    conversation_id: str,
    message_id: str,
    parent_external_id: str,
) -> str | None:
    """Link a newly admitted reply to its parent and bump the parent's reply count.

    Only called once per admitted child, so the count moves exactly once.
    """
    result = await db.execute(
        select(ChannelMessage.id).where(
            ChannelMessage.conversation_id == conversation_id,
            ChannelMessage.external_message_id == parent_external_id,
        )
    )
    parent_id = result.scalar_one_or_none()
    if parent_id is None:
        logger.debug(
            "Reply parent not found, keeping external reference",
            conversation_id=conversation_id,
            parent_external_id=parent_external_id,
        )
        return None

    await _increment_reply_count(db, str(parent_id))
    await db.execute(
        update(ChannelMessage)
        .where(ChannelMessage.id == message_id)
        .values(parent_message_id=str(parent_id), is_reply=True)
        .execution_options(synchronize_session=False)
    )
    return str(parent_id)


async def _increment_reply_count(db: AsyncSession, parent_id: str, by: int = 1) -> None:
    await db.execute(
        update(ChannelMessage)
        .where(ChannelMessage.id == parent_id)
        .values(reply_count=ChannelMessage.reply_count + by)
        .execution_options(synchronize_session=False)
    )


async def _adopt_early_replies(
    db: AsyncSession,
    conversation_id: str,
    message_id: str,
    external_message_id: str,
) -> int:
    """Link replies that were admitted before this parent arrived.

    Such replies keep ``parent_external_id`` in their metadata and have no
    ``parent_message_id``. Linking sets it, so each child is counted once.

    Returns:
        Number of replies linked.
    """
    result = await db.execute(
        select(ChannelMessage.id, ChannelMessage.provider_metadata).where(
            ChannelMessage.conversation_id == conversation_id,
            ChannelMessage.is_reply.is_(True),
            ChannelMessage.parent_message_id.is_(None),
            ChannelMessage.id != message_id,
        )
    )
    orphan_ids = [
        str(row.id)
        for row in result
        if (row.provider_metadata or {}).get("parent_external_id") == external_message_id
    ]
    if not orphan_ids:
        return 0

    linked = await db.execute(
        update(ChannelMessage)
        .where(ChannelMessage.id.in_(orphan_ids), ChannelMessage.parent_message_id.is_(None))
        .values(parent_message_id=message_id)
        .execution_options(synchronize_session=False)
    )
    count = int(linked.rowcount or 0)
    if count:
        await _increment_reply_count(db, message_id, by=count)
        logger.info(
            "Linked replies that arrived before their parent",
            conversation_id=conversation_id,
            message_id=message_id,
            replies=count,
        )
    return count


async def apply_inbound(
    db: AsyncSession,
    conversation_id: str,
    event: InboundEvent,
    message_id: str,
) -> ChannelMessage:
    """Apply an admitted provider message to its conversation.

    Must run inside the conversation's critical section, in the same
    transaction as the admission.
    """
    if event.parent_external_id:
        await _link_reply(db, conversation_id, message_id, event.parent_external_id)
    await _adopt_early_replies(db, conversation_id, message_id, event.external_message_id)

    advanced = await advance_last_message_at(db, conversation_id, event.occurred_at)
    if not advanced:
        logger.debug(
            "Out-of-order message recorded without moving conversation timestamp",
            conversation_id=conversation_id,
            message_id=message_id,
        )

    await db.execute(
        update(ChannelMessage)
        .where(ChannelMessage.id == message_id)
        .values(sync_status=SYNC_SYNCED, last_sync_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await recompute_unread(db, conversation_id)
    return await get_message(db, message_id)


async def create_outbound(
    db: AsyncSession,
    conversation_id: str,
    body: str,
    *,
    subject: str | None = None,
    attachments: list[dict[str, Any]] | None = None,
    parent_message_id: str | None = None,
    sender_id: str | None = None,
) -> ChannelMessage:
    """Record a pending outbound message before it is handed to the provider."""
    now = utcnow()
    thread_id: str | None = None
    if parent_message_id:
        parent = await get_message(db, parent_message_id)
        if parent.conversation_id != conversation_id:
            raise MessageNotFound(parent_message_id)
        thread_id = parent.thread_id

    message = ChannelMessage(
        id=_generate_uuid(),
        conversation_id=conversation_id,
        external_message_id=None,
        direction=DIRECTION_OUT,
        body=body,
        subject=subject,
        attachments=list(attachments or []),
        sender_id=sender_id,
        sent_at=now,
        status=STATUS_PENDING,
        provider_metadata={},
        thread_id=thread_id,
        parent_message_id=parent_message_id,
        is_reply=parent_message_id is not None,
        reply_count=0,
        sync_status=SYNC_PENDING,
        sync_attempts=0,
        is_deleted=False,
    )
    db.add(message)
    await db.flush()

    if parent_message_id:
        await _increment_reply_count(db, parent_message_id)
    await advance_last_message_at(db, conversation_id, now)
    return message


async def apply_outbound(
    db: AsyncSession,
    conversation_id: str,
    message_id: str,
    send_result: SendResult,
) -> ChannelMessage:
    """Record the provider's answer to an outbound send."""
    message = await get_message(db, message_id)
    if message.conversation_id != conversation_id:
        raise MessageNotFound(message_id)

    now = utcnow()
    metadata = dict(message.provider_metadata or {})
    if send_result.raw:
        metadata["send_result"] = send_result.raw

    if send_result.success:
        external_id = send_result.external_message_id
        if external_id:
            external_id = await _claim_external_id(db, conversation_id, message_id, external_id)
            if external_id is None:
                metadata["external_message_id"] = send_result.external_message_id
        await db.execute(
            update(ChannelMessage)
            .where(ChannelMessage.id == message_id)
            .values(
                status=STATUS_SENT,
                external_message_id=external_id,
                sync_status=SYNC_SYNCED,
                last_sync_at=now,
                provider_metadata=metadata,
            )
            .execution_options(synchronize_session=False)
        )
        if external_id:
            await _adopt_early_replies(db, conversation_id, message_id, external_id)
        logger.info("Outbound message sent", message_id=message_id, external_message_id=external_id)
    else:
        metadata["last_error"] = send_result.error
        await db.execute(
            update(ChannelMessage)
            .where(ChannelMessage.id == message_id)
            .values(
                status=STATUS_FAILED,
                sync_status=SYNC_FAILED,
                sync_attempts=ChannelMessage.sync_attempts + 1,
                last_sync_at=now,
                provider_metadata=metadata,
            )
            .execution_options(synchronize_session=False)
        )
        logger.warning("Outbound message failed", message_id=message_id, error=send_result.error)

    return await get_message(db, message_id)


async def _claim_external_id(
    db: AsyncSession,
    conversation_id: str,
    message_id: str,
    external_id: str,
) -> str | None:
    """Return ``external_id`` if this message may take it.

    When the provider's echo of our own message was ingested first, that
    row already owns the id. The echo is hidden and keeps the id so later
    redeliveries stay duplicates; the caller records the id in metadata.
    """
    result = await db.execute(
        select(ChannelMessage.id).where(
            ChannelMessage.conversation_id == conversation_id,
            ChannelMessage.external_message_id == external_id,
        )
    )
    owner = result.scalar_one_or_none()
    if owner is None or str(owner) == message_id:
        return external_id
    await db.execute(
        update(ChannelMessage)
        .where(ChannelMessage.id == owner)
        .values(is_deleted=True)
        .execution_options(synchronize_session=False)
    )
    logger.info(
        "Provider echo already ingested, hiding echo",
        message_id=message_id,
        echo_message_id=str(owner),
    )
    return None


async def claim_retry(db: AsyncSession, message_id: str) -> bool:
    """Move a failed outbound message back to pending for another attempt.

    The status check and the update are one statement, so of two concurrent
    retries only one claims the message.

    Returns:
        True if this caller claimed the message.
    """
    result = await db.execute(
        update(ChannelMessage)
        .where(
            ChannelMessage.id == message_id,
            ChannelMessage.direction == DIRECTION_OUT,
            ChannelMessage.status == STATUS_FAILED,
            ChannelMessage.sync_status == SYNC_FAILED,
        )
        .values(status=STATUS_PENDING, sync_status=SYNC_RETRYING)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


async def release_retry(db: AsyncSession, message_id: str) -> None:
    """Give back a claimed retry that never reached the provider."""
    await db.execute(
        update(ChannelMessage)
        .where(
            ChannelMessage.id == message_id,
            ChannelMessage.status == STATUS_PENDING,
            ChannelMessage.sync_status == SYNC_RETRYING,
        )
        .values(status=STATUS_FAILED, sync_status=SYNC_FAILED)
        .execution_options(synchronize_session=False)
    )


async def mark_unrecorded(
    db: AsyncSession,
    message_id: str,
    send_result: SendResult,
) -> None:
    """Flag a message whose send result could not be stored.

    The message is left ``sync_status=failed`` for reconciliation, with the
    provider's answer in metadata. A rejected send also becomes ``failed`` so
    it can be retried. An accepted one stays ``pending``; retrying it would
    deliver the message twice.
    """
    message = await get_message(db, message_id)
    metadata = dict(message.provider_metadata or {})
    metadata["unrecorded_send"] = {
        "success": send_result.success,
        "external_message_id": send_result.external_message_id,
        "error": send_result.error,
    }
    values: dict[str, Any] = {
        "sync_status": SYNC_FAILED,
        "sync_attempts": ChannelMessage.sync_attempts + 1,
        "last_sync_at": utcnow(),
        "provider_metadata": metadata,
    }
    if not send_result.success:
        values["status"] = STATUS_FAILED
    await db.execute(
        update(ChannelMessage)
        .where(ChannelMessage.id == message_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


async def apply_status(
    db: AsyncSession,
    conversation_id: str,
    external_message_id: str,
    new_status: str,
    occurred_at: datetime | None = None,
) -> ChannelMessage | None:
    """Apply a provider receipt to a message.

    Returns:
        The updated message, or None when nothing changed (unknown message,
        identical status, or a backwards transition).
    """
    result = await db.execute(
        select(ChannelMessage)
        .where(
            ChannelMessage.conversation_id == conversation_id,
            ChannelMessage.external_message_id == external_message_id,
        )
        .execution_options(populate_existing=True)
    )
    message = result.scalar_one_or_none()
    if message is None:
        logger.info(
            "Status for unknown message ignored",
            conversation_id=conversation_id,
            external_message_id=external_message_id,
        )
        return None
    if message.status == new_status:
        return None
    if not can_transition(message.direction, message.status, new_status):
        logger.info(
            "Status transition ignored",
            message_id=message.id,
            current=message.status,
            requested=new_status,
        )
        return None

    values: dict[str, Any] = {"status": new_status}
    if new_status == STATUS_READ:
        values["read_at"] = ensure_utc(occurred_at) if occurred_at else utcnow()
    await db.execute(
        update(ChannelMessage)
        .where(ChannelMessage.id == message.id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if message.direction == DIRECTION_IN:
        await recompute_unread(db, conversation_id)
    return await get_message(db, message.id)


async def mark_read(
    db: AsyncSession,
    conversation_id: str,
    message_ids: list[str] | None = None,
) -> int:
    """Mark inbound messages read, all of them or only ``message_ids``.

    Returns:
        Number of messages that changed.
    """
    query = update(ChannelMessage).where(
        ChannelMessage.conversation_id == conversation_id,
        ChannelMessage.direction == DIRECTION_IN,
        ChannelMessage.status != STATUS_READ,
        ChannelMessage.is_deleted.is_(False),
    )
    if message_ids is not None:
        if not message_ids:
            return 0
        query = query.where(ChannelMessage.id.in_(message_ids))
    result = await db.execute(
        query.values(status=STATUS_READ, read_at=utcnow()).execution_options(
            synchronize_session=False
        )
    )
    await recompute_unread(db, conversation_id)
    return int(result.rowcount or 0)


async def soft_delete(db: AsyncSession, conversation_id: str, message_id: str) -> int:
    """Hide a message; it stays stored for idempotency.

    Returns:
        The conversation's unread count afterwards.
    """
    await db.execute(
        update(ChannelMessage)
        .where(ChannelMessage.id == message_id, ChannelMessage.conversation_id == conversation_id)
        .values(is_deleted=True)
        .execution_options(synchronize_session=False)
    )
    return await recompute_unread(db, conversation_id)
