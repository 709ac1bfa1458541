"""Idempotency guard: at-most-once admission of provider messages.

Admission and creation are one statement. The message row is inserted with
``ON CONFLICT (conversation_id, external_message_id) DO NOTHING``; when no
row comes back the message was already admitted by an earlier delivery.
"""

from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from unibox.database.dialect import insert_for
from unibox.database.models import ChannelMessage, _generate_uuid

logger = structlog.get_logger()


@dataclass(frozen=True)
class Admitted:
    """The message was new and its row now exists."""

    message_id: str


@dataclass(frozen=True)
class Duplicate:
    """The message had already been admitted."""

    message_id: str | None


AdmissionResult = Admitted | Duplicate


async def admit(
    db: AsyncSession,
    conversation_id: str,
    external_message_id: str,
    values: dict[str, Any],
) -> AdmissionResult:
    """Insert the message unless (conversation, external id) already exists.

    Args:
        db: Session with an open transaction.
        conversation_id: Owning conversation.
        external_message_id: Provider message id, the admission key.
        values: Remaining column values for the new row.

    Returns:
        Admitted with the new row id, or Duplicate with the existing row id.
    """
    message_id = _generate_uuid()
    stmt = (
        insert_for(db, ChannelMessage)
        .values(
            id=message_id,
            conversation_id=conversation_id,
            external_message_id=external_message_id,
            **values,
        )
        .on_conflict_do_nothing(index_elements=["conversation_id", "external_message_id"])
        .returning(ChannelMessage.id)
    )
    result = await db.execute(stmt)
    inserted_id = result.scalar_one_or_none()
    if inserted_id is not None:
        return Admitted(message_id=str(inserted_id))

    existing = await db.execute(
        select(ChannelMessage.id).where(
            ChannelMessage.conversation_id == conversation_id,
            ChannelMessage.external_message_id == external_message_id,
        )
    )
    existing_id = existing.scalar_one_or_none()
    logger.info(
        "Duplicate message delivery ignored",
        conversation_id=conversation_id,
        external_message_id=external_message_id,
        message_id=existing_id,
    )
    return Duplicate(message_id=str(existing_id) if existing_id else None)
