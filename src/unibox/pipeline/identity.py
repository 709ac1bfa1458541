"""Identity resolver: external identifiers to local accounts and conversations."""

from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from unibox.database.dialect import insert_for
from unibox.database.models import (
    ACCOUNT_CONNECTED,
    ACCOUNT_DISCONNECTED,
    ChannelAccount,
    ChannelConversation,
    _generate_uuid,
)
from unibox.exceptions import UnknownAccount
from unibox.pipeline.events import InboundEvent

logger = structlog.get_logger()


@dataclass(frozen=True)
class ResolvedAccount:
    """The local account an external account id maps to."""

    account_id: str
    user_id: str
    provider: str
    external_account_id: str
    connection_data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ResolvedIdentity:
    """Local identifiers for an inbound event."""

    account: ResolvedAccount
    conversation_id: str
    created: bool

    @property
    def user_id(self) -> str:
        return self.account.user_id

    @property
    def provider(self) -> str:
        return self.account.provider


async def resolve_account(
    db: AsyncSession,
    external_account_id: str,
    provider: str | None = None,
) -> ResolvedAccount:
    """Find the account for an external account id.

    When the payload does not name a provider the lookup is provider-agnostic.
    Connected accounts win over needs_action ones, newest first.

    Raises:
        UnknownAccount: If no account matches or the match is disconnected.
    """
    query = select(ChannelAccount).where(
        ChannelAccount.external_account_id == external_account_id,
        ChannelAccount.status != ACCOUNT_DISCONNECTED,
    )
    if provider:
        query = query.where(ChannelAccount.provider == provider)
    query = query.order_by(
        case((ChannelAccount.status == ACCOUNT_CONNECTED, 0), else_=1),
        ChannelAccount.updated_at.desc(),
    )

    result = await db.execute(query)
    accounts = list(result.scalars().all())
    if not accounts:
        raise UnknownAccount(external_account_id, provider)
    if len(accounts) > 1:
        logger.warning(
            "External account id is connected more than once",
            external_account_id=external_account_id,
            provider=provider,
            matches=len(accounts),
        )

    account = accounts[0]
    return ResolvedAccount(
        account_id=account.id,
        user_id=account.user_id,
        provider=account.provider,
        external_account_id=account.external_account_id,
        connection_data=dict(account.connection_data or {}),
    )


def _conversation_title(event: InboundEvent) -> str:
    if event.sender_display_name:
        return event.sender_display_name[:255]
    if event.subject:
        return event.subject[:255]
    return f"Chat {event.external_conversation_id}"[:255]


async def resolve_conversation(
    db: AsyncSession,
    account_id: str,
    event: InboundEvent,
) -> tuple[str, bool]:
    """Get or create the conversation for an event.

    The unique (account, external conversation id) constraint arbitrates
    concurrent creates: the losing insert is a no-op and re-reads the
    winner's row.

    Returns:
        The conversation id and whether this call created it.
    """
    chat_info = {k: v for k, v in event.chat_info.items() if v is not None}

    stmt = (
        insert_for(db, ChannelConversation)
        .values(
            id=_generate_uuid(),
            account_id=account_id,
            external_conversation_id=event.external_conversation_id,
            title=_conversation_title(event),
            unread_count=0,
            status="active",
            chat_info=chat_info,
        )
        .on_conflict_do_nothing(index_elements=["account_id", "external_conversation_id"])
        .returning(ChannelConversation.id)
    )
    result = await db.execute(stmt)
    inserted_id = result.scalar_one_or_none()
    if inserted_id is not None:
        logger.info(
            "Conversation created",
            conversation_id=inserted_id,
            account_id=account_id,
            external_conversation_id=event.external_conversation_id,
        )
        return str(inserted_id), True

    existing = await db.execute(
        select(ChannelConversation.id, ChannelConversation.chat_info).where(
            ChannelConversation.account_id == account_id,
            ChannelConversation.external_conversation_id == event.external_conversation_id,
        )
    )
    row = existing.one()
    conversation_id = str(row.id)

    merged = {**(row.chat_info or {}), **chat_info}
    if merged != (row.chat_info or {}):
        await db.execute(
            update(ChannelConversation)
            .where(ChannelConversation.id == conversation_id)
            .values(chat_info=merged)
        )
    return conversation_id, False


async def resolve(db: AsyncSession, event: InboundEvent) -> ResolvedIdentity:
    """Resolve an inbound event to its account and conversation."""
    account = await resolve_account(db, event.external_account_id, event.provider)
    conversation_id, created = await resolve_conversation(db, account.account_id, event)
    return ResolvedIdentity(account=account, conversation_id=conversation_id, created=created)
