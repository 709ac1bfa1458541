"""Channel routes: connected accounts, conversations, messages and usage."""

import re
from datetime import datetime
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from unibox.config import settings
from unibox.database.connection import get_db
from unibox.database.dialect import insert_for
from unibox.database.models import (
    ACCOUNT_CONNECTED,
    ACCOUNT_DISCONNECTED,
    PROVIDERS,
    ChannelAccount,
    ChannelConversation,
    ChannelMessage,
    _generate_uuid,
)
from unibox.middleware.auth import get_current_user_id
from unibox.middleware.rate_limit import RATE_LIMIT_SEND, RATE_LIMIT_STANDARD, limiter
from unibox.pipeline.actions import (
    InboxActions,
    get_inbox_actions,
    get_owned_account,
    get_owned_conversation,
)
from unibox.pipeline.outbound import OutboundService, SendOutcome, get_outbound_service
from unibox.services import usage_ledger
from unibox.utils.timeutil import isoformat_utc

logger = structlog.get_logger()

router = APIRouter(prefix="/channels", tags=["channels"])

# Type aliases for dependencies
DbSession = Annotated[AsyncSession, Depends(get_db)]
Outbound = Annotated[OutboundService, Depends(get_outbound_service)]
Actions = Annotated[InboxActions, Depends(get_inbox_actions)]

PERIOD_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")

# Live session that issued a REST send; it is excluded from the echo
SOCKET_ID_HEADER = "X-Socket-ID"


# ============================================================================
# Request/Response Models
# ============================================================================


class AccountResponse(BaseModel):
    """Connected account response."""

    id: str
    provider: str
    external_account_id: str
    status: str
    account_info: dict[str, Any]
    sync_status: str
    last_sync_at: str | None
    created_at: str | None


class ConnectAccountRequest(BaseModel):
    """Connect (or reconnect) an external account."""

    external_account_id: str = Field(..., min_length=1, max_length=255)
    connection_data: dict[str, Any] = Field(default_factory=dict)
    account_info: dict[str, Any] = Field(default_factory=dict)


class ConversationResponse(BaseModel):
    """Conversation summary."""

    id: str
    account_id: str
    external_conversation_id: str
    title: str | None
    last_message_at: str | None
    unread_count: int
    status: str
    chat_info: dict[str, Any]


class MessageResponse(BaseModel):
    """Stored message."""

    id: str
    conversation_id: str
    external_message_id: str | None
    direction: str
    body: str
    subject: str | None
    attachments: list[Any]
    sender_id: str | None
    sender_name: str | None
    sent_at: str | None
    status: str
    read_at: str | None
    sync_status: str
    thread_id: str | None
    parent_message_id: str | None
    is_reply: bool
    reply_count: int


class MessageListResponse(BaseModel):
    items: list[MessageResponse]
    limit: int
    offset: int


class SendMessageRequest(BaseModel):
    """Outbound message."""

    text: str = Field(..., min_length=1)
    subject: str | None = Field(default=None, max_length=500)
    attachments: list[dict[str, Any]] = Field(default_factory=list)
    reply_to_message_id: str | None = None


class SendResultResponse(BaseModel):
    success: bool
    external_message_id: str | None = None
    error: str | None = None


class SendMessageResponse(BaseModel):
    """Recorded message and what the provider answered."""

    message: MessageResponse
    send_result: SendResultResponse


class MarkReadRequest(BaseModel):
    """Message ids to mark read; omit to mark the whole conversation."""

    message_ids: list[str] | None = None


class MarkReadResponse(BaseModel):
    conversation_id: str
    marked: int
    unread_count: int


class ProviderUsageResponse(BaseModel):
    provider: str
    period: str
    messages_sent: int
    messages_received: int
    total_messages: int
    limit: int
    usage_metrics: dict[str, Any]


class UsageResponse(BaseModel):
    """Usage for one period across providers."""

    period: str
    providers: list[ProviderUsageResponse]


# ============================================================================
# Helpers
# ============================================================================


def _iso(value: datetime | None) -> str | None:
    return isoformat_utc(value)


def _account_response(account: ChannelAccount) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        provider=account.provider,
        external_account_id=account.external_account_id,
        status=account.status,
        account_info=dict(account.account_info or {}),
        sync_status=account.sync_status,
        last_sync_at=_iso(account.last_sync_at),
        created_at=_iso(account.created_at),
    )


def _conversation_response(conversation: ChannelConversation) -> ConversationResponse:
    return ConversationResponse(
        id=conversation.id,
        account_id=conversation.account_id,
        external_conversation_id=conversation.external_conversation_id,
        title=conversation.title,
        last_message_at=_iso(conversation.last_message_at),
        unread_count=conversation.unread_count,
        status=conversation.status,
        chat_info=dict(conversation.chat_info or {}),
    )


def _message_response(message: ChannelMessage) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        conversation_id=message.conversation_id,
        external_message_id=message.external_message_id,
        direction=message.direction,
        body=message.body,
        subject=message.subject,
        attachments=list(message.attachments or []),
        sender_id=message.sender_id,
        sender_name=message.sender_name,
        sent_at=_iso(message.sent_at),
        status=message.status,
        read_at=_iso(message.read_at),
        sync_status=message.sync_status,
        thread_id=message.thread_id,
        parent_message_id=message.parent_message_id,
        is_reply=message.is_reply,
        reply_count=message.reply_count,
    )


def _send_response(outcome: SendOutcome) -> SendMessageResponse:
    return SendMessageResponse(
        message=_message_response(outcome.message),
        send_result=SendResultResponse(
            success=outcome.send_result.success,
            external_message_id=outcome.send_result.external_message_id,
            error=outcome.send_result.error,
        ),
    )


def _validate_provider(provider: str) -> str:
    provider = provider.lower()
    if provider not in PROVIDERS:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")
    return provider


# ============================================================================
# Accounts
# ============================================================================


@router.get("/{provider}/accounts", response_model=list[AccountResponse])
@limiter.limit(RATE_LIMIT_STANDARD)
async def list_accounts(
    provider: str,
    request: Request,
    response: Response,  # noqa: ARG001
    db: DbSession,
) -> list[AccountResponse]:
    """List the user's accounts on a provider, disconnected ones included."""
    user_id = get_current_user_id(request)
    provider = _validate_provider(provider)

    result = await db.execute(
        select(ChannelAccount)
        .where(ChannelAccount.user_id == user_id, ChannelAccount.provider == provider)
        .order_by(ChannelAccount.created_at.asc())
    )
    return [_account_response(a) for a in result.scalars().all()]


@router.post("/{provider}/accounts", response_model=AccountResponse)
@limiter.limit(RATE_LIMIT_STANDARD)
async def connect_account(
    provider: str,
    request: Request,
    response: Response,  # noqa: ARG001
    data: ConnectAccountRequest,
    db: DbSession,
) -> AccountResponse:
    """Connect an external account.

    Connecting the same external account twice returns the existing row;
    a previously disconnected account is reactivated.
    """
    user_id = get_current_user_id(request)
    provider = _validate_provider(provider)

    stmt = (
        insert_for(db, ChannelAccount)
        .values(
            id=_generate_uuid(),
            user_id=user_id,
            provider=provider,
            external_account_id=data.external_account_id,
            status=ACCOUNT_CONNECTED,
            connection_data=data.connection_data,
            account_info=data.account_info,
            sync_status="pending",
        )
        .on_conflict_do_nothing(index_elements=["user_id", "provider", "external_account_id"])
    )
    await db.execute(stmt)

    result = await db.execute(
        select(ChannelAccount).where(
            ChannelAccount.user_id == user_id,
            ChannelAccount.provider == provider,
            ChannelAccount.external_account_id == data.external_account_id,
        )
    )
    account = result.scalar_one()

    await db.execute(
        update(ChannelAccount)
        .where(ChannelAccount.id == account.id)
        .values(
            status=ACCOUNT_CONNECTED,
            connection_data={**(account.connection_data or {}), **data.connection_data},
            account_info={**(account.account_info or {}), **data.account_info},
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(account)

    logger.info("Account connected", account_id=account.id, provider=provider, user_id=user_id)
    return _account_response(account)


@router.delete("/accounts/{account_id}")
@limiter.limit(RATE_LIMIT_STANDARD)
async def disconnect_account(
    account_id: str,
    request: Request,
    response: Response,  # noqa: ARG001
    db: DbSession,
) -> dict[str, str]:
    """Disconnect an account; its conversations and messages are kept."""
    user_id = get_current_user_id(request)
    account = await get_owned_account(db, user_id, account_id)

    await db.execute(
        update(ChannelAccount)
        .where(ChannelAccount.id == account.id)
        .values(status=ACCOUNT_DISCONNECTED)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    logger.info("Account disconnected", account_id=account_id, user_id=user_id)
    return {"id": account_id, "status": ACCOUNT_DISCONNECTED}


@router.get(
    "/accounts/{account_id}/conversations", response_model=list[ConversationResponse]
)
@limiter.limit(RATE_LIMIT_STANDARD)
async def list_conversations(
    account_id: str,
    request: Request,
    response: Response,  # noqa: ARG001
    db: DbSession,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[ConversationResponse]:
    """List an account's conversations, most recent activity first."""
    user_id = get_current_user_id(request)
    await get_owned_account(db, user_id, account_id)

    result = await db.execute(
        select(ChannelConversation)
        .where(ChannelConversation.account_id == account_id)
        .order_by(
            ChannelConversation.last_message_at.desc().nulls_last(),
            ChannelConversation.created_at.desc(),
        )
        .limit(limit)
        .offset(offset)
    )
    return [_conversation_response(c) for c in result.scalars().all()]


# ============================================================================
# Messages
# ============================================================================


@router.get("/conversations/{conversation_id}/messages", response_model=MessageListResponse)
@limiter.limit(RATE_LIMIT_STANDARD)
async def list_messages(
    conversation_id: str,
    request: Request,
    response: Response,  # noqa: ARG001
    db: DbSession,
    limit: int = Query(default=50, ge=1),
    offset: int = Query(default=0, ge=0),
) -> MessageListResponse:
    """Messages in chronological order; deleted messages are left out."""
    user_id = get_current_user_id(request)
    await get_owned_conversation(db, user_id, conversation_id)
    limit = min(limit, settings.MESSAGES_PAGE_LIMIT_MAX)

    result = await db.execute(
        select(ChannelMessage)
        .where(
            ChannelMessage.conversation_id == conversation_id,
            ChannelMessage.is_deleted.is_(False),
        )
        .order_by(ChannelMessage.sent_at.asc(), ChannelMessage.created_at.asc())
        .limit(limit)
        .offset(offset)
    )
    return MessageListResponse(
        items=[_message_response(m) for m in result.scalars().all()],
        limit=limit,
        offset=offset,
    )


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=SendMessageResponse,
    status_code=201,
)
@limiter.limit(RATE_LIMIT_SEND)
async def send_message(
    conversation_id: str,
    request: Request,
    response: Response,  # noqa: ARG001
    data: SendMessageRequest,
    outbound: Outbound,
) -> SendMessageResponse:
    """Send a message.

    LimitExceeded, ExternalSendFailure, AccountNotConnected and lookup
    errors are turned into responses by the app's exception handlers.
    """
    user_id = get_current_user_id(request)
    if len(data.text.encode("utf-8")) > settings.MESSAGE_BODY_MAX_KB * 1024:
        raise HTTPException(status_code=413, detail="Message body too large")

    outcome = await outbound.send(
        user_id,
        conversation_id,
        data.text,
        attachments=data.attachments or None,
        subject=data.subject,
        reply_to_message_id=data.reply_to_message_id,
        origin_sid=request.headers.get(SOCKET_ID_HEADER),
    )
    return _send_response(outcome)


@router.post("/messages/{message_id}/retry", response_model=SendMessageResponse)
@limiter.limit(RATE_LIMIT_SEND)
async def retry_message(
    message_id: str,
    request: Request,
    response: Response,  # noqa: ARG001
    outbound: Outbound,
) -> SendMessageResponse:
    """Retry a failed outbound message. Counts as a new send."""
    user_id = get_current_user_id(request)
    outcome = await outbound.retry(
        user_id, message_id, origin_sid=request.headers.get(SOCKET_ID_HEADER)
    )
    return _send_response(outcome)


@router.post("/conversations/{conversation_id}/read", response_model=MarkReadResponse)
@limiter.limit(RATE_LIMIT_STANDARD)
async def mark_conversation_read(
    conversation_id: str,
    request: Request,
    response: Response,  # noqa: ARG001
    actions: Actions,
    data: MarkReadRequest | None = None,
) -> MarkReadResponse:
    """Mark inbound messages read and notify the user's other sessions."""
    user_id = get_current_user_id(request)
    result = await actions.mark_read(
        user_id,
        conversation_id,
        data.message_ids if data else None,
        origin_sid=request.headers.get(SOCKET_ID_HEADER),
    )
    return MarkReadResponse(**result)


@router.delete("/messages/{message_id}")
@limiter.limit(RATE_LIMIT_STANDARD)
async def delete_message(
    message_id: str,
    request: Request,
    response: Response,  # noqa: ARG001
    actions: Actions,
) -> dict[str, Any]:
    user_id = get_current_user_id(request)
    conversation_id = await actions.delete_message(
        user_id, message_id, origin_sid=request.headers.get(SOCKET_ID_HEADER)
    )
    return {"id": message_id, "conversation_id": conversation_id, "deleted": True}


# ============================================================================
# Usage
# ============================================================================


@router.get("/usage", response_model=UsageResponse)
@limiter.limit(RATE_LIMIT_STANDARD)
async def get_usage(
    request: Request,
    response: Response,  # noqa: ARG001
    db: DbSession,
    period: str | None = Query(default=None, description="Billing period as YYYY-MM"),
) -> UsageResponse:
    """Per-provider usage for a period (default: the current month)."""
    user_id = get_current_user_id(request)
    if period is not None and not PERIOD_PATTERN.match(period):
        raise HTTPException(status_code=400, detail="period must be formatted as YYYY-MM")

    period = period or usage_ledger.current_period()
    usage = await usage_ledger.get_usage(db, user_id, period)
    return UsageResponse(
        period=period,
        providers=[ProviderUsageResponse(**u.to_dict()) for u in usage],
    )
