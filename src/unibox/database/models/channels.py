"""Channel models: ChannelAccount, ChannelConversation and ChannelMessage.

An account is one connected external identity (a WhatsApp number, an
Instagram profile, a mailbox) owned by a user. Conversations are scoped to an
account and messages to a conversation. External identifiers are only unique
within their parent, which is what the unique constraints below encode.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, JSONType, _generate_uuid

# Provider tags
PROVIDERS = ("whatsapp", "instagram", "linkedin", "telegram", "email")

# Account status values
ACCOUNT_CONNECTED = "connected"
ACCOUNT_NEEDS_ACTION = "needs_action"
ACCOUNT_DISCONNECTED = "disconnected"

# Message direction values
DIRECTION_IN = "in"
DIRECTION_OUT = "out"


class ChannelAccount(Base):
    """A connected external messaging identity for one user and provider."""

    __tablename__ = "channel_accounts"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_generate_uuid)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    external_account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=ACCOUNT_CONNECTED, nullable=False
    )  # connected, needs_action, disconnected
    connection_data: Mapped[dict[str, Any]] = mapped_column(default=dict, nullable=False)
    account_info: Mapped[dict[str, Any]] = mapped_column(default=dict, nullable=False)
    sync_status: Mapped[str] = mapped_column(
        String(20), default="pending", nullable=False
    )  # pending, syncing, synced, failed
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    conversations: Mapped[list["ChannelConversation"]] = relationship(
        "ChannelConversation",
        back_populates="account",
        cascade="all, delete-orphan",
        lazy="noload",
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "provider",
            "external_account_id",
            name="uq_channel_accounts_user_provider_external",
        ),
        Index("ix_channel_accounts_provider_external", "provider", "external_account_id"),
    )


class ChannelConversation(Base):
    """One chat thread on a connected account."""

    __tablename__ = "channel_conversations"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_generate_uuid)
    account_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("channel_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_conversation_id: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str | None] = mapped_column(String(255))
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)
    # Written only by the conversation state machine
    unread_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default="active", nullable=False
    )  # active, archived, muted
    chat_info: Mapped[dict[str, Any]] = mapped_column(default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    account: Mapped["ChannelAccount"] = relationship(
        "ChannelAccount", back_populates="conversations", lazy="noload"
    )

    __table_args__ = (
        UniqueConstraint(
            "account_id",
            "external_conversation_id",
            name="uq_channel_conversations_account_external",
        ),
    )


class ChannelMessage(Base):
    """One inbound or outbound message within a conversation."""

    __tablename__ = "channel_messages"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_generate_uuid)
    conversation_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("channel_conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_message_id: Mapped[str | None] = mapped_column(String(255))
    direction: Mapped[str] = mapped_column(String(3), nullable=False)  # in, out
    body: Mapped[str] = mapped_column(Text, default="", nullable=False)
    subject: Mapped[str | None] = mapped_column(String(500))
    attachments: Mapped[list[Any]] = mapped_column(JSONType, default=list, nullable=False)
    sender_id: Mapped[str | None] = mapped_column(String(255))
    sender_name: Mapped[str | None] = mapped_column(String(255))
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # pending, sent, delivered, read, failed, received
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    provider_metadata: Mapped[dict[str, Any]] = mapped_column(default=dict, nullable=False)

    # Threading
    thread_id: Mapped[str | None] = mapped_column(String(255))
    parent_message_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("channel_messages.id", ondelete="SET NULL"),
    )
    is_reply: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reply_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Provider synchronization
    sync_status: Mapped[str] = mapped_column(
        String(20), default="pending", nullable=False
    )  # pending, synced, failed, retrying
    sync_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        # Also the admission key for idempotent ingestion
        UniqueConstraint(
            "conversation_id",
            "external_message_id",
            name="uq_channel_messages_conversation_external",
        ),
        Index("ix_channel_messages_conversation_sent_at", "conversation_id", "sent_at"),
    )
