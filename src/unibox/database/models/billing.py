"""Usage metering models: UsageCounter and ChannelEntitlement."""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, _generate_uuid

# Entitlement sources
SOURCE_PLAN = "plan"
SOURCE_ADDON = "addon"

# Limit key consulted by the usage ledger
LIMIT_MESSAGES_PER_PERIOD = "messages_per_period"


class UsageCounter(Base):
    """Per-user, per-provider, per-month message counters.

    Rows are created lazily on first use and only ever mutated through atomic
    SQL increments, so counts never decrease within a period.
    """

    __tablename__ = "usage_counters"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_generate_uuid)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    period: Mapped[str] = mapped_column(String(7), nullable=False)  # YYYY-MM (UTC)

    messages_sent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    messages_received: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    usage_metrics: Mapped[dict[str, Any]] = mapped_column(default=dict, nullable=False)

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
        UniqueConstraint("user_id", "provider", "period", name="uq_usage_counters_user_provider_period"),
    )


class ChannelEntitlement(Base):
    """Grants a user access to a provider, with optional numeric limits."""

    __tablename__ = "channel_entitlements"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_generate_uuid)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    source: Mapped[str] = mapped_column(String(20), default=SOURCE_PLAN, nullable=False)  # plan, addon
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    limits: Mapped[dict[str, Any]] = mapped_column(default=dict, nullable=False)
    entitlement_metadata: Mapped[dict[str, Any]] = mapped_column(default=dict, nullable=False)

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
        UniqueConstraint("user_id", "provider", "source", name="uq_channel_entitlements_user_provider_source"),
    )

    def is_valid(self, now: datetime) -> bool:
        """Active and not past its expiry."""
        if not self.is_active:
            return False
        if self.expires_at is None:
            return True
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            # SQLite returns naive datetimes; all stored values are UTC
            expires_at = expires_at.replace(tzinfo=now.tzinfo)
        return expires_at > now
