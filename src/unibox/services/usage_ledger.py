"""Usage ledger: per-user, per-provider monthly message counters.

Counters are only mutated with single-statement SQL increments. Sends use a
conditional increment (``messages_sent < limit``) so that concurrent
reservations cannot both pass a stale check; receipts are counted but never
rejected.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from unibox.database.dialect import insert_for
from unibox.database.models import (
    LIMIT_MESSAGES_PER_PERIOD,
    ChannelEntitlement,
    UsageCounter,
    _generate_uuid,
)
from unibox.utils.timeutil import period_key, utcnow

logger = structlog.get_logger()

# Older plan definitions used these names for the monthly message ceiling
LIMIT_ALIASES: dict[str, str] = {
    "messagesPerMonth": LIMIT_MESSAGES_PER_PERIOD,
    "messages_per_month": LIMIT_MESSAGES_PER_PERIOD,
}


@dataclass(frozen=True)
class ChannelLimits:
    """Limits merged across a user's valid entitlements for one provider."""

    provider: str
    enabled: bool
    messages_per_period: int
    limits: dict[str, Any] = field(default_factory=dict)
    sources: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SendReservation:
    """Outcome of a send reservation.

    ``reserved`` is False when the limit was already reached, in which case
    ``sent`` is the unchanged counter value.
    """

    reserved: bool
    sent: int
    limit: int
    period: str


@dataclass(frozen=True)
class ProviderUsage:
    """Usage of one provider in one period."""

    provider: str
    period: str
    messages_sent: int
    messages_received: int
    limit: int
    usage_metrics: dict[str, Any] = field(default_factory=dict)

    @property
    def total_messages(self) -> int:
        return self.messages_sent + self.messages_received

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "period": self.period,
            "messages_sent": self.messages_sent,
            "messages_received": self.messages_received,
            "total_messages": self.total_messages,
            "limit": self.limit,
            "usage_metrics": self.usage_metrics,
        }


def current_period(now: datetime | None = None) -> str:
    """Period key (YYYY-MM, UTC) for now or the given moment."""
    return period_key(now or utcnow())


def _merge_limits(entitlements: list[ChannelEntitlement]) -> dict[str, Any]:
    """Per-key max of numeric limits; booleans are OR-ed."""
    merged: dict[str, Any] = {}
    for entitlement in entitlements:
        for raw_key, value in (entitlement.limits or {}).items():
            key = LIMIT_ALIASES.get(raw_key, raw_key)
            current = merged.get(key)
            if isinstance(value, bool):
                merged[key] = bool(current) or value
            elif isinstance(value, int | float):
                merged[key] = value if current is None else max(current, value)
            elif current is None:
                merged[key] = value
    return merged


async def get_limits(
    db: AsyncSession,
    user_id: str,
    provider: str,
    now: datetime | None = None,
) -> ChannelLimits:
    """Compute the active limits for a user and provider.

    No valid entitlement means the provider is not enabled and the message
    limit is zero.
    """
    now = now or utcnow()
    result = await db.execute(
        select(ChannelEntitlement).where(
            ChannelEntitlement.user_id == user_id,
            ChannelEntitlement.provider == provider,
        )
    )
    valid = [e for e in result.scalars().all() if e.is_valid(now)]
    merged = _merge_limits(valid)
    return ChannelLimits(
        provider=provider,
        enabled=bool(valid),
        messages_per_period=int(merged.get(LIMIT_MESSAGES_PER_PERIOD, 0) or 0),
        limits=merged,
        sources=sorted(e.source for e in valid),
    )


async def _ensure_counter(db: AsyncSession, user_id: str, provider: str, period: str) -> None:
    """Create the period's counter row if it does not exist yet."""
    stmt = (
        insert_for(db, UsageCounter)
        .values(
            id=_generate_uuid(),
            user_id=user_id,
            provider=provider,
            period=period,
            messages_sent=0,
            messages_received=0,
            usage_metrics={},
        )
        .on_conflict_do_nothing(index_elements=["user_id", "provider", "period"])
    )
    await db.execute(stmt)


def _counter_filter(user_id: str, provider: str, period: str) -> list[Any]:
    return [
        UsageCounter.user_id == user_id,
        UsageCounter.provider == provider,
        UsageCounter.period == period,
    ]


async def record_received(
    db: AsyncSession,
    user_id: str,
    provider: str,
    metrics: dict[str, int] | None = None,
    now: datetime | None = None,
) -> int:
    """Count one received message for the current period.

    Args:
        db: Session with an open transaction.
        user_id: Owning user.
        provider: Provider tag.
        metrics: Optional metric increments merged into ``usage_metrics``.
        now: Clock override.

    Returns:
        The new received count.
    """
    period = current_period(now)
    await _ensure_counter(db, user_id, provider, period)

    # The increment takes the row lock, so the metrics merge below cannot interleave
    result = await db.execute(
        update(UsageCounter)
        .where(*_counter_filter(user_id, provider, period))
        .values(messages_received=UsageCounter.messages_received + 1)
        .returning(UsageCounter.messages_received, UsageCounter.usage_metrics)
    )
    row = result.one()

    if metrics:
        await _merge_metrics(db, user_id, provider, period, dict(row.usage_metrics or {}), metrics)

    return int(row.messages_received)


async def _merge_metrics(
    db: AsyncSession,
    user_id: str,
    provider: str,
    period: str,
    current: dict[str, Any],
    increments: dict[str, int],
) -> None:
    for key, amount in increments.items():
        if amount:
            current[key] = int(current.get(key, 0) or 0) + int(amount)
    await db.execute(
        update(UsageCounter)
        .where(*_counter_filter(user_id, provider, period))
        .values(usage_metrics=current)
    )


async def reserve_send(
    db: AsyncSession,
    user_id: str,
    provider: str,
    now: datetime | None = None,
) -> SendReservation:
    """Atomically check ``sent < limit`` and increment the sent counter.

    On rejection the counter is left untouched.
    """
    limits = await get_limits(db, user_id, provider, now)
    period = current_period(now)
    await _ensure_counter(db, user_id, provider, period)

    result = await db.execute(
        update(UsageCounter)
        .where(
            *_counter_filter(user_id, provider, period),
            UsageCounter.messages_sent < limits.messages_per_period,
        )
        .values(messages_sent=UsageCounter.messages_sent + 1)
        .returning(UsageCounter.messages_sent)
    )
    sent = result.scalar_one_or_none()
    if sent is not None:
        logger.debug(
            "Send reserved",
            user_id=user_id,
            provider=provider,
            period=period,
            sent=sent,
            limit=limits.messages_per_period,
        )
        return SendReservation(
            reserved=True, sent=int(sent), limit=limits.messages_per_period, period=period
        )

    current = await db.execute(
        select(UsageCounter.messages_sent).where(*_counter_filter(user_id, provider, period))
    )
    current_sent = int(current.scalar_one_or_none() or 0)
    logger.info(
        "Send rejected by usage limit",
        user_id=user_id,
        provider=provider,
        period=period,
        sent=current_sent,
        limit=limits.messages_per_period,
    )
    return SendReservation(
        reserved=False, sent=current_sent, limit=limits.messages_per_period, period=period
    )


async def get_usage(
    db: AsyncSession,
    user_id: str,
    period: str | None = None,
    now: datetime | None = None,
) -> list[ProviderUsage]:
    """Usage per provider for a period, including entitled providers with no traffic."""
    period = period or current_period(now)

    counters_result = await db.execute(
        select(UsageCounter).where(
            UsageCounter.user_id == user_id,
            UsageCounter.period == period,
        )
    )
    counters = {c.provider: c for c in counters_result.scalars().all()}

    entitlements_result = await db.execute(
        select(ChannelEntitlement.provider).where(ChannelEntitlement.user_id == user_id).distinct()
    )
    providers = sorted(set(counters) | set(entitlements_result.scalars().all()))

    usage: list[ProviderUsage] = []
    for provider in providers:
        limits = await get_limits(db, user_id, provider, now)
        counter = counters.get(provider)
        usage.append(
            ProviderUsage(
                provider=provider,
                period=period,
                messages_sent=counter.messages_sent if counter else 0,
                messages_received=counter.messages_received if counter else 0,
                limit=limits.messages_per_period,
                usage_metrics=dict(counter.usage_metrics or {}) if counter else {},
            )
        )
    return usage
