"""Tests for the usage ledger (limits, reservations and receipts)."""

import asyncio
from datetime import timedelta

import pytest
from helpers import OTHER_USER_ID, USER_ID, fetch_counter, seed_counter, seed_entitlement
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from unibox.database.retry import run_with_storage_retry
from unibox.services import usage_ledger
from unibox.utils.timeutil import utcnow


async def _reserve(
    session_factory: async_sessionmaker[AsyncSession], user_id: str = USER_ID
) -> usage_ledger.SendReservation:
    async def attempt() -> usage_ledger.SendReservation:
        async with session_factory() as session:
            reservation = await usage_ledger.reserve_send(session, user_id, "whatsapp")
            await session.commit()
            return reservation

    return await run_with_storage_retry("reserve send", attempt, max_attempts=10)


async def _receive(
    session_factory: async_sessionmaker[AsyncSession], metrics: dict[str, int] | None = None
) -> int:
    async with session_factory() as session:
        count = await usage_ledger.record_received(session, USER_ID, "whatsapp", metrics)
        await session.commit()
        return count


@pytest.mark.unit
class TestPeriod:
    def test_current_period_format(self) -> None:
        period = usage_ledger.current_period()
        assert len(period) == 7
        assert period[4] == "-"


@pytest.mark.integration
class TestLimits:
    @pytest.mark.asyncio
    async def test_no_entitlement_means_disabled(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        async with session_factory() as session:
            limits = await usage_ledger.get_limits(session, USER_ID, "whatsapp")
        assert limits.enabled is False
        assert limits.messages_per_period == 0

    @pytest.mark.asyncio
    async def test_limits_merge_to_maximum(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await seed_entitlement(session_factory, limit=50, source="plan")
        await seed_entitlement(session_factory, source="addon", limits={"messagesPerMonth": 200})

        async with session_factory() as session:
            limits = await usage_ledger.get_limits(session, USER_ID, "whatsapp")

        assert limits.enabled is True
        assert limits.messages_per_period == 200
        assert limits.sources == ["addon", "plan"]

    @pytest.mark.asyncio
    async def test_expired_and_inactive_entitlements_are_ignored(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await seed_entitlement(
            session_factory, limit=500, source="addon", expires_at=utcnow() - timedelta(days=1)
        )
        await seed_entitlement(session_factory, limit=300, source="plan", is_active=False)

        async with session_factory() as session:
            limits = await usage_ledger.get_limits(session, USER_ID, "whatsapp")

        assert limits.enabled is False
        assert limits.messages_per_period == 0


@pytest.mark.integration
class TestReserveSend:
    @pytest.mark.asyncio
    async def test_accepts_below_limit_and_reaches_limit(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await seed_entitlement(session_factory, limit=50)
        await seed_counter(session_factory, sent=49)

        reservation = await _reserve(session_factory)

        assert reservation.reserved is True
        assert reservation.sent == 50
        counter = await fetch_counter(session_factory)
        assert counter is not None
        assert counter.messages_sent == 50

    @pytest.mark.asyncio
    async def test_rejects_at_limit_without_incrementing(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await seed_entitlement(session_factory, limit=50)
        await seed_counter(session_factory, sent=50)

        reservation = await _reserve(session_factory)

        assert reservation.reserved is False
        assert reservation.sent == 50
        assert reservation.limit == 50
        counter = await fetch_counter(session_factory)
        assert counter is not None
        assert counter.messages_sent == 50

    @pytest.mark.asyncio
    async def test_49_of_50_allows_exactly_one_more(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await seed_entitlement(session_factory, limit=50)
        await seed_counter(session_factory, sent=49)

        first = await _reserve(session_factory)
        second = await _reserve(session_factory)

        assert first.reserved is True
        assert second.reserved is False
        counter = await fetch_counter(session_factory)
        assert counter is not None
        assert counter.messages_sent == 50

    @pytest.mark.asyncio
    async def test_creates_counter_lazily(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await seed_entitlement(session_factory, limit=10)
        assert await fetch_counter(session_factory) is None

        reservation = await _reserve(session_factory)

        assert reservation.reserved is True
        assert reservation.sent == 1
        assert reservation.period == usage_ledger.current_period()

    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_exceed_limit(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await seed_entitlement(session_factory, limit=5)

        results = await asyncio.gather(*[_reserve(session_factory) for _ in range(12)])

        assert sum(1 for r in results if r.reserved) == 5
        counter = await fetch_counter(session_factory)
        assert counter is not None
        assert counter.messages_sent == 5

    @pytest.mark.asyncio
    async def test_counters_are_per_user(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await seed_entitlement(session_factory, limit=1)
        await seed_entitlement(session_factory, user_id=OTHER_USER_ID, limit=1)

        assert (await _reserve(session_factory)).reserved is True
        assert (await _reserve(session_factory, OTHER_USER_ID)).reserved is True
        assert (await _reserve(session_factory)).reserved is False


@pytest.mark.integration
class TestRecordReceived:
    @pytest.mark.asyncio
    async def test_counts_without_limit(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        # No entitlement at all: receipts are still counted
        assert await _receive(session_factory) == 1
        assert await _receive(session_factory) == 2

    @pytest.mark.asyncio
    async def test_merges_metrics(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        await _receive(session_factory, {"attachments": 2})
        await _receive(session_factory, {"attachments": 1})

        counter = await fetch_counter(session_factory)
        assert counter is not None
        assert counter.messages_received == 2
        assert counter.usage_metrics == {"attachments": 3}


@pytest.mark.integration
class TestGetUsage:
    @pytest.mark.asyncio
    async def test_includes_entitled_providers_without_traffic(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await seed_entitlement(session_factory, provider="telegram", limit=20)
        await seed_entitlement(session_factory, provider="whatsapp", limit=50)
        await seed_counter(session_factory, provider="whatsapp", sent=3, received=4)

        async with session_factory() as session:
            usage = await usage_ledger.get_usage(session, USER_ID)

        by_provider = {u.provider: u.to_dict() for u in usage}
        assert by_provider["whatsapp"]["messages_sent"] == 3
        assert by_provider["whatsapp"]["messages_received"] == 4
        assert by_provider["whatsapp"]["total_messages"] == 7
        assert by_provider["whatsapp"]["limit"] == 50
        assert by_provider["telegram"]["total_messages"] == 0
        assert by_provider["telegram"]["limit"] == 20

    @pytest.mark.asyncio
    async def test_other_period_is_empty(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await seed_counter(session_factory, sent=3)

        async with session_factory() as session:
            usage = await usage_ledger.get_usage(session, USER_ID, "1999-01")

        assert usage == []
