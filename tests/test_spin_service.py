from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from factories import make_merchant, make_prize
from spinloyal_api.core.clock import ensure_aware, utcnow
from spinloyal_api.models import Coupon, SpinOutcome, SpinRecord
from spinloyal_api.services.errors import AlreadySpunTodayError, NotFoundError, ValidationError
from spinloyal_api.services.wheel import SegmentKind, SpinService


class FixedRandom:
    """Always returns the same fraction of the total weight."""

    def __init__(self, value: float) -> None:
        self.value = value

    def random(self) -> float:
        return self.value


async def _seed_wheel(session):
    # Croissant is cycled to 4 x 12.5; layout is P U P R P P
    merchant = make_merchant()
    session.add(merchant)
    session.add(make_prize(merchant, "Croissant", 50))
    await session.commit()
    return merchant


async def _spin_count(session) -> int:
    return await session.scalar(select(func.count()).select_from(SpinRecord))


@pytest.mark.asyncio
async def test_prize_spin_issues_coupon_and_uses_daily_spin(session_factory, reward_store) -> None:
    async with session_factory() as session:
        merchant = await _seed_wheel(session)

        result = await SpinService(session, rng=FixedRandom(0.0)).spin(merchant.id, "visitor-1")
        await session.commit()

        assert result.outcome is SegmentKind.PRIZE
        assert result.segment_index == 0
        assert result.spin is not None and result.spin.outcome is SpinOutcome.PRIZE
        assert result.coupon is not None
        assert result.coupon.code.startswith("STA-")
        assert result.coupon.prize_name == "Croissant"
        assert result.coupon.used is False
        expires_in = ensure_aware(result.coupon.expires_at) - utcnow()
        assert timedelta(hours=23) < expires_in <= timedelta(hours=24)

        with pytest.raises(AlreadySpunTodayError):
            await SpinService(session, rng=FixedRandom(0.0)).spin(merchant.id, "visitor-1")

        coupons = (await session.execute(select(Coupon))).scalars().all()
        assert len(coupons) == 1
        assert coupons[0].spin_id == result.spin.id

    snapshot = reward_store.snapshot()
    assert snapshot.spins["prize"] == 1
    assert snapshot.spins["rejected"] == 1
    assert snapshot.coupons["issued"] == 1


@pytest.mark.asyncio
async def test_retry_outcome_does_not_consume_daily_spin(session_factory) -> None:
    async with session_factory() as session:
        merchant = await _seed_wheel(session)

        retry = await SpinService(session, rng=FixedRandom(0.6)).spin(merchant.id, "visitor-2")
        await session.commit()

        assert retry.outcome is SegmentKind.RETRY
        assert retry.spin is None
        assert retry.coupon is None
        assert await _spin_count(session) == 0

        unlucky = await SpinService(session, rng=FixedRandom(0.3)).spin(merchant.id, "visitor-2")
        await session.commit()

        assert unlucky.outcome is SegmentKind.UNLUCKY
        assert unlucky.spin is not None and unlucky.spin.outcome is SpinOutcome.UNLUCKY
        assert unlucky.coupon is None
        assert await _spin_count(session) == 1
        assert await SpinService(session).has_spun_today(merchant.id, "visitor-2") is True


@pytest.mark.asyncio
async def test_daily_gate_is_scoped_per_merchant(session_factory) -> None:
    async with session_factory() as session:
        first = await _seed_wheel(session)
        second = await _seed_wheel(session)

        await SpinService(session, rng=FixedRandom(0.3)).spin(first.id, "visitor-3")
        await session.commit()
        result = await SpinService(session, rng=FixedRandom(0.3)).spin(second.id, "visitor-3")
        await session.commit()

        assert result.spin is not None
        assert await _spin_count(session) == 2


@pytest.mark.asyncio
async def test_spin_requires_token_and_known_merchant(session_factory) -> None:
    async with session_factory() as session:
        merchant = await _seed_wheel(session)

        with pytest.raises(ValidationError):
            await SpinService(session).spin(merchant.id, "   ")
        with pytest.raises(NotFoundError):
            await SpinService(session).spin(uuid4(), "visitor-4")


@pytest.mark.asyncio
async def test_preview_ignores_inactive_prizes(session_factory) -> None:
    async with session_factory() as session:
        merchant = make_merchant(unlucky_quantity=0, retry_quantity=0)
        session.add(merchant)
        session.add_all(
            [
                make_prize(merchant, "Active", 40),
                make_prize(merchant, "Retired", 60, is_active=False),
            ]
        )
        await session.commit()

        segments = await SpinService(session).preview(merchant.id)

    labels = {segment.label for segment in segments if segment.kind is SegmentKind.PRIZE}
    assert labels == {"Active"}
