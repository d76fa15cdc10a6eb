import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select, update

from factories import make_client, make_merchant, make_reward
from spinloyal_api.core.clock import ensure_aware, utcnow, utctoday
from spinloyal_api.models import (
    Coupon,
    LoyaltyClient,
    LoyaltyReward,
    PointsTransaction,
    PointsTransactionType,
    RedeemedReward,
    RedemptionStatus,
    SpinOutcome,
    SpinRecord,
)
from spinloyal_api.services.errors import (
    AlreadyUsedError,
    ConfigurationError,
    ExpiredError,
    InactiveRewardError,
    InsufficientPointsError,
    NotFoundError,
    OutOfStockError,
    RaceLostError,
    TokenCancelledError,
    ValidationError,
    WrongMerchantError,
)
from spinloyal_api.services.loyalty import PointsLedger
from spinloyal_api.services.redemptions import RedemptionService, TokenKind
from spinloyal_api.services.redemptions.tokens import REDEMPTION_CODE_PATTERN, extract_token_code


async def _seed(session, *, balance: int, points_cost: int = 100, stock: int | None = 5, **reward_overrides):
    merchant = make_merchant()
    client = make_client(merchant)
    reward = make_reward(merchant, points_cost=points_cost, quantity_available=stock, **reward_overrides)
    session.add_all([merchant, client, reward])
    await session.commit()
    if balance:
        await PointsLedger(session).adjust(client.id, merchant.id, balance, "Seed balance")
        await session.commit()
    return merchant, client, reward


async def _pending_code(session, merchant, client, reward, code: str, *, expires_in=timedelta(days=30)):
    session.add(
        RedeemedReward(
            client_id=client.id,
            merchant_id=merchant.id,
            reward_id=reward.id,
            redemption_code=code,
            points_spent=reward.points_cost,
            status=RedemptionStatus.PENDING,
            expires_at=utcnow() + expires_in,
        )
    )
    await session.commit()


def test_extract_token_code_accepts_urls_and_bare_codes() -> None:
    assert extract_token_code(" rwd-ab12c ") == "RWD-AB12C"
    assert extract_token_code("https://app.example.com/redeem?code=rwd-ab12c&src=qr") == "RWD-AB12C"
    with pytest.raises(ValidationError):
        extract_token_code("https://app.example.com/redeem?code=")
    with pytest.raises(ValidationError):
        extract_token_code(None)


@pytest.mark.asyncio
async def test_insufficient_points_leaves_no_trace(session_factory, reward_store) -> None:
    async with session_factory() as session:
        _, client, reward = await _seed(session, balance=50, points_cost=100)

        with pytest.raises(InsufficientPointsError) as excinfo:
            await RedemptionService(session).redeem_reward(client.id, reward.id)

        assert excinfo.value.available == 50
        assert excinfo.value.required == 100

    async with session_factory() as session:
        stock = await session.scalar(select(LoyaltyReward.quantity_available))
        redeem_entries = await session.scalar(
            select(func.count())
            .select_from(PointsTransaction)
            .where(PointsTransaction.type == PointsTransactionType.REDEEM)
        )
        redemptions = await session.scalar(select(func.count()).select_from(RedeemedReward))
        points = await session.scalar(select(LoyaltyClient.points))
    assert stock == 5
    assert redeem_entries == 0
    assert redemptions == 0
    assert points == 50
    assert reward_store.snapshot().redemptions == {"insufficient_points": 1}


@pytest.mark.asyncio
async def test_redeem_debits_points_and_stock(session_factory) -> None:
    async with session_factory() as session:
        _, client, reward = await _seed(session, balance=150, stock=2)

        redemption = await RedemptionService(session).redeem_reward(client.id, reward.id)
        await session.commit()

        assert REDEMPTION_CODE_PATTERN.fullmatch(redemption.redemption_code)
        assert redemption.status is RedemptionStatus.PENDING
        assert redemption.points_spent == 100
        remaining = ensure_aware(redemption.expires_at) - utcnow()
        assert timedelta(days=29) < remaining <= timedelta(days=30)

    async with session_factory() as session:
        refreshed_client = await session.get(LoyaltyClient, client.id)
        refreshed_reward = await session.get(LoyaltyReward, reward.id)
        debit = (
            await session.execute(
                select(PointsTransaction).where(PointsTransaction.type == PointsTransactionType.REDEEM)
            )
        ).scalar_one()
    assert refreshed_client.points == 50
    assert refreshed_reward.quantity_available == 1
    assert debit.points == -100
    assert debit.balance_after == 50


@pytest.mark.asyncio
async def test_redeem_rejects_inactive_and_out_of_stock_rewards(session_factory) -> None:
    async with session_factory() as session:
        merchant, client, inactive = await _seed(session, balance=500, is_active=False)
        sold_out = make_reward(merchant, points_cost=100, quantity_available=0, name="Sold out")
        session.add(sold_out)
        await session.commit()
        service = RedemptionService(session)

        with pytest.raises(InactiveRewardError):
            await service.redeem_reward(client.id, inactive.id)
        with pytest.raises(OutOfStockError):
            await service.redeem_reward(client.id, sold_out.id)
        with pytest.raises(NotFoundError):
            await service.redeem_reward(client.id, uuid4())


@pytest.mark.asyncio
async def test_redeem_refused_while_loyalty_disabled(session_factory) -> None:
    async with session_factory() as session:
        merchant, client, reward = await _seed(session, balance=200)
        merchant.loyalty_enabled = False
        await session.commit()

        with pytest.raises(ConfigurationError):
            await RedemptionService(session).redeem_reward(client.id, reward.id)

    async with session_factory() as session:
        assert await session.scalar(select(func.count()).select_from(RedeemedReward)) == 0
        assert (await session.get(LoyaltyClient, client.id)).points == 200
        assert (await session.get(LoyaltyReward, reward.id)).quantity_available == 5


@pytest.mark.asyncio
async def test_counters_only_count_committed_work(session_factory, reward_store, monkeypatch) -> None:
    async with session_factory() as session:
        _, client, reward = await _seed(session, balance=150)
    reward_store.reset()

    async def no_free_codes(self, column, factory):
        raise RaceLostError("Could not allocate a unique token code")

    monkeypatch.setattr(RedemptionService, "_unique_code", no_free_codes)
    async with session_factory() as session:
        with pytest.raises(RaceLostError):
            await RedemptionService(session).redeem_reward(client.id, reward.id)

    assert reward_store.snapshot().ledger == {}
    assert reward_store.snapshot().redemptions == {"race_lost": 1}

    monkeypatch.undo()
    async with session_factory() as session:
        await RedemptionService(session).redeem_reward(client.id, reward.id)
        assert reward_store.snapshot().ledger == {}
        await session.commit()

    assert reward_store.snapshot().ledger == {"redeem": 1}
    assert reward_store.snapshot().redemptions == {"race_lost": 1, "pending": 1}
    async with session_factory() as session:
        assert (await session.get(LoyaltyClient, client.id)).points == 50


@pytest.mark.asyncio
async def test_code_can_only_be_used_once(session_factory) -> None:
    async with session_factory() as session:
        merchant, client, reward = await _seed(session, balance=0)
        await _pending_code(session, merchant, client, reward, "RWD-AB12C")
        service = RedemptionService(session)

        state = await service.validate_token("RWD-AB12C", merchant.id)
        assert state.kind is TokenKind.REDEMPTION
        assert state.status == "pending"
        assert state.label == reward.name

        used = await service.mark_token_used("rwd-ab12c", merchant.id)
        await session.commit()
        assert used.status == "used"
        assert used.used_at is not None

        with pytest.raises(AlreadyUsedError) as excinfo:
            await service.mark_token_used("RWD-AB12C", merchant.id)
        assert excinfo.value.used_at == used.used_at

    async with session_factory() as session:
        stored = (
            await session.execute(select(RedeemedReward).where(RedeemedReward.redemption_code == "RWD-AB12C"))
        ).scalar_one()
    assert ensure_aware(stored.used_at) == used.used_at
    assert stored.status is RedemptionStatus.USED


@pytest.mark.asyncio
async def test_validation_conflicts(session_factory) -> None:
    async with session_factory() as session:
        merchant, client, reward = await _seed(session, balance=0)
        await _pending_code(session, merchant, client, reward, "RWD-OLD01", expires_in=timedelta(hours=-1))
        await _pending_code(session, merchant, client, reward, "RWD-FRESH1")
        service = RedemptionService(session)

        with pytest.raises(ExpiredError):
            await service.validate_token("RWD-OLD01", merchant.id)
        with pytest.raises(ExpiredError):
            await service.mark_token_used("RWD-OLD01", merchant.id)
        with pytest.raises(WrongMerchantError):
            await service.validate_token("RWD-FRESH1", uuid4())
        with pytest.raises(NotFoundError):
            await service.validate_token("RWD-NOPE1", merchant.id)


@pytest.mark.asyncio
async def test_marked_codes_report_their_mark_after_expiry(session_factory) -> None:
    async with session_factory() as session:
        merchant, client, reward = await _seed(session, balance=200, stock=3)
        service = RedemptionService(session)
        cancelled = await service.redeem_reward(client.id, reward.id)
        used = await service.redeem_reward(client.id, reward.id)
        await session.commit()
        await service.cancel_redemption(cancelled.redemption_code, merchant.id)
        await service.mark_token_used(used.redemption_code, merchant.id)
        await session.execute(update(RedeemedReward).values(expires_at=utcnow() - timedelta(days=1)))
        await session.commit()

        with pytest.raises(TokenCancelledError):
            await service.validate_token(cancelled.redemption_code, merchant.id)
        with pytest.raises(AlreadyUsedError):
            await service.validate_token(used.redemption_code, merchant.id)


@pytest.mark.asyncio
async def test_wheel_coupon_lifecycle(session_factory) -> None:
    async with session_factory() as session:
        merchant = make_merchant()
        spin = SpinRecord(
            id=uuid4(),
            merchant_id=merchant.id,
            client_identity_token="visitor-1",
            outcome=SpinOutcome.PRIZE,
            spin_date=utctoday(),
        )
        session.add_all([merchant, spin])
        await session.flush()
        service = RedemptionService(session)
        coupon = await service.issue_coupon(spin, "Croissant", merchant)
        await session.commit()

        state = await service.validate_token(f"https://spin.example.com/coupon?code={coupon.code}", merchant.id)
        assert state.kind is TokenKind.COUPON
        assert state.label == "Croissant"

        with pytest.raises(ValidationError):
            await service.cancel_redemption(coupon.code, merchant.id)

        used = await service.mark_token_used(coupon.code, merchant.id)
        await session.commit()
        assert used.status == "used"

        with pytest.raises(AlreadyUsedError):
            await service.validate_token(coupon.code, merchant.id)

        stored = await session.get(Coupon, coupon.id, populate_existing=True)
        assert stored.used is True


@pytest.mark.asyncio
async def test_cancel_refunds_points_and_restocks(session_factory) -> None:
    async with session_factory() as session:
        merchant, client, reward = await _seed(session, balance=100, stock=1)
        service = RedemptionService(session)
        redemption = await service.redeem_reward(client.id, reward.id)
        await session.commit()
        code = redemption.redemption_code

        state = await service.cancel_redemption(code, merchant.id)
        await session.commit()
        assert state.status == "cancelled"

        with pytest.raises(TokenCancelledError):
            await service.cancel_redemption(code, merchant.id)
        with pytest.raises(TokenCancelledError):
            await service.mark_token_used(code, merchant.id)

    async with session_factory() as session:
        assert (await session.get(LoyaltyClient, client.id)).points == 100
        assert (await session.get(LoyaltyReward, reward.id)).quantity_available == 1
        assert (await PointsLedger(session).verify_balance(client.id)).consistent


@pytest.mark.asyncio
async def test_expire_stale_redemptions_refunds_points(session_factory, reward_store) -> None:
    async with session_factory() as session:
        merchant, client, reward = await _seed(session, balance=100, stock=3)
        redemption = await RedemptionService(session).redeem_reward(client.id, reward.id)
        await session.commit()

        expired = await RedemptionService(session).expire_stale_redemptions(now=utcnow() + timedelta(days=31))
        await session.commit()
        assert expired == [redemption.redemption_code]

        again = await RedemptionService(session).expire_stale_redemptions(now=utcnow() + timedelta(days=31))
        assert again == []

    async with session_factory() as session:
        stored = await session.get(RedeemedReward, redemption.id)
        assert stored.status is RedemptionStatus.EXPIRED
        assert (await session.get(LoyaltyClient, client.id)).points == 100
        assert (await session.get(LoyaltyReward, reward.id)).quantity_available == 3
    assert reward_store.snapshot().redemptions["expired"] == 1


@pytest.mark.asyncio
async def test_concurrent_marks_allow_exactly_one_success(file_session_factory) -> None:
    async with file_session_factory() as session:
        merchant, client, reward = await _seed(session, balance=0)
        await _pending_code(session, merchant, client, reward, "RWD-RACE1")

    async def scan():
        async with file_session_factory() as session:
            try:
                await RedemptionService(session).mark_token_used("RWD-RACE1", merchant.id)
            except AlreadyUsedError:
                return "already_used"
            await session.commit()
            return "used"

    outcomes = await asyncio.gather(*(scan() for _ in range(6)))

    assert sorted(outcomes) == ["already_used"] * 5 + ["used"]


@pytest.mark.asyncio
async def test_concurrent_redemptions_never_oversell(file_session_factory) -> None:
    async with file_session_factory() as session:
        merchant, first, reward = await _seed(session, balance=200, stock=2)
        clients = [first]
        for _ in range(4):
            extra = make_client(merchant)
            session.add(extra)
            await session.commit()
            await PointsLedger(session).adjust(extra.id, merchant.id, 200, "Seed balance")
            await session.commit()
            clients.append(extra)

    async def redeem(client_id):
        async with file_session_factory() as session:
            try:
                await RedemptionService(session).redeem_reward(client_id, reward.id)
            except OutOfStockError:
                return "out_of_stock"
            await session.commit()
            return "redeemed"

    outcomes = await asyncio.gather(*(redeem(client.id) for client in clients))

    assert sorted(outcomes) == ["out_of_stock"] * 3 + ["redeemed"] * 2
    async with file_session_factory() as session:
        assert await session.scalar(select(LoyaltyReward.quantity_available)) == 0
        assert await session.scalar(select(func.count()).select_from(RedeemedReward)) == 2
        balances = sorted((await session.execute(select(LoyaltyClient.points))).scalars().all())
    assert balances == [100, 100, 200, 200, 200]


@pytest.mark.asyncio
async def test_concurrent_redemptions_by_one_client_never_overspend(file_session_factory) -> None:
    async with file_session_factory() as session:
        _, client, reward = await _seed(session, balance=250, stock=None)

    async def redeem():
        async with file_session_factory() as session:
            try:
                await RedemptionService(session).redeem_reward(client.id, reward.id)
            except InsufficientPointsError:
                return "insufficient_points"
            except RaceLostError:
                return "race_lost"
            await session.commit()
            return "redeemed"

    outcomes = await asyncio.gather(*(redeem() for _ in range(5)))
    redeemed = outcomes.count("redeemed")

    assert 1 <= redeemed <= 2
    async with file_session_factory() as session:
        points = await session.scalar(select(LoyaltyClient.points).where(LoyaltyClient.id == client.id))
        codes = await session.scalar(select(func.count()).select_from(RedeemedReward))
        check = await PointsLedger(session).verify_balance(client.id)
    assert points == 250 - 100 * redeemed
    assert points >= 0
    assert codes == redeemed
    assert check.consistent
