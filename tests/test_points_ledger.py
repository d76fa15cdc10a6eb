from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from factories import make_client, make_merchant
from spinloyal_api.models import ClientStatus, LoyaltyClient, PointsTransaction, PointsTransactionType
from spinloyal_api.services.errors import (
    ConfigurationError,
    InactiveClientError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)
from spinloyal_api.services.loyalty import PointsLedger, calculate_earned_points


@pytest.mark.parametrize(
    ("amount", "threshold", "per_purchase", "expected"),
    [
        (2500, 1000, 10, 20),
        (999, 1000, 10, 0),
        (1000, 1000, 10, 10),
        (Decimal("1999.99"), 1000, 10, 10),
        ("45.50", 10, 1, 4),
        (0, 1000, 10, 0),
        (5000, 1000, 0, 0),
    ],
)
def test_calculate_earned_points_floors_to_full_blocks(amount, threshold, per_purchase, expected) -> None:
    assert calculate_earned_points(amount, threshold, per_purchase) == expected


def test_calculate_earned_points_rejects_bad_inputs() -> None:
    with pytest.raises(ValidationError):
        calculate_earned_points(-1, 1000, 10)
    with pytest.raises(ValidationError):
        calculate_earned_points("lots", 1000, 10)
    with pytest.raises(ConfigurationError):
        calculate_earned_points(100, 0, 10)


async def _seed(session, **merchant_overrides):
    merchant = make_merchant(**merchant_overrides)
    client = make_client(merchant)
    session.add_all([merchant, client])
    await session.commit()
    return merchant, client


@pytest.mark.asyncio
async def test_balance_always_equals_sum_of_transactions(session_factory, reward_store) -> None:
    async with session_factory() as session:
        merchant, client = await _seed(session)
        ledger = PointsLedger(session)

        assert await ledger.apply_transaction(
            client.id, merchant.id, PointsTransactionType.WELCOME, 50, "Welcome bonus"
        ) == 50
        result = await ledger.earn_points(client.id, merchant.id, 2500)
        assert await ledger.adjust(client.id, merchant.id, -15, "Correction") == 55
        await session.commit()

        assert result.points_earned == 20
        assert result.new_balance == 70

        check = await ledger.verify_balance(client.id)
        assert check.consistent
        assert check.cached_points == 55

        history = await ledger.history(client.id)
        assert [entry.type for entry in history] == [
            PointsTransactionType.WELCOME,
            PointsTransactionType.EARN,
            PointsTransactionType.ADJUSTMENT,
        ]
        assert [entry.balance_after for entry in history] == [50, 70, 55]

    assert reward_store.snapshot().ledger == {"welcome": 1, "earn": 1, "adjustment": 1}


@pytest.mark.asyncio
async def test_overdraw_is_rejected_without_writing(session_factory) -> None:
    async with session_factory() as session:
        merchant, client = await _seed(session)
        ledger = PointsLedger(session)
        await ledger.adjust(client.id, merchant.id, 30, "Seed")
        await session.commit()

        with pytest.raises(InsufficientBalanceError) as excinfo:
            await ledger.adjust(client.id, merchant.id, -31, "Too much")

        assert excinfo.value.balance == 30
        points = await session.scalar(select(LoyaltyClient.points).where(LoyaltyClient.id == client.id))
        entries = (await session.execute(select(PointsTransaction))).scalars().all()
        assert points == 30
        assert len(entries) == 1


@pytest.mark.asyncio
async def test_zero_and_unknown_transactions_are_rejected(session_factory) -> None:
    async with session_factory() as session:
        merchant, client = await _seed(session)
        ledger = PointsLedger(session)

        with pytest.raises(ValidationError):
            await ledger.apply_transaction(client.id, merchant.id, PointsTransactionType.ADJUSTMENT, 0)
        with pytest.raises(NotFoundError):
            await ledger.apply_transaction(uuid4(), merchant.id, PointsTransactionType.ADJUSTMENT, 5)
        with pytest.raises(NotFoundError):
            await ledger.apply_transaction(client.id, uuid4(), PointsTransactionType.ADJUSTMENT, 5)
        with pytest.raises(ValidationError):
            await ledger.adjust(client.id, merchant.id, 5, "   ")


@pytest.mark.asyncio
async def test_earn_updates_purchase_totals_even_without_points(session_factory) -> None:
    async with session_factory() as session:
        merchant, client = await _seed(session)
        ledger = PointsLedger(session)

        result = await ledger.earn_points(client.id, merchant.id, Decimal("500"))
        await session.commit()

        assert result.points_earned == 0
        assert result.new_balance == 0
        assert result.client.total_purchases == 1
        assert float(result.client.total_spent) == pytest.approx(500)
        assert result.client.last_visit is not None
        assert (await ledger.history(client.id)) == []


@pytest.mark.asyncio
async def test_earn_falls_back_to_default_rates(session_factory) -> None:
    async with session_factory() as session:
        merchant, client = await _seed(session, points_per_purchase=None, purchase_amount_threshold=None)

        result = await PointsLedger(session).earn_points(client.id, merchant.id, 3000)
        await session.commit()

    assert result.points_earned == 30


@pytest.mark.asyncio
async def test_earn_requires_enabled_program_and_active_client(session_factory) -> None:
    async with session_factory() as session:
        disabled, disabled_client = await _seed(session, loyalty_enabled=False)
        merchant, client = await _seed(session)
        client.status = ClientStatus.SUSPENDED
        await session.commit()
        ledger = PointsLedger(session)

        with pytest.raises(ConfigurationError):
            await ledger.earn_points(disabled_client.id, disabled.id, 2000)
        with pytest.raises(InactiveClientError):
            await ledger.earn_points(client.id, merchant.id, 2000)
        with pytest.raises(NotFoundError):
            await ledger.earn_points(client.id, uuid4(), 2000)
