"""Points ledger: the only writer of loyalty balances."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from spinloyal_api.core.clock import utcnow
from spinloyal_api.core.settings import settings
from spinloyal_api.models.loyalty import (
    ClientStatus,
    LoyaltyClient,
    PointsTransaction,
    PointsTransactionType,
)
from spinloyal_api.models.merchant import Merchant
from spinloyal_api.observability.rewards import RewardObservabilityStore, get_reward_store
from spinloyal_api.services.errors import (
    ConfigurationError,
    InactiveClientError,
    InsufficientBalanceError,
    NotFoundError,
    RaceLostError,
    RewardEngineError,
    ValidationError,
)


def calculate_earned_points(
    purchase_amount: Decimal | int | float | str,
    threshold: int,
    points_per_purchase: int,
) -> int:
    """Points for one purchase: one block of ``points_per_purchase`` per full ``threshold``."""

    try:
        amount = Decimal(str(purchase_amount))
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid purchase amount {purchase_amount!r}") from exc
    if not amount.is_finite() or amount < 0:
        raise ValidationError("Purchase amount must be a non-negative number")
    if threshold <= 0:
        raise ConfigurationError("Purchase amount threshold must be positive")
    if points_per_purchase < 0:
        raise ConfigurationError("Points per purchase must not be negative")
    return int(amount // Decimal(threshold)) * points_per_purchase


@dataclass(slots=True)
class EarnResult:
    points_earned: int
    new_balance: int
    client: LoyaltyClient


@dataclass(slots=True)
class BalanceCheck:
    client_id: UUID
    cached_points: int
    ledger_points: int

    @property
    def consistent(self) -> bool:
        return self.cached_points == self.ledger_points


class PointsLedger:
    """Append ledger rows and move the cached balance in the same unit of work.

    The balance write is a compare-and-set on the value read immediately
    before it, so two writers racing on one client cannot both succeed;
    the loser gets ``RaceLostError`` and nothing is written for it.
    Callers commit; a write that fails midway rolls the session back.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        observability: RewardObservabilityStore | None = None,
    ) -> None:
        self._db = db_session
        self._observability = observability or get_reward_store()

    async def apply_transaction(
        self,
        client_id: UUID,
        merchant_id: UUID,
        transaction_type: PointsTransactionType,
        delta: int,
        description: str | None = None,
    ) -> int:
        """Post ``delta`` to the client's balance and return the new balance."""

        if delta == 0:
            raise ValidationError("Ledger transactions must move a non-zero amount of points")

        current = await self._db.scalar(
            select(LoyaltyClient.points).where(
                LoyaltyClient.id == client_id,
                LoyaltyClient.merchant_id == merchant_id,
            )
        )
        if current is None:
            raise NotFoundError("Loyalty client", client_id)

        new_balance = current + delta
        if new_balance < 0:
            raise InsufficientBalanceError(current, delta)

        result = await self._db.execute(
            update(LoyaltyClient)
            .where(LoyaltyClient.id == client_id, LoyaltyClient.points == current)
            .values(points=new_balance)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "Ledger balance changed underneath transaction",
                client_id=str(client_id),
                expected_balance=current,
                transaction_type=transaction_type.value,
            )
            raise RaceLostError(f"Balance of client {client_id} changed concurrently")

        entry = PointsTransaction(
            client_id=client_id,
            merchant_id=merchant_id,
            type=transaction_type,
            points=delta,
            balance_after=new_balance,
            description=description,
            created_at=utcnow(),
        )
        try:
            self._db.add(entry)
            await self._db.flush()
        except SQLAlchemyError:
            await self._db.rollback()
            raise
        # refresh any instance already loaded so callers never see the pre-CAS balance
        await self._db.get(LoyaltyClient, client_id, populate_existing=True)

        self._observability.record_ledger_transaction(transaction_type.value, session=self._db)
        logger.info(
            "Recorded points transaction",
            client_id=str(client_id),
            merchant_id=str(merchant_id),
            transaction_type=transaction_type.value,
            points=delta,
            balance_after=new_balance,
        )
        return new_balance

    async def earn_points(
        self,
        client_id: UUID,
        merchant_id: UUID,
        purchase_amount: Decimal | int | float | str,
        *,
        description: str | None = None,
    ) -> EarnResult:
        """Record a purchase and credit the points it earns under the merchant's rates."""

        merchant = await self._db.get(Merchant, merchant_id)
        if merchant is None:
            raise NotFoundError("Merchant", merchant_id)
        if not merchant.loyalty_enabled:
            raise ConfigurationError("Loyalty program is not enabled for this merchant")

        client = await self._load_client(client_id, merchant_id)
        if client.status != ClientStatus.ACTIVE:
            raise InactiveClientError(f"Client {client_id} is {client.status.value}")

        threshold = merchant.purchase_amount_threshold or settings.default_purchase_amount_threshold
        per_purchase = (
            merchant.points_per_purchase
            if merchant.points_per_purchase is not None
            else settings.default_points_per_purchase
        )
        points = calculate_earned_points(purchase_amount, threshold, per_purchase)
        amount = Decimal(str(purchase_amount))

        try:
            await self._db.execute(
                update(LoyaltyClient)
                .where(LoyaltyClient.id == client_id)
                .values(
                    total_purchases=LoyaltyClient.total_purchases + 1,
                    total_spent=LoyaltyClient.total_spent + amount,
                    last_visit=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if points > 0:
                new_balance = await self.apply_transaction(
                    client_id,
                    merchant_id,
                    PointsTransactionType.EARN,
                    points,
                    description or f"Purchase of {amount}",
                )
            else:
                new_balance = client.points
            client = await self._load_client(client_id, merchant_id)
        except (RewardEngineError, SQLAlchemyError):
            await self._db.rollback()
            raise

        return EarnResult(points_earned=points, new_balance=new_balance, client=client)

    async def adjust(
        self,
        client_id: UUID,
        merchant_id: UUID,
        delta: int,
        description: str,
    ) -> int:
        """Staff correction; negative adjustments may not overdraw the balance."""

        if not description or not description.strip():
            raise ValidationError("Adjustments require a description")
        await self._load_client(client_id, merchant_id)
        return await self.apply_transaction(
            client_id,
            merchant_id,
            PointsTransactionType.ADJUSTMENT,
            delta,
            description.strip(),
        )

    async def history(
        self,
        client_id: UUID,
        *,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> Sequence[PointsTransaction]:
        order = PointsTransaction.created_at.desc() if newest_first else PointsTransaction.created_at.asc()
        stmt = select(PointsTransaction).where(PointsTransaction.client_id == client_id).order_by(order)
        if limit:
            stmt = stmt.limit(limit)
        return (await self._db.execute(stmt)).scalars().all()

    async def verify_balance(self, client_id: UUID) -> BalanceCheck:
        cached = await self._db.scalar(select(LoyaltyClient.points).where(LoyaltyClient.id == client_id))
        if cached is None:
            raise NotFoundError("Loyalty client", client_id)
        ledger_total = await self._db.scalar(
            select(func.coalesce(func.sum(PointsTransaction.points), 0)).where(
                PointsTransaction.client_id == client_id
            )
        )
        check = BalanceCheck(client_id=client_id, cached_points=cached, ledger_points=int(ledger_total or 0))
        if not check.consistent:
            logger.error(
                "Loyalty balance drifted from ledger",
                client_id=str(client_id),
                cached_points=check.cached_points,
                ledger_points=check.ledger_points,
            )
        return check

    async def _load_client(self, client_id: UUID, merchant_id: UUID) -> LoyaltyClient:
        client = await self._db.get(LoyaltyClient, client_id, populate_existing=True)
        if client is None or client.merchant_id != merchant_id:
            raise NotFoundError("Loyalty client", client_id)
        return client


__all__ = [
    "BalanceCheck",
    "EarnResult",
    "PointsLedger",
    "calculate_earned_points",
]
