"""Issue, validate and consume single-use reward tokens."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from spinloyal_api.core.clock import ensure_aware, utcnow
from spinloyal_api.core.settings import settings
from spinloyal_api.models.loyalty import (
    ClientStatus,
    LoyaltyClient,
    LoyaltyReward,
    PointsTransactionType,
    RedeemedReward,
    RedemptionStatus,
)
from spinloyal_api.models.merchant import Merchant
from spinloyal_api.models.wheel import Coupon, SpinRecord
from spinloyal_api.observability.rewards import RewardObservabilityStore, get_reward_store
from spinloyal_api.services.errors import (
    AlreadyUsedError,
    ConfigurationError,
    ExpiredError,
    InactiveClientError,
    InactiveRewardError,
    InsufficientBalanceError,
    InsufficientPointsError,
    NotFoundError,
    OutOfStockError,
    RaceLostError,
    RewardEngineError,
    TokenCancelledError,
    ValidationError,
    WrongMerchantError,
)
from spinloyal_api.services.loyalty.ledger import PointsLedger
from spinloyal_api.services.redemptions.tokens import (
    TokenKind,
    TokenState,
    extract_token_code,
    generate_coupon_code,
    generate_redemption_code,
)


_CODE_ATTEMPTS = 10


class RedemptionService:
    """Lifecycle of wheel coupons and loyalty redemption codes.

    Every state change is a conditional update keyed on the prior state and
    checked by affected-row count; when the count is zero the row is re-read
    and the caller gets the conflict that explains the current state.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: PointsLedger | None = None,
        observability: RewardObservabilityStore | None = None,
    ) -> None:
        self._db = db_session
        self._observability = observability or get_reward_store()
        self._ledger = ledger or PointsLedger(db_session, observability=self._observability)

    async def issue_coupon(self, spin: SpinRecord, prize_name: str, merchant: Merchant) -> Coupon:
        """Persist an unused coupon for a winning spin, valid for ``coupon_ttl_hours``."""

        coupon = Coupon(
            spin_id=spin.id,
            merchant_id=merchant.id,
            code=await self._unique_code(Coupon.code, lambda: generate_coupon_code(merchant.name)),
            prize_name=prize_name,
            expires_at=utcnow() + timedelta(hours=settings.coupon_ttl_hours),
            used=False,
        )
        self._db.add(coupon)
        await self._db.flush()

        self._observability.record_coupon_issued(session=self._db)
        logger.info(
            "Issued wheel coupon",
            merchant_id=str(merchant.id),
            spin_id=str(spin.id),
            coupon_code=coupon.code,
        )
        return coupon

    async def get_coupon(self, raw_code: str, merchant_id: UUID) -> Coupon:
        """Read a wheel coupon for its holder without changing its state."""

        code = extract_token_code(raw_code)
        coupon = (
            await self._db.execute(
                select(Coupon)
                .where(Coupon.code == code, Coupon.merchant_id == merchant_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if coupon is None:
            raise NotFoundError("Coupon", code)
        return coupon

    async def list_active_rewards(self, merchant_id: UUID) -> Sequence[LoyaltyReward]:
        stmt = (
            select(LoyaltyReward)
            .where(LoyaltyReward.merchant_id == merchant_id, LoyaltyReward.is_active.is_(True))
            .order_by(LoyaltyReward.points_cost.asc(), LoyaltyReward.name.asc())
        )
        return (await self._db.execute(stmt)).scalars().all()

    async def redeem_reward(self, client_id: UUID, reward_id: UUID) -> RedeemedReward:
        """Spend points on a catalog reward and return the pending redemption code.

        Stock decrement, ledger debit and code creation share one unit of
        work: any failure rolls all three back.
        """

        reward = await self._db.get(LoyaltyReward, reward_id, populate_existing=True)
        if reward is None:
            raise NotFoundError("Reward", reward_id)
        if not reward.is_active:
            raise InactiveRewardError(f"Reward {reward.name} is not active")

        merchant = await self._db.get(Merchant, reward.merchant_id, populate_existing=True)
        if merchant is None or not merchant.loyalty_enabled:
            raise ConfigurationError("Loyalty program is not enabled for this merchant")

        client = await self._db.get(LoyaltyClient, client_id, populate_existing=True)
        if client is None or client.merchant_id != reward.merchant_id:
            raise NotFoundError("Loyalty client", client_id)
        if client.status != ClientStatus.ACTIVE:
            raise InactiveClientError(f"Client {client_id} is {client.status.value}")

        if client.points < reward.points_cost:
            self._observability.record_redemption("insufficient_points")
            raise InsufficientPointsError(client.points, reward.points_cost)
        if reward.quantity_available is not None and reward.quantity_available <= 0:
            self._observability.record_redemption("out_of_stock")
            raise OutOfStockError(f"Reward {reward.name} is out of stock")

        try:
            if reward.quantity_available is not None:
                decremented = await self._db.execute(
                    update(LoyaltyReward)
                    .where(LoyaltyReward.id == reward.id, LoyaltyReward.quantity_available > 0)
                    .values(quantity_available=LoyaltyReward.quantity_available - 1)
                    .execution_options(synchronize_session=False)
                )
                if decremented.rowcount != 1:
                    raise OutOfStockError(f"Reward {reward.name} is out of stock")

            try:
                await self._ledger.apply_transaction(
                    client.id,
                    client.merchant_id,
                    PointsTransactionType.REDEEM,
                    -reward.points_cost,
                    f"Redeemed {reward.name}",
                )
            except InsufficientBalanceError as exc:
                raise InsufficientPointsError(exc.balance, reward.points_cost) from exc
            except RaceLostError:
                fresh = await self._db.scalar(select(LoyaltyClient.points).where(LoyaltyClient.id == client.id))
                if fresh is not None and fresh < reward.points_cost:
                    raise InsufficientPointsError(fresh, reward.points_cost) from None
                raise

            expires_at = None
            if settings.redemption_code_ttl_days > 0:
                expires_at = utcnow() + timedelta(days=settings.redemption_code_ttl_days)
            redemption = RedeemedReward(
                client_id=client.id,
                merchant_id=client.merchant_id,
                reward_id=reward.id,
                redemption_code=await self._unique_code(
                    RedeemedReward.redemption_code, generate_redemption_code
                ),
                points_spent=reward.points_cost,
                status=RedemptionStatus.PENDING,
                expires_at=expires_at,
            )
            self._db.add(redemption)
            await self._db.flush()
        except (RewardEngineError, SQLAlchemyError) as exc:
            await self._db.rollback()
            self._observability.record_redemption(exc.code if isinstance(exc, RewardEngineError) else "failed")
            raise

        await self._db.get(LoyaltyReward, reward.id, populate_existing=True)
        self._observability.record_redemption("pending", session=self._db)
        logger.info(
            "Redeemed loyalty reward",
            client_id=str(client.id),
            reward_id=str(reward.id),
            redemption_code=redemption.redemption_code,
            points_spent=redemption.points_spent,
        )
        return redemption

    async def validate_token(self, raw_code: str, merchant_id: UUID) -> TokenState:
        """Read-only scan check; raises the conflict that blocks use, if any."""

        token = await self._load_token(extract_token_code(raw_code))
        state = await self._state_of(token)
        try:
            self._ensure_redeemable(state, merchant_id)
        except RewardEngineError as exc:
            self._observability.record_validation(exc.code)
            raise
        self._observability.record_validation("valid")
        return state

    async def mark_token_used(self, raw_code: str, merchant_id: UUID) -> TokenState:
        """Consume a token exactly once; concurrent callers lose with ``AlreadyUsedError``."""

        code = extract_token_code(raw_code)
        token = await self._load_token(code)
        self._ensure_redeemable(await self._state_of(token), merchant_id)

        used_at = utcnow()
        if isinstance(token, Coupon):
            stmt = (
                update(Coupon)
                .where(Coupon.id == token.id, Coupon.used.is_(False))
                .values(used=True, used_at=used_at)
            )
        else:
            stmt = (
                update(RedeemedReward)
                .where(RedeemedReward.id == token.id, RedeemedReward.status == RedemptionStatus.PENDING)
                .values(status=RedemptionStatus.USED, used_at=used_at)
            )
        result = await self._db.execute(stmt.execution_options(synchronize_session=False))

        refreshed = await self._db.get(type(token), token.id, populate_existing=True)
        state = await self._state_of(refreshed)
        if result.rowcount != 1:
            self._observability.record_validation("race_lost")
            logger.info("Token consumed by a concurrent request", code=code)
            self._ensure_redeemable(state, merchant_id)
            raise RaceLostError(f"Token {code} changed concurrently")

        self._observability.record_validation("used")
        logger.info(
            "Marked reward token used",
            code=code,
            kind=state.kind.value,
            merchant_id=str(merchant_id),
        )
        return state

    async def cancel_redemption(self, raw_code: str, merchant_id: UUID) -> TokenState:
        """Cancel a pending redemption code, refunding its points and restocking the reward."""

        code = extract_token_code(raw_code)
        token = await self._load_token(code)
        if not isinstance(token, RedeemedReward):
            raise ValidationError("Only loyalty redemption codes can be cancelled")
        if token.merchant_id != merchant_id:
            raise WrongMerchantError(f"Token {code} belongs to another merchant")

        released = await self._release(token, RedemptionStatus.CANCELLED, f"Refund for cancelled {code}")
        if not released:
            refreshed = await self._db.get(RedeemedReward, token.id, populate_existing=True)
            self._ensure_redeemable(await self._state_of(refreshed), merchant_id)
            raise RaceLostError(f"Token {code} changed concurrently")

        logger.info("Cancelled redemption", code=code, merchant_id=str(merchant_id))
        return await self._state_of(await self._db.get(RedeemedReward, token.id, populate_existing=True))

    async def expire_stale_redemptions(self, *, now: datetime | None = None, limit: int = 100) -> List[str]:
        """Move pending codes past ``expires_at`` to expired, returning their points."""

        reference = now or utcnow()
        stale: Sequence[RedeemedReward] = (
            await self._db.execute(
                select(RedeemedReward)
                .where(
                    RedeemedReward.status == RedemptionStatus.PENDING,
                    RedeemedReward.expires_at.is_not(None),
                    RedeemedReward.expires_at < reference,
                )
                .order_by(RedeemedReward.expires_at.asc())
                .limit(limit)
            )
        ).scalars().all()

        expired: List[str] = []
        for redemption in stale:
            if await self._release(
                redemption,
                RedemptionStatus.EXPIRED,
                f"Refund for expired {redemption.redemption_code}",
            ):
                expired.append(redemption.redemption_code)
        if expired:
            logger.info("Expired stale redemption codes", count=len(expired))
        return expired

    async def _release(self, redemption: RedeemedReward, status: RedemptionStatus, description: str) -> bool:
        """Pending -> ``status`` with refund and restock; False when the CAS lost."""

        try:
            result = await self._db.execute(
                update(RedeemedReward)
                .where(RedeemedReward.id == redemption.id, RedeemedReward.status == RedemptionStatus.PENDING)
                .values(status=status)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False
            await self._ledger.apply_transaction(
                redemption.client_id,
                redemption.merchant_id,
                PointsTransactionType.ADJUSTMENT,
                redemption.points_spent,
                description,
            )
            await self._db.execute(
                update(LoyaltyReward)
                .where(LoyaltyReward.id == redemption.reward_id, LoyaltyReward.quantity_available.is_not(None))
                .values(quantity_available=LoyaltyReward.quantity_available + 1)
                .execution_options(synchronize_session=False)
            )
            await self._db.flush()
        except (RewardEngineError, SQLAlchemyError):
            await self._db.rollback()
            raise
        self._observability.record_redemption(status.value, session=self._db)
        return True

    async def _load_token(self, code: str) -> Coupon | RedeemedReward:
        redemption = (
            await self._db.execute(
                select(RedeemedReward)
                .where(RedeemedReward.redemption_code == code)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if redemption is not None:
            return redemption
        coupon = (
            await self._db.execute(
                select(Coupon).where(Coupon.code == code).execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if coupon is None:
            self._observability.record_validation("not_found")
            raise NotFoundError("Token", code)
        return coupon

    async def _state_of(self, token: Coupon | RedeemedReward) -> TokenState:
        if isinstance(token, Coupon):
            return TokenState(
                kind=TokenKind.COUPON,
                code=token.code,
                merchant_id=token.merchant_id,
                status="used" if token.used else "pending",
                label=token.prize_name,
                expires_at=ensure_aware(token.expires_at),
                used_at=ensure_aware(token.used_at),
            )
        reward_name = await self._db.scalar(
            select(LoyaltyReward.name).where(LoyaltyReward.id == token.reward_id)
        )
        return TokenState(
            kind=TokenKind.REDEMPTION,
            code=token.redemption_code,
            merchant_id=token.merchant_id,
            status=token.status.value,
            label=reward_name or "",
            expires_at=ensure_aware(token.expires_at),
            used_at=ensure_aware(token.used_at),
            client_id=token.client_id,
            points_spent=token.points_spent,
        )

    def _ensure_redeemable(self, state: TokenState, merchant_id: UUID) -> None:
        """Raise the first conflict that blocks use of ``state`` at ``merchant_id``.

        Checks run merchant, used, cancelled, then expiry. Expiry only applies
        to tokens not yet marked, so a used or cancelled code past
        ``expires_at`` reports its mark rather than ``ExpiredError``.
        """

        if state.merchant_id != merchant_id:
            raise WrongMerchantError(f"Token {state.code} belongs to another merchant")
        if state.status == "used":
            raise AlreadyUsedError(state.code, state.used_at)
        if state.status == RedemptionStatus.CANCELLED.value:
            raise TokenCancelledError(f"Token {state.code} was cancelled")
        if state.status == RedemptionStatus.EXPIRED.value:
            raise ExpiredError(state.code, state.expires_at)
        if state.expires_at is not None and state.expires_at <= utcnow():
            raise ExpiredError(state.code, state.expires_at)

    async def _unique_code(self, column, factory) -> str:
        for _ in range(_CODE_ATTEMPTS):
            candidate = factory()
            taken = await self._db.scalar(select(column).where(column == candidate))
            if taken is None:
                return candidate
        raise RaceLostError("Could not allocate a unique token code")


__all__ = ["RedemptionService"]
