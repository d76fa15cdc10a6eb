"""Spin orchestration: daily eligibility, outcome draw and coupon issuance."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import List
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from spinloyal_api.core.clock import utctoday
from spinloyal_api.core.settings import settings
from spinloyal_api.models.merchant import Merchant
from spinloyal_api.models.wheel import Coupon, Prize, SpinOutcome, SpinRecord
from spinloyal_api.observability.rewards import RewardObservabilityStore, get_reward_store
from spinloyal_api.services.errors import (
    AlreadySpunTodayError,
    NotFoundError,
    RewardEngineError,
    ValidationError,
)
from spinloyal_api.services.redemptions.service import RedemptionService
from spinloyal_api.services.wheel.segments import (
    PrizeOption,
    SegmentKind,
    WheelConfig,
    WheelSegment,
    build_segments,
)
from spinloyal_api.services.wheel.selector import select_outcome


@dataclass(slots=True)
class SpinResult:
    segments: List[WheelSegment]
    segment_index: int
    spin: SpinRecord | None
    coupon: Coupon | None

    @property
    def segment(self) -> WheelSegment:
        return self.segments[self.segment_index]

    @property
    def outcome(self) -> SegmentKind:
        return self.segment.kind


class SpinService:
    """Run one visitor spin against the merchant's current wheel configuration."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        rng: random.Random | None = None,
        redemptions: RedemptionService | None = None,
        observability: RewardObservabilityStore | None = None,
    ) -> None:
        self._db = db_session
        self._rng = rng
        self._observability = observability or get_reward_store()
        self._redemptions = redemptions or RedemptionService(db_session, observability=self._observability)

    async def load_config(self, merchant: Merchant) -> WheelConfig:
        prizes = (
            await self._db.execute(
                select(Prize)
                .where(Prize.merchant_id == merchant.id, Prize.is_active.is_(True))
                .order_by(Prize.created_at.asc(), Prize.name.asc())
            )
        ).scalars().all()
        return WheelConfig(
            prizes=tuple(
                PrizeOption(
                    name=prize.name,
                    probability=prize.probability,
                    prize_id=prize.id,
                    image_url=prize.image_url,
                )
                for prize in prizes
            ),
            unlucky_quantity=merchant.unlucky_quantity or 0,
            retry_quantity=merchant.retry_quantity or 0,
            unlucky_probability=merchant.unlucky_probability or 0,
            retry_probability=merchant.retry_probability or 0,
            max_segments=settings.max_wheel_segments,
            min_segments=settings.min_wheel_segments,
        )

    async def preview(self, merchant_id: UUID) -> List[WheelSegment]:
        merchant = await self._get_merchant(merchant_id)
        return build_segments(await self.load_config(merchant))

    async def has_spun_today(self, merchant_id: UUID, visitor_token: str) -> bool:
        existing = await self._db.scalar(
            select(SpinRecord.id)
            .where(
                SpinRecord.merchant_id == merchant_id,
                SpinRecord.client_identity_token == visitor_token,
                SpinRecord.spin_date == utctoday(),
            )
            .limit(1)
        )
        return existing is not None

    async def spin(self, merchant_id: UUID, visitor_token: str) -> SpinResult:
        """Draw an outcome; prize and unlucky spins use up the day, retries do not."""

        token = (visitor_token or "").strip()
        if not token:
            raise ValidationError("A visitor token is required to spin")

        merchant = await self._get_merchant(merchant_id)
        if await self.has_spun_today(merchant_id, token):
            self._observability.record_spin("rejected")
            raise AlreadySpunTodayError("This visitor already spun the wheel today")

        segments = build_segments(await self.load_config(merchant))
        index = select_outcome(segments, rng=self._rng)
        segment = segments[index]

        if segment.kind is SegmentKind.RETRY:
            self._observability.record_spin(SegmentKind.RETRY.value)
            logger.info("Wheel spin landed on retry", merchant_id=str(merchant_id), segment_index=index)
            return SpinResult(segments=segments, segment_index=index, spin=None, coupon=None)

        is_prize = segment.kind is SegmentKind.PRIZE
        spin = SpinRecord(
            merchant_id=merchant_id,
            prize_id=segment.prize.prize_id if is_prize and segment.prize else None,
            client_identity_token=token,
            outcome=SpinOutcome.PRIZE if is_prize else SpinOutcome.UNLUCKY,
            spin_date=utctoday(),
        )
        self._db.add(spin)
        try:
            await self._db.flush()
        except IntegrityError:
            await self._db.rollback()
            self._observability.record_spin("rejected")
            raise AlreadySpunTodayError("This visitor already spun the wheel today") from None

        coupon = None
        if is_prize:
            try:
                coupon = await self._redemptions.issue_coupon(spin, segment.label, merchant)
            except (RewardEngineError, SQLAlchemyError):
                await self._db.rollback()
                raise

        self._observability.record_spin(spin.outcome.value, session=self._db)
        logger.info(
            "Wheel spin recorded",
            merchant_id=str(merchant_id),
            spin_id=str(spin.id),
            outcome=spin.outcome.value,
            segment_index=index,
        )
        return SpinResult(segments=segments, segment_index=index, spin=spin, coupon=coupon)

    async def _get_merchant(self, merchant_id: UUID) -> Merchant:
        merchant = await self._db.get(Merchant, merchant_id)
        if merchant is None:
            raise NotFoundError("Merchant", merchant_id)
        return merchant


__all__ = ["SpinResult", "SpinService"]
