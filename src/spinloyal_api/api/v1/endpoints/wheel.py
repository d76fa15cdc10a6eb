"""Prize wheel endpoints: segment preview and visitor spins."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from spinloyal_api.api.dependencies.notifications import get_notification_dispatcher
from spinloyal_api.api.errors import http_error_for
from spinloyal_api.core.clock import ensure_aware
from spinloyal_api.core.settings import settings
from spinloyal_api.db.session import get_session
from spinloyal_api.models.wheel import Coupon
from spinloyal_api.services.errors import RewardEngineError
from spinloyal_api.services.notifications import NotificationDispatcher
from spinloyal_api.services.redemptions import RedemptionService
from spinloyal_api.services.wheel import SegmentKind, SpinService, WheelSegment


router = APIRouter(prefix="/wheel", tags=["wheel"])


class SegmentResponse(BaseModel):
    index: int
    kind: str
    label: str
    weight: float
    prizeId: Optional[UUID]
    imageUrl: Optional[str]


class WheelResponse(BaseModel):
    merchantId: UUID
    segments: List[SegmentResponse]
    totalWeight: float


class SpinRequest(BaseModel):
    visitorToken: str = Field(..., min_length=1, max_length=255, description="Opaque per-visitor token")


class CouponResponse(BaseModel):
    code: str
    prizeName: str
    expiresAt: datetime
    used: bool
    usedAt: Optional[datetime]
    couponUrl: str


class SpinResponse(BaseModel):
    outcome: str
    segmentIndex: int
    segments: List[SegmentResponse]
    spinId: Optional[UUID]
    canRetry: bool
    coupon: Optional[CouponResponse]


@router.get("/{merchant_id}/segments", response_model=WheelResponse)
async def get_wheel_segments(
    merchant_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> WheelResponse:
    """Segments the wheel would use for a spin right now."""

    try:
        segments = await SpinService(db).preview(merchant_id)
    except RewardEngineError as exc:
        raise http_error_for(exc) from exc
    return WheelResponse(
        merchantId=merchant_id,
        segments=_serialize_segments(segments),
        totalWeight=sum(segment.weight for segment in segments),
    )


@router.post("/{merchant_id}/spin", response_model=SpinResponse, status_code=status.HTTP_201_CREATED)
async def spin_wheel(
    merchant_id: UUID,
    payload: SpinRequest,
    db: AsyncSession = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> SpinResponse:
    """Spin once for the visitor; a retry outcome leaves today's spin unused."""

    try:
        result = await SpinService(db).spin(merchant_id, payload.visitorToken)
    except RewardEngineError as exc:
        raise http_error_for(exc) from exc
    await db.commit()

    coupon = _serialize_coupon(result.coupon) if result.coupon else None
    if coupon is not None:
        dispatcher.emit(
            merchant_id,
            "coupon.issued",
            {
                "code": coupon.code,
                "prizeName": coupon.prizeName,
                "expiresAt": coupon.expiresAt.isoformat(),
                "couponUrl": coupon.couponUrl,
            },
        )

    return SpinResponse(
        outcome=result.outcome.value,
        segmentIndex=result.segment_index,
        segments=_serialize_segments(result.segments),
        spinId=result.spin.id if result.spin else None,
        canRetry=result.outcome is SegmentKind.RETRY,
        coupon=coupon,
    )


@router.get("/{merchant_id}/coupons/{code}", response_model=CouponResponse)
async def get_coupon(
    merchant_id: UUID,
    code: str,
    db: AsyncSession = Depends(get_session),
) -> CouponResponse:
    """Coupon page view for the visitor who won it; read-only."""

    try:
        coupon = await RedemptionService(db).get_coupon(code, merchant_id)
    except RewardEngineError as exc:
        raise http_error_for(exc) from exc
    return _serialize_coupon(coupon)


def _serialize_segments(segments: List[WheelSegment]) -> List[SegmentResponse]:
    return [
        SegmentResponse(
            index=index,
            kind=segment.kind.value,
            label=segment.label,
            weight=segment.weight,
            prizeId=segment.prize.prize_id if segment.prize else None,
            imageUrl=segment.prize.image_url if segment.prize else None,
        )
        for index, segment in enumerate(segments)
    ]


def _serialize_coupon(coupon: Coupon) -> CouponResponse:
    base_url = (settings.frontend_url or "").rstrip("/")
    return CouponResponse(
        code=coupon.code,
        prizeName=coupon.prize_name,
        expiresAt=ensure_aware(coupon.expires_at),
        used=bool(coupon.used),
        usedAt=ensure_aware(coupon.used_at),
        couponUrl=f"{base_url}/coupon?code={coupon.code}",
    )
