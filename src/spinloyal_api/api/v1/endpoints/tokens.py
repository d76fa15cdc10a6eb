"""Staff scan endpoints for wheel coupons and loyalty redemption codes."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from spinloyal_api.api.dependencies.notifications import get_notification_dispatcher
from spinloyal_api.api.dependencies.security import require_staff_api_key
from spinloyal_api.api.errors import http_error_for
from spinloyal_api.db.session import get_session
from spinloyal_api.services.errors import RewardEngineError
from spinloyal_api.services.notifications import NotificationDispatcher
from spinloyal_api.services.redemptions import RedemptionService, TokenState


router = APIRouter(
    prefix="/tokens",
    tags=["tokens"],
    dependencies=[Depends(require_staff_api_key)],
)


class TokenRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=2048, description="Code or scanned URL with ?code=")


class TokenStateResponse(BaseModel):
    kind: str
    code: str
    status: str
    label: str
    expiresAt: Optional[datetime]
    usedAt: Optional[datetime]
    clientId: Optional[UUID]
    pointsSpent: Optional[int]


@router.post("/{merchant_id}/validate", response_model=TokenStateResponse)
async def validate_token(
    merchant_id: UUID,
    payload: TokenRequest,
    db: AsyncSession = Depends(get_session),
) -> TokenStateResponse:
    """Check a scanned token without consuming it."""

    try:
        state = await RedemptionService(db).validate_token(payload.code, merchant_id)
    except RewardEngineError as exc:
        raise http_error_for(exc) from exc
    return _serialize_state(state)


@router.post("/{merchant_id}/use", response_model=TokenStateResponse)
async def use_token(
    merchant_id: UUID,
    payload: TokenRequest,
    db: AsyncSession = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> TokenStateResponse:
    """Consume a token; a second scan of the same code is rejected with 409."""

    try:
        state = await RedemptionService(db).mark_token_used(payload.code, merchant_id)
    except RewardEngineError as exc:
        raise http_error_for(exc) from exc
    await db.commit()

    dispatcher.emit(
        merchant_id,
        "token.used",
        {"code": state.code, "kind": state.kind.value, "label": state.label},
    )
    return _serialize_state(state)


@router.post("/{merchant_id}/cancel", response_model=TokenStateResponse)
async def cancel_token(
    merchant_id: UUID,
    payload: TokenRequest,
    db: AsyncSession = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> TokenStateResponse:
    """Cancel a pending redemption code and refund its points."""

    try:
        state = await RedemptionService(db).cancel_redemption(payload.code, merchant_id)
    except RewardEngineError as exc:
        raise http_error_for(exc) from exc
    await db.commit()

    dispatcher.emit(
        merchant_id,
        "redemption.cancelled",
        {
            "code": state.code,
            "clientId": str(state.client_id),
            "pointsRefunded": state.points_spent,
        },
    )
    return _serialize_state(state)


def _serialize_state(state: TokenState) -> TokenStateResponse:
    return TokenStateResponse(
        kind=state.kind.value,
        code=state.code,
        status=state.status,
        label=state.label,
        expiresAt=state.expires_at,
        usedAt=state.used_at,
        clientId=state.client_id,
        pointsSpent=state.points_spent,
    )
