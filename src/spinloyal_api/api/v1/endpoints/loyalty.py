"""Loyalty program endpoints: enrollment, points and reward redemption."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from spinloyal_api.api.dependencies.notifications import get_notification_dispatcher
from spinloyal_api.api.dependencies.security import require_staff_api_key
from spinloyal_api.api.errors import http_error_for
from spinloyal_api.core.clock import ensure_aware
from spinloyal_api.db.session import get_session
from spinloyal_api.models.loyalty import (
    ClientStatus,
    LoyaltyClient,
    LoyaltyReward,
    PointsTransaction,
    RedeemedReward,
)
from spinloyal_api.services.errors import RewardEngineError
from spinloyal_api.services.loyalty import IdentityResolver, PointsLedger
from spinloyal_api.services.notifications import NotificationDispatcher
from spinloyal_api.services.redemptions import RedemptionService


router = APIRouter(prefix="/loyalty", tags=["loyalty"])


class ClientResolveRequest(BaseModel):
    phone: Optional[str] = Field(None, max_length=32, description="Client phone number")
    email: Optional[str] = Field(None, max_length=320, description="Client email address")
    name: Optional[str] = Field(None, max_length=255)
    userToken: Optional[str] = Field(None, max_length=255, description="Visitor token from the wheel page")

    @model_validator(mode="after")
    def _require_contact(self) -> "ClientResolveRequest":
        if not (self.phone and self.phone.strip()) and not (self.email and self.email.strip()):
            raise ValueError("phone or email must be provided")
        return self


class ClientUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=32)
    email: Optional[str] = Field(None, max_length=320)
    status: Optional[ClientStatus] = None


class ClientResponse(BaseModel):
    id: UUID
    merchantId: UUID
    cardId: str
    name: Optional[str]
    phone: Optional[str]
    email: Optional[str]
    points: int
    totalPurchases: int
    totalSpent: float
    qrCodeData: str
    status: str
    lastVisit: Optional[datetime]
    createdAt: datetime


class ClientResolveResponse(BaseModel):
    client: ClientResponse
    isNew: bool


class PurchaseRequest(BaseModel):
    amount: Decimal = Field(..., ge=0, description="Purchase amount in the merchant's currency")
    description: Optional[str] = Field(None, max_length=500)


class EarnResponse(BaseModel):
    pointsEarned: int
    newBalance: int
    client: ClientResponse


class AdjustmentRequest(BaseModel):
    points: int = Field(..., description="Signed points to add or remove")
    description: str = Field(..., min_length=1, max_length=500)

    @field_validator("points")
    @classmethod
    def _non_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("points must be non-zero")
        return value


class BalanceResponse(BaseModel):
    clientId: UUID
    newBalance: int


class TransactionResponse(BaseModel):
    id: UUID
    type: str
    points: int
    balanceAfter: int
    description: Optional[str]
    createdAt: datetime


class CardResponse(BaseModel):
    client: ClientResponse
    transactions: List[TransactionResponse]


class RewardResponse(BaseModel):
    id: UUID
    name: str
    description: Optional[str]
    type: str
    value: Optional[float]
    pointsCost: int
    quantityAvailable: Optional[int]
    isActive: bool


class RedemptionRequest(BaseModel):
    rewardId: UUID


class RedemptionResponse(BaseModel):
    id: UUID
    code: str
    clientId: UUID
    rewardId: UUID
    rewardName: Optional[str]
    pointsSpent: int
    status: str
    expiresAt: Optional[datetime]
    usedAt: Optional[datetime]
    createdAt: datetime


@router.post("/{merchant_id}/clients", response_model=ClientResolveResponse)
async def resolve_client(
    merchant_id: UUID,
    payload: ClientResolveRequest,
    db: AsyncSession = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> ClientResolveResponse:
    """Enroll a client, or return the existing card for the same phone or email."""

    try:
        client, is_new = await IdentityResolver(db).resolve_or_create(
            merchant_id,
            phone=payload.phone,
            email=payload.email,
            name=payload.name,
            user_token=payload.userToken,
        )
    except RewardEngineError as exc:
        raise http_error_for(exc) from exc
    await db.commit()
    await db.refresh(client)

    if is_new:
        dispatcher.emit(
            merchant_id,
            "client.created",
            {"clientId": str(client.id), "cardId": client.card_id, "points": client.points},
        )
    return ClientResolveResponse(client=_serialize_client(client), isNew=is_new)


@router.get(
    "/{merchant_id}/clients",
    response_model=List[ClientResponse],
    dependencies=[Depends(require_staff_api_key)],
)
async def list_clients(
    merchant_id: UUID,
    limit: int = Query(200, ge=1, le=1000),
    db: AsyncSession = Depends(get_session),
) -> List[ClientResponse]:
    """Card holders of a merchant, newest first."""

    clients = await IdentityResolver(db).list_clients(merchant_id, limit=limit)
    return [_serialize_client(client) for client in clients]


@router.get("/{merchant_id}/cards/{qr_code}", response_model=CardResponse)
async def get_card(
    merchant_id: UUID,
    qr_code: str,
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
) -> CardResponse:
    """The holder's own card: balance plus most recent points activity."""

    try:
        client = await IdentityResolver(db).lookup(merchant_id, qr_code=qr_code)
    except RewardEngineError as exc:
        raise http_error_for(exc) from exc
    entries = await PointsLedger(db).history(client.id, limit=limit, newest_first=True)
    return CardResponse(
        client=_serialize_client(client),
        transactions=[_serialize_transaction(entry) for entry in entries],
    )


@router.get(
    "/{merchant_id}/clients/lookup",
    response_model=ClientResponse,
    dependencies=[Depends(require_staff_api_key)],
)
async def lookup_client(
    merchant_id: UUID,
    client_id: Optional[UUID] = Query(None, alias="clientId"),
    qr_code: Optional[str] = Query(None, alias="qrCode"),
    phone: Optional[str] = Query(None),
    email: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_session),
) -> ClientResponse:
    """Find a card holder by id, scanned QR payload, phone or email."""

    try:
        client = await IdentityResolver(db).lookup(
            merchant_id, client_id=client_id, qr_code=qr_code, phone=phone, email=email
        )
    except RewardEngineError as exc:
        raise http_error_for(exc) from exc
    return _serialize_client(client)


@router.patch(
    "/{merchant_id}/clients/{client_id}",
    response_model=ClientResponse,
    dependencies=[Depends(require_staff_api_key)],
)
async def update_client(
    merchant_id: UUID,
    client_id: UUID,
    payload: ClientUpdateRequest,
    db: AsyncSession = Depends(get_session),
) -> ClientResponse:
    try:
        client = await IdentityResolver(db).update_client(
            client_id,
            merchant_id,
            name=payload.name,
            phone=payload.phone,
            email=payload.email,
            status=payload.status,
        )
    except RewardEngineError as exc:
        raise http_error_for(exc) from exc
    await db.commit()
    await db.refresh(client)
    return _serialize_client(client)


@router.get(
    "/{merchant_id}/clients/{client_id}/transactions",
    response_model=List[TransactionResponse],
    dependencies=[Depends(require_staff_api_key)],
)
async def list_client_transactions(
    merchant_id: UUID,
    client_id: UUID,
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_session),
) -> List[TransactionResponse]:
    """Ledger history for a client, oldest first."""

    try:
        await IdentityResolver(db).lookup(merchant_id, client_id=client_id)
    except RewardEngineError as exc:
        raise http_error_for(exc) from exc
    entries = await PointsLedger(db).history(client_id, limit=limit)
    return [_serialize_transaction(entry) for entry in entries]


@router.post(
    "/{merchant_id}/clients/{client_id}/purchases",
    response_model=EarnResponse,
    dependencies=[Depends(require_staff_api_key)],
)
async def record_purchase(
    merchant_id: UUID,
    client_id: UUID,
    payload: PurchaseRequest,
    db: AsyncSession = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> EarnResponse:
    """Record a purchase and credit the points it earns."""

    try:
        result = await PointsLedger(db).earn_points(
            client_id, merchant_id, payload.amount, description=payload.description
        )
    except RewardEngineError as exc:
        raise http_error_for(exc) from exc
    await db.commit()
    await db.refresh(result.client)

    if result.points_earned > 0:
        dispatcher.emit(
            merchant_id,
            "points.earned",
            {
                "clientId": str(client_id),
                "pointsEarned": result.points_earned,
                "newBalance": result.new_balance,
            },
        )
    return EarnResponse(
        pointsEarned=result.points_earned,
        newBalance=result.new_balance,
        client=_serialize_client(result.client),
    )


@router.post(
    "/{merchant_id}/clients/{client_id}/adjustments",
    response_model=BalanceResponse,
    dependencies=[Depends(require_staff_api_key)],
)
async def adjust_points(
    merchant_id: UUID,
    client_id: UUID,
    payload: AdjustmentRequest,
    db: AsyncSession = Depends(get_session),
) -> BalanceResponse:
    try:
        new_balance = await PointsLedger(db).adjust(client_id, merchant_id, payload.points, payload.description)
    except RewardEngineError as exc:
        raise http_error_for(exc) from exc
    await db.commit()
    return BalanceResponse(clientId=client_id, newBalance=new_balance)


@router.get("/{merchant_id}/rewards", response_model=List[RewardResponse])
async def list_rewards(
    merchant_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> List[RewardResponse]:
    """Active reward catalog, cheapest first."""

    rewards = await RedemptionService(db).list_active_rewards(merchant_id)
    return [_serialize_reward(reward) for reward in rewards]


@router.post(
    "/{merchant_id}/clients/{client_id}/redemptions",
    response_model=RedemptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def redeem_reward(
    merchant_id: UUID,
    client_id: UUID,
    payload: RedemptionRequest,
    db: AsyncSession = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> RedemptionResponse:
    """Spend points on a reward and return its single-use redemption code."""

    try:
        await IdentityResolver(db).lookup(merchant_id, client_id=client_id)
        redemption = await RedemptionService(db).redeem_reward(client_id, payload.rewardId)
    except RewardEngineError as exc:
        raise http_error_for(exc) from exc
    await db.commit()

    reward = await db.get(LoyaltyReward, redemption.reward_id)
    dispatcher.emit(
        merchant_id,
        "reward.redeemed",
        {
            "clientId": str(client_id),
            "code": redemption.redemption_code,
            "rewardName": reward.name if reward else None,
            "pointsSpent": redemption.points_spent,
        },
    )
    return _serialize_redemption(redemption, reward_name=reward.name if reward else None)


def _serialize_client(client: LoyaltyClient) -> ClientResponse:
    return ClientResponse(
        id=client.id,
        merchantId=client.merchant_id,
        cardId=client.card_id,
        name=client.name,
        phone=client.phone,
        email=client.email,
        points=client.points,
        totalPurchases=client.total_purchases,
        totalSpent=float(client.total_spent or 0),
        qrCodeData=client.qr_code_data,
        status=client.status.value,
        lastVisit=ensure_aware(client.last_visit),
        createdAt=ensure_aware(client.created_at),
    )


def _serialize_transaction(entry: PointsTransaction) -> TransactionResponse:
    return TransactionResponse(
        id=entry.id,
        type=entry.type.value,
        points=entry.points,
        balanceAfter=entry.balance_after,
        description=entry.description,
        createdAt=ensure_aware(entry.created_at),
    )


def _serialize_reward(reward: LoyaltyReward) -> RewardResponse:
    return RewardResponse(
        id=reward.id,
        name=reward.name,
        description=reward.description,
        type=reward.type.value,
        value=float(reward.value) if reward.value is not None else None,
        pointsCost=reward.points_cost,
        quantityAvailable=reward.quantity_available,
        isActive=bool(reward.is_active),
    )


def _serialize_redemption(redemption: RedeemedReward, *, reward_name: str | None = None) -> RedemptionResponse:
    return RedemptionResponse(
        id=redemption.id,
        code=redemption.redemption_code,
        clientId=redemption.client_id,
        rewardId=redemption.reward_id,
        rewardName=reward_name,
        pointsSpent=redemption.points_spent,
        status=redemption.status.value,
        expiresAt=ensure_aware(redemption.expires_at),
        usedAt=ensure_aware(redemption.used_at),
        createdAt=ensure_aware(redemption.created_at),
    )
