"""Loyalty program domain models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    true,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from spinloyal_api.core.clock import utcnow
from spinloyal_api.db.base import Base


def _enum_values(enum: type[Enum]) -> list[str]:
    return [member.value for member in enum]


class ClientStatus(str, Enum):
    """Lifecycle state of a loyalty card holder."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class LoyaltyClient(Base):
    """Card holder enrolled in a merchant's loyalty program.

    ``points`` caches the ledger balance; only ``PointsLedger`` writes it.
    """

    __tablename__ = "loyalty_clients"
    __table_args__ = (
        UniqueConstraint("merchant_id", "phone", name="uq_loyalty_clients_merchant_phone"),
        UniqueConstraint("merchant_id", "email", name="uq_loyalty_clients_merchant_email"),
        UniqueConstraint("merchant_id", "card_id", name="uq_loyalty_clients_merchant_card"),
        CheckConstraint("points >= 0", name="ck_loyalty_clients_points_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(
        UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    card_id = Column(String(32), nullable=False)
    name = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=True)
    email = Column(String(320), nullable=True)
    user_token = Column(String(255), nullable=True)
    points = Column(Integer, nullable=False, default=0, server_default="0")
    total_purchases = Column(Integer, nullable=False, default=0, server_default="0")
    total_spent = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    qr_code_data = Column(String(64), nullable=False, unique=True)
    status = Column(
        SqlEnum(ClientStatus, name="loyalty_client_status", values_callable=_enum_values),
        nullable=False,
        default=ClientStatus.ACTIVE,
    )
    last_visit = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    transactions = relationship(
        "PointsTransaction",
        back_populates="client",
        order_by="PointsTransaction.created_at",
    )
    redemptions = relationship("RedeemedReward", back_populates="client")


class PointsTransactionType(str, Enum):
    """Ledger entry kinds."""

    WELCOME = "welcome"
    EARN = "earn"
    REDEEM = "redeem"
    ADJUSTMENT = "adjustment"


class PointsTransaction(Base):
    """Append-only ledger row; ``balance_after`` is the running sum through this row."""

    __tablename__ = "points_transactions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    client_id = Column(
        UUID(as_uuid=True), ForeignKey("loyalty_clients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    type = Column(
        SqlEnum(PointsTransactionType, name="points_transaction_type", values_callable=_enum_values),
        nullable=False,
    )
    points = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    client = relationship("LoyaltyClient", back_populates="transactions")


class LoyaltyRewardType(str, Enum):
    """What a catalog reward grants."""

    DISCOUNT = "discount"
    PRODUCT = "product"
    SERVICE = "service"
    CASHBACK = "cashback"


class LoyaltyReward(Base):
    """Catalog entry redeemable for points; ``quantity_available`` NULL means unlimited."""

    __tablename__ = "loyalty_rewards"
    __table_args__ = (
        CheckConstraint("points_cost > 0", name="ck_loyalty_rewards_points_cost_positive"),
        CheckConstraint(
            "quantity_available IS NULL OR quantity_available >= 0",
            name="ck_loyalty_rewards_stock_non_negative",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(
        UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    type = Column(
        SqlEnum(LoyaltyRewardType, name="loyalty_reward_type", values_callable=_enum_values),
        nullable=False,
    )
    value = Column(Numeric(12, 2), nullable=True)
    points_cost = Column(Integer, nullable=False)
    quantity_available = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())


class RedemptionStatus(str, Enum):
    """Redemption code lifecycle."""

    PENDING = "pending"
    USED = "used"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class RedeemedReward(Base):
    """Redemption code issued when a client spends points on a reward."""

    __tablename__ = "redeemed_rewards"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    client_id = Column(
        UUID(as_uuid=True), ForeignKey("loyalty_clients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_rewards.id", ondelete="RESTRICT"), nullable=False)
    redemption_code = Column(String(16), nullable=False, unique=True, index=True)
    points_spent = Column(Integer, nullable=False)
    status = Column(
        SqlEnum(RedemptionStatus, name="redemption_status", values_callable=_enum_values),
        nullable=False,
        default=RedemptionStatus.PENDING,
    )
    expires_at = Column(DateTime(timezone=True), nullable=True)
    used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    client = relationship("LoyaltyClient", back_populates="redemptions")
    reward = relationship("LoyaltyReward")
