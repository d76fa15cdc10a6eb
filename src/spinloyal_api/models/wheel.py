"""Prize wheel catalog, spin records and the coupons they produce."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
    true,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from spinloyal_api.core.clock import utcnow
from spinloyal_api.db.base import Base


class Prize(Base):
    """Wheel prize configured by a merchant.

    ``quantity`` is informational (shown to visitors) and is not decremented
    when a coupon is issued.
    """

    __tablename__ = "prizes"
    __table_args__ = (
        CheckConstraint("probability BETWEEN 1 AND 100", name="ck_prizes_probability_range"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(
        UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(255), nullable=False)
    probability = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=True)
    image_url = Column(String(1024), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    merchant = relationship("Merchant", back_populates="prizes")


class SpinOutcome(str, Enum):
    """Persisted spin results; retries are never recorded."""

    PRIZE = "prize"
    UNLUCKY = "unlucky"


class SpinRecord(Base):
    """One eligible spin of the wheel by a visitor."""

    __tablename__ = "wheel_spins"
    __table_args__ = (
        UniqueConstraint(
            "merchant_id",
            "client_identity_token",
            "spin_date",
            name="uq_wheel_spins_daily_visitor",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(
        UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    prize_id = Column(UUID(as_uuid=True), ForeignKey("prizes.id", ondelete="SET NULL"), nullable=True)
    client_identity_token = Column(String(255), nullable=False)
    outcome = Column(
        SqlEnum(
            SpinOutcome,
            name="wheel_spin_outcome",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    spin_date = Column(Date, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    prize = relationship("Prize")
    coupon = relationship("Coupon", back_populates="spin", uselist=False)


class Coupon(Base):
    """Single-use voucher issued for a winning spin."""

    __tablename__ = "coupons"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    spin_id = Column(UUID(as_uuid=True), ForeignKey("wheel_spins.id", ondelete="CASCADE"), nullable=False, unique=True)
    merchant_id = Column(
        UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    code = Column(String(32), nullable=False, unique=True, index=True)
    prize_name = Column(String(255), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used = Column(Boolean, nullable=False, default=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    spin = relationship("SpinRecord", back_populates="coupon")
