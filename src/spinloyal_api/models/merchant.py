"""Merchant accounts and their reward configuration."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from spinloyal_api.db.base import Base


class Merchant(Base):
    """A business running a prize wheel and, optionally, a loyalty program.

    Loyalty amounts left ``NULL`` fall back to the service-wide defaults in
    settings. Wheel probabilities for the special segments are category
    totals; the selector splits them across however many segments of that
    kind end up on the wheel.
    """

    __tablename__ = "merchants"
    __table_args__ = (
        CheckConstraint("unlucky_probability >= 0", name="ck_merchants_unlucky_probability"),
        CheckConstraint("retry_probability >= 0", name="ck_merchants_retry_probability"),
        CheckConstraint("unlucky_quantity >= 0", name="ck_merchants_unlucky_quantity"),
        CheckConstraint("retry_quantity >= 0", name="ck_merchants_retry_quantity"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    slug = Column(String(120), nullable=False, unique=True, index=True)

    loyalty_enabled = Column(Boolean, nullable=False, default=False)
    welcome_points = Column(Integer, nullable=True)
    points_per_purchase = Column(Integer, nullable=True)
    purchase_amount_threshold = Column(Integer, nullable=True)

    unlucky_probability = Column(Integer, nullable=False, default=0, server_default="0")
    retry_probability = Column(Integer, nullable=False, default=0, server_default="0")
    unlucky_quantity = Column(Integer, nullable=False, default=0, server_default="0")
    retry_quantity = Column(Integer, nullable=False, default=0, server_default="0")

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    prizes = relationship("Prize", back_populates="merchant", cascade="all, delete-orphan")
