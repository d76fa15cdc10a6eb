"""Reward engine core tables.

Revision ID: 20261017_01
Revises: 
Create Date: 2026-10-17
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261017_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


SPIN_OUTCOME = sa.Enum("prize", "unlucky", name="wheel_spin_outcome")
CLIENT_STATUS = sa.Enum("active", "suspended", "inactive", name="loyalty_client_status")
TRANSACTION_TYPE = sa.Enum("welcome", "earn", "redeem", "adjustment", name="points_transaction_type")
REWARD_TYPE = sa.Enum("discount", "product", "service", "cashback", name="loyalty_reward_type")
REDEMPTION_STATUS = sa.Enum("pending", "used", "cancelled", "expired", name="redemption_status")


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def upgrade() -> None:
    op.create_table(
        "merchants",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=120), nullable=False),
        sa.Column("loyalty_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("welcome_points", sa.Integer(), nullable=True),
        sa.Column("points_per_purchase", sa.Integer(), nullable=True),
        sa.Column("purchase_amount_threshold", sa.Integer(), nullable=True),
        sa.Column("unlucky_probability", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_probability", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unlucky_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("unlucky_probability >= 0", name="ck_merchants_unlucky_probability"),
        sa.CheckConstraint("retry_probability >= 0", name="ck_merchants_retry_probability"),
        sa.CheckConstraint("unlucky_quantity >= 0", name="ck_merchants_unlucky_quantity"),
        sa.CheckConstraint("retry_quantity >= 0", name="ck_merchants_retry_quantity"),
    )
    op.create_index("ix_merchants_slug", "merchants", ["slug"], unique=True)

    op.create_table(
        "prizes",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("merchant_id", _uuid(), sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("probability", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=True),
        sa.Column("image_url", sa.String(length=1024), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("probability BETWEEN 1 AND 100", name="ck_prizes_probability_range"),
    )
    op.create_index("ix_prizes_merchant_id", "prizes", ["merchant_id"])

    op.create_table(
        "wheel_spins",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("merchant_id", _uuid(), sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("prize_id", _uuid(), sa.ForeignKey("prizes.id", ondelete="SET NULL"), nullable=True),
        sa.Column("client_identity_token", sa.String(length=255), nullable=False),
        sa.Column("outcome", SPIN_OUTCOME, nullable=False),
        sa.Column("spin_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint(
            "merchant_id",
            "client_identity_token",
            "spin_date",
            name="uq_wheel_spins_daily_visitor",
        ),
    )
    op.create_index("ix_wheel_spins_merchant_id", "wheel_spins", ["merchant_id"])

    op.create_table(
        "coupons",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "spin_id", _uuid(), sa.ForeignKey("wheel_spins.id", ondelete="CASCADE"), nullable=False, unique=True
        ),
        sa.Column("merchant_id", _uuid(), sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("code", sa.String(length=32), nullable=False),
        sa.Column("prize_name", sa.String(length=255), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_coupons_code", "coupons", ["code"], unique=True)
    op.create_index("ix_coupons_merchant_id", "coupons", ["merchant_id"])

    op.create_table(
        "loyalty_clients",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("merchant_id", _uuid(), sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("card_id", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("user_token", sa.String(length=255), nullable=True),
        sa.Column("points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_purchases", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_spent", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("qr_code_data", sa.String(length=64), nullable=False, unique=True),
        sa.Column("status", CLIENT_STATUS, nullable=False, server_default="active"),
        sa.Column("last_visit", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("merchant_id", "phone", name="uq_loyalty_clients_merchant_phone"),
        sa.UniqueConstraint("merchant_id", "email", name="uq_loyalty_clients_merchant_email"),
        sa.UniqueConstraint("merchant_id", "card_id", name="uq_loyalty_clients_merchant_card"),
        sa.CheckConstraint("points >= 0", name="ck_loyalty_clients_points_non_negative"),
    )
    op.create_index("ix_loyalty_clients_merchant_id", "loyalty_clients", ["merchant_id"])

    op.create_table(
        "points_transactions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "client_id", _uuid(), sa.ForeignKey("loyalty_clients.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("merchant_id", _uuid(), sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_points_transactions_client_id", "points_transactions", ["client_id"])

    op.create_table(
        "loyalty_rewards",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("merchant_id", _uuid(), sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", REWARD_TYPE, nullable=False),
        sa.Column("value", sa.Numeric(12, 2), nullable=True),
        sa.Column("points_cost", sa.Integer(), nullable=False),
        sa.Column("quantity_available", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("points_cost > 0", name="ck_loyalty_rewards_points_cost_positive"),
        sa.CheckConstraint(
            "quantity_available IS NULL OR quantity_available >= 0",
            name="ck_loyalty_rewards_stock_non_negative",
        ),
    )
    op.create_index("ix_loyalty_rewards_merchant_id", "loyalty_rewards", ["merchant_id"])

    op.create_table(
        "redeemed_rewards",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "client_id", _uuid(), sa.ForeignKey("loyalty_clients.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("merchant_id", _uuid(), sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "reward_id", _uuid(), sa.ForeignKey("loyalty_rewards.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("redemption_code", sa.String(length=16), nullable=False),
        sa.Column("points_spent", sa.Integer(), nullable=False),
        sa.Column("status", REDEMPTION_STATUS, nullable=False, server_default="pending"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_redeemed_rewards_redemption_code", "redeemed_rewards", ["redemption_code"], unique=True)
    op.create_index("ix_redeemed_rewards_client_id", "redeemed_rewards", ["client_id"])


def downgrade() -> None:
    op.drop_index("ix_redeemed_rewards_client_id", table_name="redeemed_rewards")
    op.drop_index("ix_redeemed_rewards_redemption_code", table_name="redeemed_rewards")
    op.drop_table("redeemed_rewards")
    op.drop_index("ix_loyalty_rewards_merchant_id", table_name="loyalty_rewards")
    op.drop_table("loyalty_rewards")
    op.drop_index("ix_points_transactions_client_id", table_name="points_transactions")
    op.drop_table("points_transactions")
    op.drop_index("ix_loyalty_clients_merchant_id", table_name="loyalty_clients")
    op.drop_table("loyalty_clients")
    op.drop_index("ix_coupons_merchant_id", table_name="coupons")
    op.drop_index("ix_coupons_code", table_name="coupons")
    op.drop_table("coupons")
    op.drop_index("ix_wheel_spins_merchant_id", table_name="wheel_spins")
    op.drop_table("wheel_spins")
    op.drop_index("ix_prizes_merchant_id", table_name="prizes")
    op.drop_table("prizes")
    op.drop_index("ix_merchants_slug", table_name="merchants")
    op.drop_table("merchants")

    bind = op.get_bind()
    for enum in (REDEMPTION_STATUS, REWARD_TYPE, TRANSACTION_TYPE, CLIENT_STATUS, SPIN_OUTCOME):
        enum.drop(bind, checkfirst=True)
