"""Row builders shared by the reward engine tests."""

from __future__ import annotations

from uuid import uuid4

from spinloyal_api.models import LoyaltyClient, LoyaltyReward, LoyaltyRewardType, Merchant, Prize


def make_merchant(**overrides) -> Merchant:
    values = {
        "id": uuid4(),
        "name": "Star Coffee",
        "slug": f"star-coffee-{uuid4().hex[:8]}",
        "loyalty_enabled": True,
        "welcome_points": 50,
        "points_per_purchase": 10,
        "purchase_amount_threshold": 1000,
        "unlucky_probability": 30,
        "retry_probability": 20,
        "unlucky_quantity": 1,
        "retry_quantity": 1,
    }
    values.update(overrides)
    return Merchant(**values)


def make_prize(merchant: Merchant, name: str, probability: int, **overrides) -> Prize:
    return Prize(id=uuid4(), merchant_id=merchant.id, name=name, probability=probability, **overrides)


def make_client(merchant: Merchant, *, points: int = 0, **overrides) -> LoyaltyClient:
    token = uuid4().hex
    values = {
        "id": uuid4(),
        "merchant_id": merchant.id,
        "card_id": f"STAR-2026-{token[:4].upper()}",
        "phone": f"+3360{token[:7]}",
        "points": points,
        "qr_code_data": token,
    }
    values.update(overrides)
    return LoyaltyClient(**values)


def make_reward(merchant: Merchant, *, points_cost: int = 100, **overrides) -> LoyaltyReward:
    values = {
        "id": uuid4(),
        "merchant_id": merchant.id,
        "name": "Free Coffee",
        "type": LoyaltyRewardType.PRODUCT,
        "points_cost": points_cost,
        "quantity_available": None,
    }
    values.update(overrides)
    return LoyaltyReward(**values)
