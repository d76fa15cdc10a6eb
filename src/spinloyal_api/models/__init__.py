"""SQLAlchemy models package."""

from .merchant import Merchant  # noqa: F401
from .wheel import Coupon, Prize, SpinOutcome, SpinRecord  # noqa: F401
from .loyalty import (  # noqa: F401
    ClientStatus,
    LoyaltyClient,
    LoyaltyReward,
    LoyaltyRewardType,
    PointsTransaction,
    PointsTransactionType,
    RedeemedReward,
    RedemptionStatus,
)
