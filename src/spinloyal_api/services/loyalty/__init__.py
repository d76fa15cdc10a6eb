"""Loyalty service exports."""

from .identity import IdentityResolver, normalize_email, normalize_phone  # noqa: F401
from .ledger import BalanceCheck, EarnResult, PointsLedger, calculate_earned_points  # noqa: F401
