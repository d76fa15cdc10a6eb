"""Reward token lifecycle exports."""

from .service import RedemptionService  # noqa: F401
from .tokens import (  # noqa: F401
    TokenKind,
    TokenState,
    extract_token_code,
    generate_coupon_code,
    generate_redemption_code,
)
