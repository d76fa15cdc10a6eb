"""Error taxonomy shared by the wheel, ledger and redemption services."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict


class RewardEngineError(RuntimeError):
    """Base exception for reward engine failures."""

    code = "reward_engine_error"

    def context(self) -> Dict[str, Any]:
        """Structured fields surfaced alongside the message in API responses."""

        return {}


class ValidationError(RewardEngineError):
    """Raised when caller input is malformed or incomplete."""

    code = "validation_error"


class NotFoundError(RewardEngineError):
    """Raised when a merchant, client, reward or token does not exist."""

    code = "not_found"

    def __init__(self, entity: str, identifier: object) -> None:
        super().__init__(f"{entity} {identifier} not found")
        self.entity = entity
        self.identifier = identifier

    def context(self) -> Dict[str, Any]:
        return {"entity": self.entity}


class ConfigurationError(RewardEngineError):
    """Raised when a feature is disabled or misconfigured for the merchant."""

    code = "configuration_error"


class RaceLostError(RewardEngineError):
    """Raised when a conditional update matched no rows because another request won."""

    code = "race_lost"


class ExternalServiceError(RewardEngineError):
    """Raised by notification backends; logged and never propagated to API callers."""

    code = "external_service_error"


class ConflictError(RewardEngineError):
    """Raised when the current state forbids the requested operation."""

    code = "conflict"


class InsufficientBalanceError(ConflictError):
    code = "insufficient_balance"

    def __init__(self, balance: int, delta: int) -> None:
        super().__init__(f"Balance {balance} cannot absorb a change of {delta}")
        self.balance = balance
        self.delta = delta

    def context(self) -> Dict[str, Any]:
        return {"balance": self.balance, "delta": self.delta}


class InsufficientPointsError(ConflictError):
    code = "insufficient_points"

    def __init__(self, available: int, required: int) -> None:
        super().__init__(f"Reward requires {required} points but only {available} are available")
        self.available = available
        self.required = required

    def context(self) -> Dict[str, Any]:
        return {"available": self.available, "required": self.required}


class OutOfStockError(ConflictError):
    code = "out_of_stock"


class InactiveRewardError(ConflictError):
    code = "reward_inactive"


class InactiveClientError(ConflictError):
    code = "client_inactive"


class AlreadyUsedError(ConflictError):
    code = "already_used"

    def __init__(self, code: str, used_at: datetime | None) -> None:
        super().__init__(f"Token {code} has already been used")
        self.token_code = code
        self.used_at = used_at

    def context(self) -> Dict[str, Any]:
        return {"usedAt": self.used_at.isoformat() if self.used_at else None}


class ExpiredError(ConflictError):
    code = "expired"

    def __init__(self, code: str, expires_at: datetime | None) -> None:
        super().__init__(f"Token {code} has expired")
        self.token_code = code
        self.expires_at = expires_at

    def context(self) -> Dict[str, Any]:
        return {"expiresAt": self.expires_at.isoformat() if self.expires_at else None}


class TokenCancelledError(ConflictError):
    code = "cancelled"


class WrongMerchantError(ConflictError):
    code = "wrong_merchant"


class AlreadySpunTodayError(ConflictError):
    code = "already_spun_today"


__all__ = [
    "AlreadySpunTodayError",
    "AlreadyUsedError",
    "ConfigurationError",
    "ConflictError",
    "ExpiredError",
    "ExternalServiceError",
    "InactiveClientError",
    "InactiveRewardError",
    "InsufficientBalanceError",
    "InsufficientPointsError",
    "NotFoundError",
    "OutOfStockError",
    "RaceLostError",
    "RewardEngineError",
    "TokenCancelledError",
    "ValidationError",
    "WrongMerchantError",
]
