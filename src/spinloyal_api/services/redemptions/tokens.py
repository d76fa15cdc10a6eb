"""Reward token codes: generation, parsing and the state view returned to scanners."""

from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from urllib.parse import parse_qs, urlparse
from uuid import UUID

from spinloyal_api.services.errors import ValidationError


REDEMPTION_CODE_PREFIX = "RWD-"
REDEMPTION_CODE_LENGTH = 8
REDEMPTION_CODE_PATTERN = re.compile(r"^RWD-[A-Z0-9]{5,8}$")
COUPON_SUFFIX_LENGTH = 8
COUPON_FALLBACK_PREFIX = "WIN"

_CODE_ALPHABET = string.ascii_uppercase + string.digits


class TokenKind(str, Enum):
    COUPON = "coupon"
    REDEMPTION = "redemption"


@dataclass(slots=True)
class TokenState:
    """What a staff scan learns about a token."""

    kind: TokenKind
    code: str
    merchant_id: UUID
    status: str
    label: str
    expires_at: datetime | None
    used_at: datetime | None
    client_id: UUID | None = None
    points_spent: int | None = None

    @property
    def is_used(self) -> bool:
        return self.status == "used"


def generate_redemption_code() -> str:
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(REDEMPTION_CODE_LENGTH))
    return f"{REDEMPTION_CODE_PREFIX}{suffix}"


def coupon_prefix(merchant_name: str | None) -> str:
    letters = "".join(char for char in (merchant_name or "") if char.isalnum())
    return letters[:3].upper() or COUPON_FALLBACK_PREFIX


def generate_coupon_code(merchant_name: str | None) -> str:
    return f"{coupon_prefix(merchant_name)}-{secrets.token_hex(COUPON_SUFFIX_LENGTH // 2).upper()}"


def extract_token_code(raw: str | None) -> str:
    """Accept a bare code or a scanned URL carrying ``?code=``."""

    value = (raw or "").strip()
    if "code=" in value:
        codes = parse_qs(urlparse(value).query).get("code")
        if not codes:
            codes = parse_qs(value.split("?", 1)[-1]).get("code")
        value = (codes[0] if codes else "").strip()
    if not value:
        raise ValidationError("A token code is required")
    return value.upper()


__all__ = [
    "REDEMPTION_CODE_PATTERN",
    "TokenKind",
    "TokenState",
    "coupon_prefix",
    "extract_token_code",
    "generate_coupon_code",
    "generate_redemption_code",
]
