"""Turn a merchant's prize catalog into the ordered, weighted wheel segments."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence
from uuid import UUID

from spinloyal_api.services.errors import ValidationError


MIN_PRIZE_SEGMENTS = 4
SPARSE_CATALOG_SIZE = 2


class SegmentKind(str, Enum):
    PRIZE = "prize"
    UNLUCKY = "unlucky"
    RETRY = "retry"


# Zero-prize wheels ignore the configured special quantities. Preserved as
# observed in production; see DESIGN.md before changing it.
FALLBACK_KINDS: tuple[SegmentKind, ...] = (
    SegmentKind.UNLUCKY,
    SegmentKind.RETRY,
    SegmentKind.UNLUCKY,
    SegmentKind.RETRY,
)


@dataclass(frozen=True, slots=True)
class PrizeOption:
    """Prize as seen by the wheel: a label and its weight (1-100)."""

    name: str
    probability: int
    prize_id: UUID | None = None
    image_url: str | None = None


@dataclass(frozen=True, slots=True)
class WheelConfig:
    prizes: Sequence[PrizeOption] = field(default_factory=tuple)
    unlucky_quantity: int = 0
    retry_quantity: int = 0
    unlucky_probability: int = 0
    retry_probability: int = 0
    max_segments: int = 8
    min_segments: int = 6


@dataclass(frozen=True, slots=True)
class WheelSegment:
    """One wedge of the wheel.

    ``weight`` is the share of the draw this wedge owns. Prize copies split
    their prize's probability, and special wedges split their category total.
    """

    kind: SegmentKind
    weight: float
    prize: PrizeOption | None = None

    @property
    def label(self) -> str:
        if self.prize is not None:
            return self.prize.name
        return self.kind.value


def _validate(config: WheelConfig) -> None:
    if config.max_segments < 1:
        raise ValidationError("max_segments must be at least 1")
    for label, value in (
        ("unlucky_quantity", config.unlucky_quantity),
        ("retry_quantity", config.retry_quantity),
        ("unlucky_probability", config.unlucky_probability),
        ("retry_probability", config.retry_probability),
    ):
        if value < 0:
            raise ValidationError(f"{label} must not be negative")
    for prize in config.prizes:
        if prize.probability < 0:
            raise ValidationError(f"Prize {prize.name!r} has a negative probability")
    if config.unlucky_quantity + config.retry_quantity > config.max_segments:
        raise ValidationError(
            f"{config.unlucky_quantity + config.retry_quantity} special segments exceed "
            f"the {config.max_segments}-segment wheel"
        )


def _interleave(prize_slots: list[int], special_slots: list[SegmentKind]) -> list[int | SegmentKind]:
    ordered: list[int | SegmentKind] = []
    for position in range(max(len(prize_slots), len(special_slots))):
        if position < len(prize_slots):
            ordered.append(prize_slots[position])
        if position < len(special_slots):
            ordered.append(special_slots[position])
    return ordered


def _weigh(slots: Sequence[int | SegmentKind], config: WheelConfig) -> list[WheelSegment]:
    counts = Counter(slots)
    category_totals = {
        SegmentKind.UNLUCKY: config.unlucky_probability,
        SegmentKind.RETRY: config.retry_probability,
    }

    segments: list[WheelSegment] = []
    for slot in slots:
        if isinstance(slot, SegmentKind):
            weight = category_totals[slot] / counts[slot]
            segments.append(WheelSegment(kind=slot, weight=weight))
        else:
            prize = config.prizes[slot]
            segments.append(
                WheelSegment(kind=SegmentKind.PRIZE, weight=prize.probability / counts[slot], prize=prize)
            )
    return segments


def build_segments(config: WheelConfig) -> list[WheelSegment]:
    """Build the wheel for one spin request.

    Special segments are always materialized one per configured slot. A
    catalog of one or two prizes is cycled until it fills at least four
    wedges. When the wheel would exceed ``max_segments`` every special
    segment is kept and the prize wedges are truncated; short wheels are
    padded with unlucky wedges up to ``min_segments``. Prize and special
    wedges then alternate, leftovers from the longer side appended in order.
    """

    _validate(config)

    if not config.prizes:
        return _weigh(FALLBACK_KINDS, config)

    special_slots = [SegmentKind.UNLUCKY] * config.unlucky_quantity + [SegmentKind.RETRY] * config.retry_quantity

    prize_slots = list(range(len(config.prizes)))
    if len(prize_slots) <= SPARSE_CATALOG_SIZE:
        prize_slots = [index % len(config.prizes) for index in range(MIN_PRIZE_SEGMENTS)]

    room_for_prizes = config.max_segments - len(special_slots)
    prize_slots = prize_slots[:room_for_prizes]

    floor = min(config.min_segments, config.max_segments)
    while len(prize_slots) + len(special_slots) < floor:
        special_slots.append(SegmentKind.UNLUCKY)

    return _weigh(_interleave(prize_slots, special_slots), config)


__all__ = [
    "FALLBACK_KINDS",
    "PrizeOption",
    "SegmentKind",
    "WheelConfig",
    "WheelSegment",
    "build_segments",
]
