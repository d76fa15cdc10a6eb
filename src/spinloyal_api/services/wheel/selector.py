"""Weighted outcome selection over wheel segments."""

from __future__ import annotations

import random
from typing import Sequence

from spinloyal_api.services.errors import ValidationError
from spinloyal_api.services.wheel.segments import WheelSegment


_SYSTEM_RANDOM = random.SystemRandom()


def pick_weighted_index(weights: Sequence[float], draw: float) -> int:
    """Return the first index whose cumulative weight reaches ``draw``.

    Zero-weight entries own no part of the range and are never returned
    unless every weight is zero, in which case index 0 is the outcome.
    """

    cumulative = 0.0
    last_positive = None
    for index, weight in enumerate(weights):
        if weight <= 0:
            continue
        cumulative += weight
        last_positive = index
        if cumulative >= draw:
            return index
    # float accumulation can leave the final boundary a hair below total
    return last_positive if last_positive is not None else 0


def select_outcome(segments: Sequence[WheelSegment], *, rng: random.Random | None = None) -> int:
    """Draw one segment index with probability ``weight / total``."""

    if not segments:
        raise ValidationError("Cannot select from an empty wheel")

    weights = [segment.weight for segment in segments]
    total = sum(weights)
    if total <= 0:
        return 0

    draw = (rng or _SYSTEM_RANDOM).random() * total
    return pick_weighted_index(weights, draw)


__all__ = ["pick_weighted_index", "select_outcome"]
