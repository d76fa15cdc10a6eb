"""Prize wheel exports."""

from .segments import (  # noqa: F401
    FALLBACK_KINDS,
    PrizeOption,
    SegmentKind,
    WheelConfig,
    WheelSegment,
    build_segments,
)
from .selector import pick_weighted_index, select_outcome  # noqa: F401
from .spin_service import SpinResult, SpinService  # noqa: F401
