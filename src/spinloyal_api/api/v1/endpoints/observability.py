"""Observability endpoints for reward engine counters."""

from __future__ import annotations

from typing import Dict

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from spinloyal_api.api.dependencies.security import require_staff_api_key
from spinloyal_api.observability.rewards import get_reward_store


router = APIRouter(
    prefix="/observability",
    tags=["Observability"],
    dependencies=[Depends(require_staff_api_key)],
)


@router.get("/rewards", summary="Reward engine counters")
async def get_reward_counters() -> Dict[str, Dict[str, int]]:
    return get_reward_store().snapshot().as_dict()


def _format_metric(name: str, description: str, label: str, samples: Dict[str, int]) -> list[str]:
    lines = [f"# HELP {name} {description}", f"# TYPE {name} counter"]
    for key, value in sorted(samples.items()):
        lines.append(f'{name}{{{label}="{key}"}} {value}')
    return lines


_METRIC_NAMES = {
    "spins": ("spinloyal_wheel_spins_total", "Wheel spins by outcome", "outcome"),
    "coupons": ("spinloyal_coupons_total", "Wheel coupons by event", "event"),
    "ledger": ("spinloyal_ledger_transactions_total", "Points transactions by type", "type"),
    "identity": ("spinloyal_identity_resolutions_total", "Client resolutions by result", "result"),
    "redemptions": ("spinloyal_redemptions_total", "Reward redemptions by result", "result"),
    "validations": ("spinloyal_token_validations_total", "Token scans by result", "result"),
    "notifications": ("spinloyal_notifications_total", "Notification deliveries by result", "result"),
}


@router.get(
    "/prometheus",
    summary="Prometheus-formatted reward engine metrics",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics() -> PlainTextResponse:
    snapshot = get_reward_store().snapshot().as_dict()

    lines: list[str] = []
    for category, (metric, description, label) in _METRIC_NAMES.items():
        samples = snapshot.get(category, {})
        if samples:
            lines.extend(_format_metric(metric, description, label, samples))

    return PlainTextResponse("\n".join(lines) + "\n")
