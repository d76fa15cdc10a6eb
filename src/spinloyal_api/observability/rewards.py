from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict, List, Tuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session, SessionTransaction

_PENDING_KEY = "reward_counters.pending"


@dataclass
class RewardSnapshot:
    spins: Dict[str, int]
    coupons: Dict[str, int]
    ledger: Dict[str, int]
    identity: Dict[str, int]
    redemptions: Dict[str, int]
    validations: Dict[str, int]
    notifications: Dict[str, int]

    def as_dict(self) -> Dict[str, Dict[str, int]]:
        return {
            "spins": dict(self.spins),
            "coupons": dict(self.coupons),
            "ledger": dict(self.ledger),
            "identity": dict(self.identity),
            "redemptions": dict(self.redemptions),
            "validations": dict(self.validations),
            "notifications": dict(self.notifications),
        }


class RewardObservabilityStore:
    """Process-local counters for the reward engine, exported to dashboards.

    Counters for persisted events may be handed the session that wrote them;
    they then land only once that session commits, and a rollback discards them.
    """

    _CATEGORIES = ("spins", "coupons", "ledger", "identity", "redemptions", "validations", "notifications")

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: Dict[str, Dict[str, int]] = {
            category: defaultdict(int) for category in self._CATEGORIES
        }

    def _increment(self, category: str, key: str) -> None:
        with self._lock:
            self._counters[category][key] += 1

    def _record(self, category: str, key: str, session: AsyncSession | Session | None) -> None:
        if session is None:
            self._increment(category, key)
            return
        sync_session = session.sync_session if isinstance(session, AsyncSession) else session
        sync_session.info.setdefault(_PENDING_KEY, []).append((self, category, key))

    def record_spin(self, outcome: str, *, session: AsyncSession | Session | None = None) -> None:
        self._record("spins", outcome, session)

    def record_coupon_issued(self, *, session: AsyncSession | Session | None = None) -> None:
        self._record("coupons", "issued", session)

    def record_ledger_transaction(
        self, transaction_type: str, *, session: AsyncSession | Session | None = None
    ) -> None:
        self._record("ledger", transaction_type, session)

    def record_identity_resolution(self, result: str, *, session: AsyncSession | Session | None = None) -> None:
        self._record("identity", result, session)

    def record_redemption(self, result: str, *, session: AsyncSession | Session | None = None) -> None:
        self._record("redemptions", result, session)

    def record_validation(self, result: str) -> None:
        self._increment("validations", result)

    def record_notification(self, result: str) -> None:
        self._increment("notifications", result)

    def snapshot(self) -> RewardSnapshot:
        with self._lock:
            copied = {category: dict(values) for category, values in self._counters.items()}
        return RewardSnapshot(**copied)

    def reset(self) -> None:
        with self._lock:
            for values in self._counters.values():
                values.clear()


@event.listens_for(Session, "after_commit")
def _publish_pending_counters(session: Session) -> None:
    pending: List[Tuple[RewardObservabilityStore, str, str]] = session.info.pop(_PENDING_KEY, [])
    for store, category, key in pending:
        store._increment(category, key)


@event.listens_for(Session, "after_transaction_end")
def _discard_pending_counters(session: Session, transaction: SessionTransaction) -> None:
    # after_commit has already drained the list when the transaction committed
    if transaction.parent is None:
        session.info.pop(_PENDING_KEY, None)


_STORE = RewardObservabilityStore()


def get_reward_store() -> RewardObservabilityStore:
    return _STORE


__all__ = ["get_reward_store", "RewardObservabilityStore", "RewardSnapshot"]
