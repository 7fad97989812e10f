from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class BonusSnapshot:
    ledger: Dict[str, int]
    points: Dict[str, int]
    redemptions: Dict[str, int]
    referrals: Dict[str, int]
    sweeps: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "ledger": dict(self.ledger),
            "points": dict(self.points),
            "redemptions": dict(self.redemptions),
            "referrals": dict(self.referrals),
            "sweeps": dict(self.sweeps),
        }


class BonusObservabilityStore:
    """Collect points ledger telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._ledger: Dict[str, int] = defaultdict(int)
        self._points: Dict[str, int] = defaultdict(int)
        self._redemptions: Dict[str, int] = defaultdict(int)
        self._referrals: Dict[str, int] = defaultdict(int)
        self._sweeps: Dict[str, int] = defaultdict(int)

    def record_ledger_event(self, transaction_type: str, status: str, points: int) -> None:
        with self._lock:
            self._ledger[f"{transaction_type}:{status}"] += 1
            direction = "awarded" if points >= 0 else "deducted"
            self._points[direction] += abs(points)

    def record_pending_resolution(self, outcome: str, points: int) -> None:
        with self._lock:
            self._ledger[f"pending:{outcome}"] += 1
            self._points[f"pending_{outcome}"] += points

    def record_redemption(self, reward_type: str) -> None:
        with self._lock:
            self._redemptions["total"] += 1
            self._redemptions[f"type:{reward_type}"] += 1

    def record_redemption_failure(self, reason: str) -> None:
        with self._lock:
            self._redemptions["failures"] += 1
            self._redemptions[f"failure:{reason}"] += 1

    def record_referral_event(self, event: str) -> None:
        with self._lock:
            self._referrals[event] += 1

    def record_expiration_sweep(self, *, rows: int, accounts: int, points: int) -> None:
        with self._lock:
            self._sweeps["runs"] += 1
            self._sweeps["rows_expired"] += rows
            self._sweeps["accounts_touched"] += accounts
            self._sweeps["points_expired"] += points

    def snapshot(self) -> BonusSnapshot:
        with self._lock:
            return BonusSnapshot(
                ledger=dict(self._ledger),
                points=dict(self._points),
                redemptions=dict(self._redemptions),
                referrals=dict(self._referrals),
                sweeps=dict(self._sweeps),
            )

    def reset(self) -> None:
        with self._lock:
            self._ledger.clear()
            self._points.clear()
            self._redemptions.clear()
            self._referrals.clear()
            self._sweeps.clear()


_STORE = BonusObservabilityStore()


def get_bonus_store() -> BonusObservabilityStore:
    return _STORE


__all__ = ["get_bonus_store", "BonusObservabilityStore", "BonusSnapshot"]
