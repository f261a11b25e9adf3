from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LoyaltySnapshot:
    ledger: Dict[str, int]
    redemptions: Dict[str, int]
    concurrency: Dict[str, int]
    tiers: Dict[str, Dict[str, int]]

    def as_dict(self) -> Dict[str, object]:
        return {
            "ledger": dict(self.ledger),
            "redemptions": dict(self.redemptions),
            "concurrency": dict(self.concurrency),
            "tiers": {key: dict(value) for key, value in self.tiers.items()},
        }


class LoyaltyObservabilityStore:
    """Collect ledger, redemption and tier telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._ledger: Dict[str, int] = defaultdict(int)
        self._redemptions: Dict[str, int] = defaultdict(int)
        self._concurrency: Dict[str, int] = defaultdict(int)
        self._tier_changes: Dict[str, int] = defaultdict(int)
        self._tier_triggers: Dict[str, int] = defaultdict(int)

    def record_ledger_append(self, kind: str, points: int) -> None:
        with self._lock:
            self._ledger[f"entries:{kind}"] += 1
            self._ledger[f"points:{kind}"] += points

    def record_redemption(self, outcome: str) -> None:
        with self._lock:
            self._redemptions[outcome] += 1

    def record_conflict(self) -> None:
        with self._lock:
            self._concurrency["conflicts"] += 1

    def record_retry(self) -> None:
        with self._lock:
            self._concurrency["retries"] += 1

    def record_exhausted(self) -> None:
        with self._lock:
            self._concurrency["exhausted"] += 1

    def record_tier_change(self, previous: str | None, current: str, trigger: str) -> None:
        with self._lock:
            self._tier_changes[f"{previous or 'none'}->{current}"] += 1
            self._tier_triggers[trigger] += 1

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            ledger = dict(self._ledger)
            redemptions = dict(self._redemptions)
            concurrency = dict(self._concurrency)
            tiers = {
                "transitions": dict(self._tier_changes),
                "by_trigger": dict(self._tier_triggers),
            }
        return LoyaltySnapshot(
            ledger=ledger,
            redemptions=redemptions,
            concurrency=concurrency,
            tiers=tiers,
        )

    def reset(self) -> None:
        with self._lock:
            self._ledger.clear()
            self._redemptions.clear()
            self._concurrency.clear()
            self._tier_changes.clear()
            self._tier_triggers.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]
