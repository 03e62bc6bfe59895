from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from threading import Lock
from typing import Dict


@dataclass
class RewardsSnapshot:
    cascades: Dict[str, int]
    global_numbers: int
    tasks: Dict[str, Dict[str, int]]
    payouts: Dict[str, Dict[str, object]]
    qr_transfers: Dict[str, int]
    redrive: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "cascades": dict(self.cascades),
            "global_numbers": self.global_numbers,
            "tasks": {key: dict(value) for key, value in self.tasks.items()},
            "payouts": {key: dict(value) for key, value in self.payouts.items()},
            "qr_transfers": dict(self.qr_transfers),
            "redrive": dict(self.redrive),
        }


class RewardsObservabilityStore:
    """Collect cascade telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._cascades: Dict[str, int] = defaultdict(int)
        self._global_numbers = 0
        self._tasks: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._payout_counts: Dict[str, int] = defaultdict(int)
        self._payout_totals: Dict[str, Decimal] = defaultdict(Decimal)
        self._qr: Dict[str, int] = defaultdict(int)
        self._redrive: Dict[str, int] = defaultdict(int)

    def record_cascade(self, source: str, *, global_numbers: int = 0) -> None:
        with self._lock:
            self._cascades[source] += 1
            self._global_numbers += global_numbers

    def record_task(self, kind: str, outcome: str) -> None:
        with self._lock:
            self._tasks[outcome][kind] += 1

    def record_payout(self, kind: str, amount: Decimal) -> None:
        with self._lock:
            self._payout_counts[kind] += 1
            self._payout_totals[kind] += Decimal(amount)

    def record_qr_event(self, event: str) -> None:
        with self._lock:
            self._qr[event] += 1

    def record_redrive_run(self, summary: Dict[str, int]) -> None:
        with self._lock:
            self._redrive["runs"] += 1
            for key, value in summary.items():
                self._redrive[key] += int(value)

    def snapshot(self) -> RewardsSnapshot:
        with self._lock:
            cascades = dict(self._cascades)
            tasks = {outcome: dict(kinds) for outcome, kinds in self._tasks.items()}
            payouts = {
                kind: {"count": self._payout_counts[kind], "total": str(self._payout_totals[kind])}
                for kind in self._payout_counts
            }
            qr_transfers = dict(self._qr)
            redrive = dict(self._redrive)
            global_numbers = self._global_numbers
        return RewardsSnapshot(
            cascades=cascades,
            global_numbers=global_numbers,
            tasks=tasks,
            payouts=payouts,
            qr_transfers=qr_transfers,
            redrive=redrive,
        )

    def reset(self) -> None:
        with self._lock:
            self._cascades.clear()
            self._global_numbers = 0
            self._tasks.clear()
            self._payout_counts.clear()
            self._payout_totals.clear()
            self._qr.clear()
            self._redrive.clear()


_STORE = RewardsObservabilityStore()


def get_rewards_store() -> RewardsObservabilityStore:
    return _STORE


__all__ = ["get_rewards_store", "RewardsObservabilityStore", "RewardsSnapshot"]
