import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict


@dataclass(frozen=True, slots=True)
class LoadStats:
    """
    Completion report handed to session observers.
    """

    units_registered: int
    units_completed: int
    elapsed_seconds: float

    @property
    def elapsed_ms(self) -> int:
        return int(round(self.elapsed_seconds * 1000))


class SessionMetrics:
    """
    Session-owned counters.

    Reporting only. Nothing in the scheduler reads these
    to make a decision.
    """

    def __init__(self):
        self.counters: Dict[str, int] = defaultdict(int)
        self.timestamps: Dict[str, float] = {}

    # ---- counters ----
    def inc(self, name: str, value: int = 1) -> None:
        self.counters[name] += value

    # ---- timestamps ----
    def mark_time(self, key: str) -> None:
        self.timestamps[key] = time.monotonic()

    def elapsed_since(self, key: str) -> float:
        start = self.timestamps.get(key)
        if start is None:
            return 0.0
        return time.monotonic() - start

    def snapshot(self) -> LoadStats:
        return LoadStats(
            units_registered=self.counters["units_registered_total"],
            units_completed=self.counters["units_completed_total"],
            elapsed_seconds=self.elapsed_since("session_started"),
        )
