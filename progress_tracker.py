#!/usr/bin/env python3
"""
Progress Tracker

Bounded step progress for a single operation with a proportional bar and an
ETA estimate. The ETA is only computed once both elapsed time and completed
steps are positive; otherwise it is zero.
"""

import time
from dataclasses import dataclass
from typing import Callable

BAR_WIDTH = 50


@dataclass(frozen=True)
class ProgressSnapshot:
    current: int
    total: int
    percent: int
    filled: int
    elapsed: float
    eta_seconds: int
    label: str = ""


class ProgressTracker:
    """Step counter anchored at begin(), advanced once per sub-step"""

    def __init__(self, clock: Callable[[], float] = time.monotonic, width: int = BAR_WIDTH):
        self._clock = clock
        self.width = width
        self.total = 0
        self.current = 0
        self._started = clock()

    def begin(self, total: int):
        self.total = max(0, total)
        self.current = 0
        self._started = self._clock()

    def advance(self, label: str = "") -> ProgressSnapshot:
        self.current = min(self.current + 1, self.total)
        return self.snapshot(label)

    def snapshot(self, label: str = "") -> ProgressSnapshot:
        elapsed = max(0.0, self._clock() - self._started)
        percent = (100 * self.current) // self.total if self.total > 0 else 0
        filled = (percent * self.width) // 100

        eta = 0
        if elapsed > 0 and self.current > 0:
            rate = self.current / elapsed
            eta = int((self.total - self.current) / rate)

        return ProgressSnapshot(
            current=self.current,
            total=self.total,
            percent=percent,
            filled=filled,
            elapsed=elapsed,
            eta_seconds=eta,
            label=label,
        )

    def render(self, snapshot: ProgressSnapshot) -> str:
        """Render a snapshot as a single progress line"""
        bar = "█" * snapshot.filled + "░" * (self.width - snapshot.filled)
        minutes, seconds = divmod(snapshot.eta_seconds, 60)
        line = f"[{bar}] {snapshot.percent:3d}% ({snapshot.current}/{snapshot.total}) ETA: {minutes}m {seconds}s"
        if snapshot.label:
            line += f" - {snapshot.label}"
        return line
