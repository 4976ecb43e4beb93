from __future__ import annotations

from typing import Deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from collections import deque
import time


def iso_now_ms() -> str:
    """UTC ISO-8601 timestamp with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(slots=True)
class RateTimer:
    """
    Loop rate tracker for the estimator/navigation diagnostics.

    Usage:
        rt = RateTimer(window=50)
        while running:
            step()
            hz = rt.tick()
    """
    window: int = 50
    _times: Deque[float] = field(default_factory=deque, repr=False)

    def __post_init__(self) -> None:
        self._times = deque(maxlen=max(2, self.window))

    def tick(self) -> float:
        self._times.append(time.perf_counter())
        return self.rate_hz

    @property
    def rate_hz(self) -> float:
        if len(self._times) < 2:
            return 0.0
        dt = (self._times[-1] - self._times[0]) / (len(self._times) - 1)
        return 0.0 if dt <= 0 else 1.0 / dt


def clamp(v: float, lo: float, hi: float) -> float:
    return float(min(hi, max(lo, v)))


def parse_triplet(s: str) -> tuple[float, float, float]:
    """Parse 'X,Y,H' (CLI targets, start poses)."""
    parts = [p.strip() for p in s.split(",")]
    if len(parts) != 3:
        raise ValueError(f"Expected X,Y,H but got {s!r}")
    x, y, h = (float(p) for p in parts)
    return (x, y, h)
