# gatepass/infra/timings.py
from __future__ import annotations
import os
import statistics
import time
from collections import deque
from typing import Deque, Dict, List, Any

# samples kept per kind; older ones fall off
TIMINGS_WINDOW = int(os.getenv("TIMINGS_WINDOW", "10000"))

# ------------ hot path: append only ------------
# one bounded deque per kind; no locks, single-threaded event loop
_TIMINGS: Dict[str, Deque[float]] = {}


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    window = _TIMINGS.get(kind)
    if window is None:
        window = deque(maxlen=max(1, TIMINGS_WINDOW))
        _TIMINGS[kind] = window
    window.append(float(value))


class timeit:
    """async usage:
        async with timeit("settle.inventory"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, now_ts() - self._t0)


# ------------ stats only on read ------------

def _mean_std(values: list[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return (
        statistics.mean(values),
        statistics.stdev(values) if len(values) > 1 else 0.0
    )


def snapshot() -> List[Dict[str, Any]]:
    """One aggregate per kind: {"kind","n","mean","std","max"}."""
    out = []
    for kind, window in sorted(_TIMINGS.items()):
        vals = list(window)
        mean, std = _mean_std(vals)
        out.append({
            "kind": kind,
            "n": len(vals),
            "mean": mean,
            "std": std,
            "max": max(vals) if vals else 0.0,
        })
    return out
