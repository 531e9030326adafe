# eventpass/infra/timings.py
"""
In-process latency samples for the checkout path, served by
``GET /api/admin/timings``.

Each kind keeps only its most recent ``WINDOW`` samples so a long-running
server does not grow without bound. Stats are computed on read.
"""
from __future__ import annotations
from collections import deque
from typing import Deque, Dict, List
import statistics
import time

WINDOW = 4096

# single-threaded event loop: no locks
_SAMPLES: Dict[str, Deque[float]] = {}


def record_timing(kind: str, seconds: float) -> None:
    window = _SAMPLES.get(kind)
    if window is None:
        window = _SAMPLES[kind] = deque(maxlen=WINDOW)
    window.append(float(seconds))


class timeit:
    """Records the wall time of the block under ``kind``, even on error.

        async with timeit("payment.cas"):
            await payments.compare_and_set_status(...)
    """
    __slots__ = ("kind", "started")

    def __init__(self, kind: str):
        self.kind = kind
        self.started = 0.0

    async def __aenter__(self):
        self.started = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self.kind, time.perf_counter() - self.started)


def _percentile(ordered: List[float], q: float) -> float:
    # nearest-rank on an already sorted list
    idx = max(0, min(len(ordered) - 1, round(q * (len(ordered) - 1))))
    return ordered[idx]


def aggregates() -> List[Dict[str, float]]:
    """One record per kind, sorted by kind; all values in seconds."""
    out = []
    for kind in sorted(_SAMPLES):
        values = sorted(_SAMPLES[kind])
        if not values:
            continue
        out.append({
            "kind": kind,
            "n": len(values),
            "mean": statistics.fmean(values),
            "std": statistics.stdev(values) if len(values) > 1 else 0.0,
            "p50": _percentile(values, 0.50),
            "p95": _percentile(values, 0.95),
            "max": values[-1],
        })
    return out


def reset() -> None:
    _SAMPLES.clear()
