# boxoffice/infra/timings.py
from __future__ import annotations
import statistics
import time
from typing import Dict, List

# ------------ hot path: append only ------------
# one list per kind; no locks, single-threaded event loop
_TIMINGS: Dict[str, List[float]] = {}

# keep the most recent samples only
MAX_SAMPLES_PER_KIND = 10_000


def perf_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    lst = _TIMINGS.get(kind)
    if lst is None:
        lst = []
        _TIMINGS[kind] = lst
    lst.append(float(value))
    if len(lst) > MAX_SAMPLES_PER_KIND:
        del lst[: len(lst) - MAX_SAMPLES_PER_KIND]


class timeit:
    """async usage:
        async with timeit("fulfillment.issue"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = perf_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, perf_ts() - self._t0)


# ------------ stats only when asked ------------

def _mean_std(values: list[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return (
        statistics.mean(values),
        statistics.stdev(values) if len(values) > 1 else 0.0
    )


def aggregates() -> List[Dict[str, float]]:
    out = []
    for kind, vals in sorted(_TIMINGS.items()):
        mean, std = _mean_std(vals)
        out.append({
            "kind": kind,
            "n": len(vals),
            "mean": mean,
            "std": std,
            "max": max(vals) if vals else 0.0,
        })
    return out
