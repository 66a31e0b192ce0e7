"""
Lightweight process-local metrics: counters and latency samples.

Design:
- Counters: name -> int
- Latency samples: newest first, trimmed to the last ``max_samples``
- get_metrics() returns counters plus count/avg/p50 per latency series
"""

from typing import Dict, Any
import statistics

_MEM_COUNTERS: Dict[str, int] = {}
_MEM_LATS: Dict[str, list] = {}


def increment(name: str, amount: int = 1) -> None:
    """Increment a named counter by amount"""
    _MEM_COUNTERS[name] = _MEM_COUNTERS.get(name, 0) + amount


def observe_latency(name: str, ms: float, max_samples: int = 1000) -> None:
    """Record a latency sample (milliseconds) for a named metric"""
    samples = _MEM_LATS.setdefault(name, [])
    samples.insert(0, ms)
    if len(samples) > max_samples:
        del samples[max_samples:]


def get_metrics() -> Dict[str, Any]:
    """Return a JSON-serializable dict of counters and simple latency stats"""
    out = {"counters": dict(_MEM_COUNTERS), "latencies": {}}
    for name, samples in _MEM_LATS.items():
        if not samples:
            continue
        out["latencies"][name] = {
            "count": len(samples),
            "avg": round(sum(samples) / len(samples), 3),
            "p50": round(statistics.median(samples), 3),
        }
    return out


def reset_metrics() -> None:
    _MEM_COUNTERS.clear()
    _MEM_LATS.clear()
