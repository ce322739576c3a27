"""
Thread-safe in-memory metrics for the director worker.

Tracks:
  - Traffic: request counters per operation (requests.*)
  - Errors: failure counters (errors.*, ratelimit.denied, fanout.fallback)
  - Render outcomes: render.submitted / completed / failed / timeout
  - Latency: per-operation samples in milliseconds

All data is ephemeral (resets on restart).
"""

import time
import threading
from typing import Dict, List
from collections import defaultdict

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)

# ── Latency samples (last 100 per operation) ─────────────────────────────────
_latency_samples: Dict[str, List[float]] = defaultdict(list)
MAX_SAMPLES = 100

_gauges: Dict[str, float] = defaultdict(float)

# ── Error log (last 50 errors) ───────────────────────────────────────────────
_recent_errors: List[dict] = []
MAX_ERRORS = 50


def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'requests.refine', 'render.timeout')."""
    with _lock:
        _counters[name] += amount


def get_counter(name: str) -> int:
    with _lock:
        return _counters.get(name, 0)


def record_latency(operation: str, duration_ms: float):
    with _lock:
        samples = _latency_samples[operation]
        samples.append(duration_ms)
        if len(samples) > MAX_SAMPLES:
            _latency_samples[operation] = samples[-MAX_SAMPLES:]


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_error(operation: str, error_type: str, message: str, job_id: str = ""):
    """Record an error for root-cause analysis."""
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "operation": operation,
            "error_type": error_type,
            "message": message[:300],
            "job_id": job_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def reset():
    """Clear all collected data."""
    with _lock:
        _counters.clear()
        _latency_samples.clear()
        _gauges.clear()
        _recent_errors.clear()


def get_snapshot() -> dict:
    """Return a complete metrics snapshot for the /metrics endpoint."""
    now = time.time()

    with _lock:
        latency_stats = {}
        for operation, samples in _latency_samples.items():
            if not samples:
                continue
            sorted_s = sorted(samples)
            n = len(sorted_s)
            latency_stats[operation] = {
                "p50": sorted_s[n // 2],
                "p95": sorted_s[int(n * 0.95)] if n >= 20 else sorted_s[-1],
                "avg": sum(sorted_s) / n,
                "count": n,
            }

        error_patterns: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            error_patterns[f"{err['operation']}:{err['error_type']}"] += 1

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": latency_stats,
            "recent_errors": list(_recent_errors[-10:]),
            "error_patterns": dict(error_patterns),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }
