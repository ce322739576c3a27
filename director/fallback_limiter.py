"""
In-memory fallback rate limiter.

Used when REDIS_URL is not configured (local development, tests, single
instance). Same buckets and budgets as rate_limiter, but state lives in this
process only and is lost on restart.
"""

import time
import threading
from typing import Dict, Optional, Tuple

from .rate_limiter import (
    RateLimitBucket,
    RateLimitDecision,
    evaluate_bucket,
    get_limit,
)

# ── State ─────────────────────────────────────────────────────────────────────
_lock = threading.Lock()
_buckets: Dict[Tuple[str, str], RateLimitBucket] = {}  # (identifier, endpoint) → bucket


def check_rate_limit(
    identifier: str,
    endpoint: str,
    now: Optional[float] = None,
) -> RateLimitDecision:
    """Same semantics as rate_limiter.check_rate_limit() without Redis."""
    limit = get_limit(endpoint)
    current = time.time() if now is None else now

    with _lock:
        key = (identifier, endpoint)
        decision, to_store = evaluate_bucket(_buckets.get(key), limit, current)
        if to_store is not None:
            _buckets[key] = to_store
        return decision


# ── Cleanup ───────────────────────────────────────────────────────────────────

def cleanup_expired(now: Optional[float] = None) -> int:
    """
    Drop buckets whose window has ended.
    Call periodically (e.g. every 5 minutes) to prevent memory growth.
    """
    current = time.time() if now is None else now
    with _lock:
        expired = [key for key, bucket in _buckets.items() if current >= bucket.window_end]
        for key in expired:
            del _buckets[key]
        return len(expired)


def reset():
    with _lock:
        _buckets.clear()
