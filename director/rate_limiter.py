"""
Fixed-window rate limiter backed by Redis hashes.

Each (endpoint, identifier) pair gets a hash keyed by
`ratelimit:{endpoint}:{identifier}` holding count / window_start / window_end.
Updates use WATCH/MULTI so concurrent instances never lose an increment.
When Redis is unreachable the limiter fails open and logs a warning.
"""

import math
import time
import logging
from dataclasses import dataclass
from typing import NamedTuple, Optional

from redis.exceptions import RedisError, WatchError

from . import metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimit:
    max_requests: int
    window_seconds: int


# Per-endpoint budgets, tracked independently
ENDPOINT_LIMITS = {
    "upload": RateLimit(20, 60),
    "generate": RateLimit(10, 60),
    "refine": RateLimit(30, 60),
    "production": RateLimit(5, 60),
    "query": RateLimit(100, 60),
}

MAX_WATCH_RETRIES = 5


class RateLimitDecision(NamedTuple):
    allowed: bool
    remaining: int
    retry_after: int  # seconds, 0 when allowed


@dataclass
class RateLimitBucket:
    count: int
    window_start: float
    window_end: float

    def to_mapping(self) -> dict:
        return {
            "count": self.count,
            "window_start": self.window_start,
            "window_end": self.window_end,
        }

    @classmethod
    def from_mapping(cls, raw: dict) -> Optional["RateLimitBucket"]:
        if not raw:
            return None
        fields = {(k.decode() if isinstance(k, bytes) else k): v for k, v in raw.items()}
        try:
            return cls(
                count=int(fields["count"]),
                window_start=float(fields["window_start"]),
                window_end=float(fields["window_end"]),
            )
        except (KeyError, ValueError):
            return None


def get_limit(endpoint: str) -> RateLimit:
    try:
        return ENDPOINT_LIMITS[endpoint]
    except KeyError:
        raise ValueError(f"Unknown rate-limit endpoint: {endpoint}")


def evaluate_bucket(
    bucket: Optional[RateLimitBucket],
    limit: RateLimit,
    now: float,
) -> tuple[RateLimitDecision, Optional[RateLimitBucket]]:
    """
    Decide one request against the current bucket.

    Returns the decision and the bucket to persist (None when nothing changes).
    """
    if bucket is None or now >= bucket.window_end:
        fresh = RateLimitBucket(count=1, window_start=now, window_end=now + limit.window_seconds)
        return RateLimitDecision(True, limit.max_requests - 1, 0), fresh

    if bucket.count < limit.max_requests:
        updated = RateLimitBucket(bucket.count + 1, bucket.window_start, bucket.window_end)
        return RateLimitDecision(True, limit.max_requests - updated.count, 0), updated

    retry_after = max(1, math.ceil(bucket.window_end - now))
    return RateLimitDecision(False, 0, retry_after), None


def bucket_key(endpoint: str, identifier: str) -> str:
    return f"ratelimit:{endpoint}:{identifier}"


async def check_rate_limit(
    redis_client,
    identifier: str,
    endpoint: str,
    now: Optional[float] = None,
) -> RateLimitDecision:
    """
    Check and record one request for `identifier` against `endpoint`'s budget.

    Returns:
        RateLimitDecision(allowed, remaining, retry_after)
    """
    limit = get_limit(endpoint)
    key = bucket_key(endpoint, identifier)

    try:
        async with redis_client.pipeline(transaction=True) as pipe:
            for _ in range(MAX_WATCH_RETRIES):
                current = time.time() if now is None else now
                try:
                    await pipe.watch(key)
                    bucket = RateLimitBucket.from_mapping(await pipe.hgetall(key))
                    decision, to_store = evaluate_bucket(bucket, limit, current)
                    if to_store is None:
                        await pipe.reset()
                        break
                    pipe.multi()
                    pipe.hset(key, mapping=to_store.to_mapping())
                    pipe.expire(key, limit.window_seconds)
                    await pipe.execute()
                    break
                except WatchError:
                    logger.info(f"Rate limit bucket {key} changed concurrently, retrying")
                    continue
            else:
                logger.warning(f"Rate limit bucket {key} contended, failing open")
                return RateLimitDecision(True, 0, 0)
    except RedisError as e:
        metrics.inc_counter("errors.ratelimit_store")
        logger.warning(f"Rate limit store unavailable ({e}) — allowing {endpoint} for {identifier}")
        return RateLimitDecision(True, limit.max_requests, 0)

    if not decision.allowed:
        metrics.inc_counter("ratelimit.denied")
        logger.warning(
            f"Rate limit exceeded for {identifier} on {endpoint}: "
            f"{limit.max_requests}/{limit.window_seconds}s (retry in {decision.retry_after}s)"
        )
    return decision
