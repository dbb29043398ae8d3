"""Fixed-window rate limiting for scan and confirm attempts.

Counters live on a :class:`RateLimiter` instance owned by the application
(``app.state``), never in module globals. A Redis backend can be configured
so several service instances share one set of counters.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from typing import Any

import redis

from qr_confirm.core.settings import settings

logger = logging.getLogger(__name__)

BUCKET_SCAN = "scan"
BUCKET_SHORT_CODE = "short_code"
BUCKET_CONFIRM = "confirm"


@dataclass(frozen=True)
class RateLimitRule:
    requests: int
    period_seconds: int


class RateLimiter:
    """Per-key request counters with TTL eviction and a bounded key count."""

    def __init__(
        self,
        rules: dict[str, RateLimitRule],
        *,
        max_keys: int = 10_000,
        redis_client: Any | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rules = rules
        self.max_keys = max_keys
        self._redis = redis_client
        self._clock = clock
        # key -> [count, window_end]
        self._counters: OrderedDict[str, list[float]] = OrderedDict()
        self._lock = Lock()

    def allow(self, bucket: str, key: str) -> bool:
        """Count one attempt for ``key`` in ``bucket``; False once over the limit."""
        rule = self.rules.get(bucket)
        if rule is None or rule.requests <= 0:
            return True
        counter_key = f"ratelimit:{bucket}:{key}"

        if self._redis is not None:
            try:
                pipe = self._redis.pipeline()
                # Start the window only if the key does not exist yet.
                pipe.set(counter_key, 0, ex=int(rule.period_seconds), nx=True)
                pipe.incr(counter_key)
                _, count = pipe.execute()
                return int(count) <= rule.requests
            except redis.RedisError:
                logger.warning(
                    "Rate limiter lost Redis connection; using in-process counters", exc_info=True
                )
                self._redis = None

        now = self._clock()
        with self._lock:
            entry = self._counters.get(counter_key)
            if entry is None or entry[1] <= now:
                entry = [0, now + rule.period_seconds]
                self._counters[counter_key] = entry
            self._counters.move_to_end(counter_key)
            entry[0] += 1
            self._evict(now)
            return entry[0] <= rule.requests

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()

    def __len__(self) -> int:
        return len(self._counters)

    def _evict(self, now: float) -> None:
        expired = [key for key, (_, window_end) in self._counters.items() if window_end <= now]
        for key in expired:
            del self._counters[key]
        overflow = len(self) - self.max_keys
        if overflow > 0:
            logger.warning(
                "Rate limiter key cap %d reached; dropping %d oldest", self.max_keys, overflow
            )
            for _ in range(overflow):
                self._counters.popitem(last=False)


def build_rate_limiter() -> RateLimiter:
    """Construct the limiter described by application settings."""
    rules = {
        BUCKET_SCAN: RateLimitRule(
            settings.rate_limit_scan_requests, settings.rate_limit_scan_period_seconds
        ),
        BUCKET_SHORT_CODE: RateLimitRule(
            settings.rate_limit_short_code_requests,
            settings.rate_limit_short_code_period_seconds,
        ),
        BUCKET_CONFIRM: RateLimitRule(
            settings.rate_limit_confirm_requests, settings.rate_limit_confirm_period_seconds
        ),
    }
    client = None
    if settings.rate_limit_redis_url:
        client = redis.from_url(settings.rate_limit_redis_url)  # type: ignore[no-untyped-call]
    return RateLimiter(rules, max_keys=settings.rate_limit_max_keys, redis_client=client)
