"""Sliding-window admission control for payment initiation.

Each identifier keeps the timestamps of its recent admissions. A call prunes
entries older than the window, then admits only while fewer than
`max_requests` remain. Abuse damping only: the in-memory variant forgets
everything on restart and is per-process.
"""

import threading
import time
from collections import deque
from uuid import uuid4

import redis

from bdpay.common.logging import logger


class SlidingWindowRateLimiter:
    """In-process limiter; one lock per identifier bucket.

    Buckets whose newest admission has left the window are swept at most once
    per window, so idle identifiers do not accumulate.
    """

    def __init__(self, window_seconds: float = 60.0, max_requests: int = 5, clock=time.monotonic) -> None:
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self._clock = clock
        self._buckets: dict[str, deque[float]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._last_sweep = clock()

    def _sweep(self, now: float) -> None:
        for identifier, timestamps in list(self._buckets.items()):
            lock = self._locks[identifier]
            # A held lock means an admission is in flight; leave that bucket.
            if not lock.acquire(blocking=False):
                continue
            try:
                if not timestamps or now - timestamps[-1] >= self.window_seconds:
                    del self._buckets[identifier]
                    del self._locks[identifier]
            finally:
                lock.release()
        self._last_sweep = now

    def _bucket(self, identifier: str) -> tuple[threading.Lock, deque[float]]:
        with self._registry_lock:
            now = self._clock()
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(now)
            lock = self._locks.get(identifier)
            if lock is None:
                lock = self._locks[identifier] = threading.Lock()
                self._buckets[identifier] = deque()
            return lock, self._buckets[identifier]

    def admit(self, identifier: str) -> bool:
        while True:
            lock, timestamps = self._bucket(identifier)
            with lock:
                if self._buckets.get(identifier) is not timestamps:
                    # Swept between lookup and lock; take the fresh bucket.
                    continue
                now = self._clock()
                while timestamps and now - timestamps[0] >= self.window_seconds:
                    timestamps.popleft()
                if len(timestamps) >= self.max_requests:
                    logger.warning("rate limit exceeded identifier=%s", identifier)
                    return False
                timestamps.append(now)
                return True


class RedisSlidingWindowLimiter:
    """Shared limiter for multi-instance deployments (one sorted set per identifier)."""

    def __init__(
        self,
        client: redis.Redis,
        window_seconds: float = 60.0,
        max_requests: int = 5,
        key_prefix: str = "ratelimit:billdesk",
        clock=time.time,
    ) -> None:
        self.client = client
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.key_prefix = key_prefix
        self._clock = clock

    def admit(self, identifier: str) -> bool:
        key = f"{self.key_prefix}:{identifier}"
        now = self._clock()
        member = f"{now}:{uuid4().hex}"
        # Add-then-count inside MULTI so concurrent callers never lose an entry.
        pipe = self.client.pipeline(transaction=True)
        pipe.zremrangebyscore(key, 0, now - self.window_seconds)
        pipe.zadd(key, {member: now})
        pipe.zcard(key)
        pipe.expire(key, int(self.window_seconds) + 1)
        _, _, count, _ = pipe.execute()
        if count > self.max_requests:
            self.client.zrem(key, member)
            logger.warning("rate limit exceeded identifier=%s", identifier)
            return False
        return True


def build_rate_limiter(billdesk, redis_url: str):
    """Construct the limiter selected by `BILLDESK_RATE_LIMIT_BACKEND`."""

    if billdesk.rate_limit_backend == "redis":
        return RedisSlidingWindowLimiter(
            redis.Redis.from_url(redis_url, decode_responses=True),
            window_seconds=billdesk.rate_limit_window_seconds,
            max_requests=billdesk.rate_limit_max_requests,
        )
    return SlidingWindowRateLimiter(
        window_seconds=billdesk.rate_limit_window_seconds,
        max_requests=billdesk.rate_limit_max_requests,
    )
