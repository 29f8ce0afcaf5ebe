import time
from typing import Callable, Dict, Optional


class RateLimiter:
    """
    Fixed-window call counter per key. Windows are in seconds and
    `limits` overrides the default limit for specific keys. At most
    `max_keys` windows are tracked; expired ones are dropped first, then the
    oldest.
    """

    def __init__(
        self,
        default_limit: int = 100,
        window: float = 60,
        limits: Optional[Dict[str, int]] = None,
        max_keys: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_limit = default_limit
        self.window = window
        self.limits = limits or {}
        self.max_keys = max_keys
        self._clock = clock
        self._buckets: Dict[str, dict] = {}

    def _limit(self, key: str) -> int:
        return self.limits.get(key) or self.default_limit

    def _bucket(self, key: str, now: float) -> Optional[dict]:
        bucket = self._buckets.get(key)
        if bucket is None or now > bucket["reset_at"]:
            return None
        return bucket

    def _evict(self, now: float) -> None:
        for key in [k for k, b in self._buckets.items() if now > b["reset_at"]]:
            del self._buckets[key]
        while len(self._buckets) >= self.max_keys:
            del self._buckets[next(iter(self._buckets))]

    def try_acquire(self, key: str) -> bool:
        now = self._clock()
        bucket = self._bucket(key, now)
        if bucket is None:
            self._buckets.pop(key, None)
            self._evict(now)
            bucket = {"count": 0, "reset_at": now + self.window}
            self._buckets[key] = bucket
        if bucket["count"] < self._limit(key):
            bucket["count"] += 1
            return True
        return False

    def remaining_calls(self, key: str) -> int:
        bucket = self._bucket(key, self._clock())
        if bucket is None:
            return self._limit(key)
        return max(0, self._limit(key) - bucket["count"])

    def time_to_reset(self, key: str) -> float:
        now = self._clock()
        bucket = self._bucket(key, now)
        if bucket is None:
            return 0
        return max(0.0, bucket["reset_at"] - now)

    def wait_for_availability(self, key: str, max_wait: float = 10) -> bool:
        if self.try_acquire(key):
            return True
        wait = min(self.time_to_reset(key), max_wait)
        if wait >= max_wait:
            return False
        time.sleep(wait + 0.05)
        return self.try_acquire(key)

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._buckets.clear()
        else:
            self._buckets.pop(key, None)
