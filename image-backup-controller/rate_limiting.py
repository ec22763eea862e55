import threading
import time
from typing import Dict, Hashable

BASE_DELAY = 0.005  # seconds
MAX_DELAY = 1000.0
BUCKET_QPS = 10.0
BUCKET_BURST = 100


class RateLimiter:
    def when(self, item: Hashable) -> float:
        """Return how long to wait before ``item`` may be processed again"""
        raise NotImplementedError

    def forget(self, item: Hashable):
        raise NotImplementedError

    def num_requeues(self, item: Hashable) -> int:
        raise NotImplementedError


class ItemExponentialFailureRateLimiter(RateLimiter):
    """base_delay * 2^failures per item, capped at max_delay"""

    def __init__(self, base_delay: float = BASE_DELAY, max_delay: float = MAX_DELAY):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: Dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item):
        with self._lock:
            exp = self._failures.get(item, 0)
            self._failures[item] = exp + 1
        # avoid float overflow for items that keep failing
        if exp > 64:
            return self.max_delay
        return min(self.base_delay * (2 ** exp), self.max_delay)

    def forget(self, item):
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item):
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter(RateLimiter):
    """Overall token bucket shared by all items"""

    def __init__(self, qps: float = BUCKET_QPS, burst: int = BUCKET_BURST, clock=time.monotonic):
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item):
        with self._lock:
            now = self._clock()
            self._tokens = min(self.burst, self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item):
        pass

    def num_requeues(self, item):
        return 0


class MaxOfRateLimiter(RateLimiter):
    def __init__(self, *limiters: RateLimiter):
        self.limiters = limiters

    def when(self, item):
        return max(limiter.when(item) for limiter in self.limiters)

    def forget(self, item):
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item):
        return max(limiter.num_requeues(item) for limiter in self.limiters)


def default_controller_rate_limiter() -> RateLimiter:
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(BASE_DELAY, MAX_DELAY),
        BucketRateLimiter(BUCKET_QPS, BUCKET_BURST),
    )
