"""
Deduplicating work queue for controller workers.

Items are hashable keys. An item is never handed to two workers at once:
adding an item that is already queued is a no-op, and adding one that is
being processed marks it dirty so it is queued again once ``done`` is
called for it.
"""

import heapq
import itertools
import threading
import time
from collections import deque
from typing import Dict, Hashable, Optional, Tuple

from rate_limiting import RateLimiter, default_controller_rate_limiter


class WorkQueue:
    def __init__(self, name: str = ""):
        self.name = name
        self._cond = threading.Condition()
        self._queue = deque()
        self._dirty = set()
        self._processing = set()
        self._shutting_down = False

    def add(self, item: Hashable):
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def __len__(self):
        with self._cond:
            return len(self._queue)

    def get(self) -> Tuple[Optional[Hashable], bool]:
        """Block until an item is available; returns ``(item, shutdown)``.

        Once the queue is shutting down no further items are handed out.
        """
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if self._shutting_down:
                return None, True
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Hashable):
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def shut_down(self):
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def shut_down_with_drain(self, timeout: Optional[float] = None) -> bool:
        """Shut down and wait for in-flight items to be marked done"""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
            while self._processing:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)
        return True


class DelayingQueue(WorkQueue):
    """WorkQueue that can also add items after a delay"""

    def __init__(self, name: str = "", clock=time.monotonic):
        super().__init__(name)
        self._clock = clock
        self._delay_cond = threading.Condition()
        self._heap = []
        self._waiting: Dict[Hashable, float] = {}
        self._seq = itertools.count()
        self._waiter = threading.Thread(target=self._waiting_loop, name=f"{name}-delay", daemon=True)
        self._waiter.start()

    def add_after(self, item: Hashable, delay: float):
        if self.shutting_down:
            return
        if delay <= 0:
            self.add(item)
            return
        ready_at = self._clock() + delay
        with self._delay_cond:
            current = self._waiting.get(item)
            if current is not None and current <= ready_at:
                return
            self._waiting[item] = ready_at
            heapq.heappush(self._heap, (ready_at, next(self._seq), item))
            self._delay_cond.notify()

    def _waiting_loop(self):
        while True:
            ready = []
            with self._delay_cond:
                if self.shutting_down:
                    return
                now = self._clock()
                while self._heap and self._heap[0][0] <= now:
                    ready_at, _, item = heapq.heappop(self._heap)
                    # stale entries were superseded by an earlier deadline
                    if self._waiting.get(item) == ready_at:
                        del self._waiting[item]
                        ready.append(item)
                if not ready:
                    timeout = self._heap[0][0] - now if self._heap else 1.0
                    self._delay_cond.wait(min(timeout, 1.0))
                    continue
            for item in ready:
                self.add(item)

    def shut_down(self):
        super().shut_down()
        with self._delay_cond:
            self._delay_cond.notify_all()

    def shut_down_with_drain(self, timeout: Optional[float] = None) -> bool:
        with self._delay_cond:
            self._delay_cond.notify_all()
        return super().shut_down_with_drain(timeout)


class RateLimitingQueue(DelayingQueue):
    """DelayingQueue whose retries are paced by a RateLimiter"""

    def __init__(self, rate_limiter: Optional[RateLimiter] = None, name: str = "", clock=time.monotonic):
        super().__init__(name, clock=clock)
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()

    def add_rate_limited(self, item: Hashable):
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: Hashable):
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)
