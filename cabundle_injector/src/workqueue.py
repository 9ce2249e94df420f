from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Protocol

from cabundle_injector.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class RateLimiter(Protocol):
    def when(self, item: str) -> float: ...

    def forget(self, item: str) -> None: ...

    def num_requeues(self, item: str) -> int: ...


class ItemExponentialFailureRateLimiter:
    """Per-key exponential backoff: ``base * 2**failures`` seconds, capped at ``maximum``."""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, item: str) -> float:
        with self._lock:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
        # Guard the exponent so very long failure streaks cannot overflow.
        if failures > 62:
            return self.max_delay
        return min(self.max_delay, self.base_delay * (2**failures))

    def forget(self, item: str) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: str) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter:
    """Overall token bucket shared by every key (``qps`` refill, ``burst`` capacity).

    Tokens are reserved rather than waited for: when the bucket is empty the
    returned delay is how long the caller must wait for its reservation.
    """

    def __init__(
        self,
        qps: float = 10.0,
        burst: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: str) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item: str) -> None:
        return None

    def num_requeues(self, item: str) -> int:
        return 0


class MaxOfRateLimiter:
    """Return the longest delay any of the wrapped limiters asks for."""

    def __init__(self, *limiters: RateLimiter) -> None:
        self.limiters = limiters

    def when(self, item: str) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def forget(self, item: str) -> None:
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item: str) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)


def default_controller_rate_limiter() -> RateLimiter:
    return MaxOfRateLimiter(ItemExponentialFailureRateLimiter(), BucketRateLimiter())


class RateLimitingQueue:
    """Work queue of string keys with single-flight delivery and delayed re-adds.

    Guarantees:

    * A key is never handed to two callers of :meth:`get` at the same time.
      It stays in the processing set until :meth:`done`.
    * Adding a key that is being processed marks it dirty; it is re-queued
      once :meth:`done` is called, never concurrently.
    * Adding a key that is already waiting is a no-op.
    * :meth:`shut_down` discards waiting and delayed keys and wakes every
      blocked :meth:`get` with ``(None, True)``.
    """

    def __init__(
        self,
        name: str,
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()
        self._clock = clock

        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._shutting_down = False
        self._cond = threading.Condition()

        # Delayed adds: heap of (ready_at, sequence, key) plus the earliest
        # ready_at per key so repeated add_after calls keep the soonest one.
        self._waiting: list[tuple[float, int, str]] = []
        self._waiting_ready_at: dict[str, float] = {}
        self._sequence = itertools.count()
        self._waiting_cond = threading.Condition()
        self._waiting_thread = threading.Thread(
            target=self._waiting_loop, name=f"{name}-delaying", daemon=True
        )
        self._waiting_thread.start()

    def _update_depth(self) -> None:
        METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))

    def add(self, item: str) -> None:
        with self._cond:
            if self._shutting_down:
                return
            if item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._update_depth()
            self._cond.notify()

    def get(self) -> tuple[str | None, bool]:
        """Block until a key is available or the queue shuts down.

        Returns ``(key, False)``, or ``(None, True)`` once shut down.
        """
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if self._shutting_down:
                return None, True
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            self._update_depth()
            return item, False

    def done(self, item: str) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty and not self._shutting_down:
                self._queue.append(item)
                self._update_depth()
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            dropped = len(self._queue)
            self._queue.clear()
            self._dirty.clear()
            self._update_depth()
            self._cond.notify_all()
        with self._waiting_cond:
            dropped += len(self._waiting)
            self._waiting.clear()
            self._waiting_ready_at.clear()
            self._waiting_cond.notify_all()
        if dropped:
            LOGGER.info("Queue %s shut down; dropped %d pending key(s)", self.name, dropped)

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def add_after(self, item: str, delay: float) -> None:
        """Add *item* once *delay* seconds have passed."""
        if self.shutting_down():
            return
        if delay <= 0:
            self.add(item)
            return
        ready_at = self._clock() + delay
        with self._waiting_cond:
            existing = self._waiting_ready_at.get(item)
            if existing is not None and existing <= ready_at:
                return
            self._waiting_ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), item))
            self._waiting_cond.notify()

    def add_rate_limited(self, item: str) -> None:
        """Add *item* after the delay the rate limiter assigns to it."""
        METRICS.queue_retries_total.labels(queue=self.name).inc()
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: str) -> None:
        """Clear the failure history for *item*; it does not remove the key from the queue."""
        self.rate_limiter.forget(item)

    def num_requeues(self, item: str) -> int:
        return self.rate_limiter.num_requeues(item)

    def _waiting_loop(self) -> None:
        while True:
            ready: list[str] = []
            with self._waiting_cond:
                if self.shutting_down():
                    return
                if not self._waiting:
                    self._waiting_cond.wait()
                    continue
                now = self._clock()
                while self._waiting and self._waiting[0][0] <= now:
                    ready_at, _, item = heapq.heappop(self._waiting)
                    # Entries superseded by an earlier add_after for the same key are stale.
                    if self._waiting_ready_at.get(item) == ready_at:
                        del self._waiting_ready_at[item]
                        ready.append(item)
                if not ready:
                    if self._waiting:
                        self._waiting_cond.wait(timeout=max(0.0, self._waiting[0][0] - now))
                    continue
            for item in ready:
                self.add(item)
