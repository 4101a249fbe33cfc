from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from typing import Any, Protocol

from curlme.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class RateLimiter(Protocol):
    def when(self, item: Hashable) -> float: ...

    def forget(self, item: Hashable) -> None: ...

    def num_requeues(self, item: Hashable) -> int: ...


class ItemExponentialFailureRateLimiter:
    """Per-item delay of ``base_delay * 2**failures``, capped at ``max_delay``.

    Every call to :meth:`when` counts as one failure for that item; the count
    is only cleared by :meth:`forget`.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        if base_delay <= 0 or max_delay < base_delay:
            raise ValueError("base_delay must be positive and not larger than max_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1
        # Past ~1000 doublings the float overflows; the cap applies long before.
        if exponent > 1000:
            return self.max_delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)


class BucketRateLimiter:
    """Token bucket shared by all items: ``qps`` sustained with ``burst`` headroom."""

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

    def when(self, item: Hashable) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def num_requeues(self, item: Hashable) -> int:
        return 0

    def forget(self, item: Hashable) -> None:
        return None


class MaxOfRateLimiter:
    """Combine limiters, using the worst (longest) delay any of them asks for."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self.limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self.limiters:
            limiter.forget(item)


def default_controller_rate_limiter(
    base_delay: float = 0.005, max_delay: float = 1000.0
) -> MaxOfRateLimiter:
    """Per-item exponential backoff bounded by an overall 10 qps / 100 burst bucket."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay=base_delay, max_delay=max_delay),
        BucketRateLimiter(qps=10.0, burst=100),
    )


class WorkQueue:
    """FIFO queue that collapses duplicates and serializes work per item.

    Items are compared by equality, so two events describing the same object
    occupy one slot; the newest payload replaces the queued one.  An item
    handed out by :meth:`get` is marked as processing until :meth:`done`.
    Adding it again meanwhile only marks it dirty, and it is re-queued when
    the current worker calls :meth:`done`, so no two workers ever hold the
    same item at once.

    Key internal state:
        ``_queue``
            Order in which dirty items are handed out.
        ``_dirty``
            Items that need processing, mapped to their latest payload.
        ``_processing``
            Items currently held by a worker.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._queue: deque[Any] = deque()
        self._dirty: dict[Any, Any] = {}
        self._processing: set[Any] = set()
        self._shutting_down = False

    def add(self, item: Any) -> None:
        with self._cond:
            if self._shutting_down:
                return
            if item in self._dirty:
                self._dirty[item] = item
                return
            self._dirty[item] = item
            if item in self._processing:
                return
            self._queue.append(item)
            METRICS.queue_depth.set(len(self._queue))
            self._cond.notify()

    def get(self, timeout: float | None = None) -> tuple[Any, bool]:
        """Block until an item is available and mark it as processing.

        Returns ``(item, False)`` normally and ``(None, True)`` once the queue
        is shut down and drained.  With a ``timeout``, ``(None, False)`` means
        nothing arrived in time.
        """
        with self._cond:
            ready = self._cond.wait_for(
                lambda: bool(self._queue) or self._shutting_down, timeout=timeout
            )
            if not ready:
                return None, False
            if not self._queue:
                return None, True

            queued = self._queue.popleft()
            item = self._dirty.pop(queued)
            self._processing.add(item)
            METRICS.queue_depth.set(len(self._queue))
            return item, False

    def done(self, item: Any) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(self._dirty[item])
                METRICS.queue_depth.set(len(self._queue))
                self._cond.notify()

    def shut_down(self) -> None:
        """Stop accepting items; workers drain what is queued, then see shutdown."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def is_processing(self, item: Any) -> bool:
        with self._cond:
            return item in self._processing

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


class DelayingQueue(WorkQueue):
    """Work queue that can also add items after a delay.

    A background thread holds delayed items in a heap ordered by ready time.
    An item already waiting keeps its earliest ready time.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__()
        self._clock = clock
        self._waiting_cond = threading.Condition()
        self._waiting: list[tuple[float, int, Any]] = []
        self._waiting_ready_at: dict[Any, float] = {}
        self._sequence = itertools.count()
        self._stopping = False
        self._waiting_thread = threading.Thread(
            target=self._waiting_loop, name="workqueue-delay", daemon=True
        )
        self._waiting_thread.start()

    def add_after(self, item: Any, delay: float) -> None:
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

    def _pop_ready(self) -> list[Any]:
        """Remove and return waiting items whose ready time has passed."""
        now = self._clock()
        ready: list[Any] = []
        while self._waiting and self._waiting[0][0] <= now:
            ready_at, _, item = heapq.heappop(self._waiting)
            # Stale heap entries remain when an item was rescheduled earlier.
            if self._waiting_ready_at.get(item) != ready_at:
                continue
            del self._waiting_ready_at[item]
            ready.append(item)
        return ready

    def _waiting_loop(self) -> None:
        while True:
            with self._waiting_cond:
                if self._stopping:
                    return
                ready = self._pop_ready()
                if not ready:
                    timeout = None
                    if self._waiting:
                        timeout = max(0.0, self._waiting[0][0] - self._clock())
                    self._waiting_cond.wait(timeout=timeout)
                    continue
            for item in ready:
                self.add(item)

    def shut_down(self) -> None:
        super().shut_down()
        with self._waiting_cond:
            self._stopping = True
            self._waiting_cond.notify_all()

    def waiting_count(self) -> int:
        with self._waiting_cond:
            return len(self._waiting_ready_at)


class RateLimitingQueue(DelayingQueue):
    """Delaying queue whose requeue delay comes from a :class:`RateLimiter`."""

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(clock=clock)
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()

    def add_rate_limited(self, item: Any) -> None:
        delay = self.rate_limiter.when(item)
        LOGGER.debug("Requeueing %s in %.3fs", item, delay)
        self.add_after(item, delay)

    def num_requeues(self, item: Any) -> int:
        return self.rate_limiter.num_requeues(item)

    def forget(self, item: Any) -> None:
        self.rate_limiter.forget(item)
