from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Generic, Hashable, List, Optional, Set, Tuple, TypeVar

T = TypeVar("T", bound=Hashable)


class ExponentialBackoffRateLimiter(Generic[T]):
    """
    Per item exponential backoff: base_delay * 2 ** failures, capped at max_delay.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._failures: Dict[T, int] = {}
        self._lock = threading.Lock()

    def when(self, item: T) -> float:
        with self._lock:
            exp = self._failures.get(item, 0)
            self._failures[item] = exp + 1
        return min(self._base_delay * (2**exp), self._max_delay)

    def num_requeues(self, item: T) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: T) -> None:
        with self._lock:
            self._failures.pop(item, None)


class RateLimitingQueue(Generic[T]):
    """
    A work queue with delayed and rate limited re-adds.

    Items are deduplicated: an item added while it is queued is dropped, and
    an item added while it is being processed is queued again only once
    ``done`` is called for it. Any number of threads may add; ``get`` is
    meant for a single consumer.
    """

    def __init__(
        self,
        rate_limiter: Optional[ExponentialBackoffRateLimiter[T]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._rate_limiter = rate_limiter or ExponentialBackoffRateLimiter()
        self._clock = clock
        self._queue: Deque[T] = deque()
        self._dirty: Set[T] = set()
        self._processing: Set[T] = set()
        self._cond = threading.Condition()
        self._shutting_down = False

        self._waiting: List[Tuple[float, int, T]] = []
        self._sequence = itertools.count()
        self._delay_cond = threading.Condition()
        self._delay_thread = threading.Thread(
            target=self._delay_loop, name="workqueue-delay", daemon=True
        )
        self._delay_thread.start()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def add(self, item: T) -> None:
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Tuple[Optional[T], bool]:
        """
        Block until an item is available.

        Returns:
            Tuple[Optional[T], bool]: The item and whether the queue is shutting
            down. On shutdown, or when the timeout expires, the item is None.
        """
        with self._cond:
            deadline = None if timeout is None else self._clock() + timeout
            while not self._queue and not self._shutting_down:
                remaining = None if deadline is None else deadline - self._clock()
                if remaining is not None and remaining <= 0:
                    return None, False
                self._cond.wait(remaining)
            if not self._queue:
                return None, True

            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: T) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def add_after(self, item: T, delay: float) -> None:
        if self.shutting_down():
            return
        if delay <= 0:
            self.add(item)
            return
        with self._delay_cond:
            heapq.heappush(
                self._waiting, (self._clock() + delay, next(self._sequence), item)
            )
            self._delay_cond.notify()

    def add_rate_limited(self, item: T) -> None:
        self.add_after(item, self._rate_limiter.when(item))

    def forget(self, item: T) -> None:
        self._rate_limiter.forget(item)

    def num_requeues(self, item: T) -> int:
        return self._rate_limiter.num_requeues(item)

    def waiting(self) -> int:
        """The number of items scheduled with a delay that are not yet queued."""
        with self._delay_cond:
            return len(self._waiting)

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        with self._delay_cond:
            self._waiting.clear()
            self._delay_cond.notify_all()

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _delay_loop(self) -> None:
        while True:
            with self._delay_cond:
                if self.shutting_down():
                    return
                ready: List[T] = []
                now = self._clock()
                while self._waiting and self._waiting[0][0] <= now:
                    ready.append(heapq.heappop(self._waiting)[2])

                if not ready:
                    timeout = self._waiting[0][0] - now if self._waiting else None
                    self._delay_cond.wait(timeout)
                    continue

            for item in ready:
                self.add(item)
