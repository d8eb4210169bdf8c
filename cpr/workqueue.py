from __future__ import annotations

import heapq
import itertools
import time
from collections import deque
from threading import Condition, Lock, Thread
from typing import Hashable

from .settings import settings


class ItemExponentialBackoff:
    """Per-item delay of base * 2**failures, capped at max_delay_s."""

    def __init__(self, base_delay_s: float | None = None, max_delay_s: float | None = None) -> None:
        self.base_delay_s = settings.backoff_base_s if base_delay_s is None else base_delay_s
        self.max_delay_s = settings.backoff_max_s if max_delay_s is None else max_delay_s
        self._lock = Lock()
        self._failures: dict[Hashable, int] = {}

    def when(self, item: Hashable) -> float:
        with self._lock:
            exp = self._failures.get(item, 0)
            self._failures[item] = exp + 1
        if exp > 62:
            return self.max_delay_s
        return min(self.base_delay_s * (2**exp), self.max_delay_s)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)


class WorkQueue:
    """Deduplicating work queue keyed by item identity.

    - An item added while already queued is dropped.
    - An item added while being processed is marked dirty and re-queued once
      when ``done`` is called, so one item is never handed to two workers.
    - ``maxsize`` bounds the number of ready items; ``add`` blocks when full.
    - Delayed items wait in a heap served by a background thread.
    """

    def __init__(self, maxsize: int | None = None, rate_limiter: ItemExponentialBackoff | None = None) -> None:
        self.maxsize = settings.queue_size if maxsize is None else max(0, int(maxsize))
        self.rate_limiter = rate_limiter or ItemExponentialBackoff()
        self._cond = Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._ready_at: dict[Hashable, float] = {}
        self._seq = itertools.count()
        self._shutting_down = False
        self._delay_thr: Thread | None = None

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    @property
    def processing_count(self) -> int:
        with self._cond:
            return len(self._processing)

    @property
    def delayed_count(self) -> int:
        with self._cond:
            return len(self._ready_at)

    def add(self, item: Hashable) -> None:
        with self._cond:
            while True:
                if self._shutting_down or item in self._dirty:
                    return
                if item in self._processing:
                    self._dirty.add(item)
                    return
                if not self.maxsize or len(self._queue) < self.maxsize:
                    break
                self._cond.wait()
            self._dirty.add(item)
            self._queue.append(item)
            self._cond.notify_all()

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Next item to process, or None on timeout or once shut down."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._queue and not self._shutting_down:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._cond.wait(remaining)
            # Queued items are abandoned once shut down; only in-flight ones finish.
            if self._shutting_down:
                return None
            item = self._queue.popleft()
            self._dirty.discard(item)
            self._processing.add(item)
            self._cond.notify_all()
            return item

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty and not self._shutting_down:
                self._queue.append(item)
            self._cond.notify_all()

    def add_after(self, item: Hashable, delay_s: float) -> None:
        if delay_s <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = time.monotonic() + delay_s
            # Keep only the earliest pending wake-up per item.
            if item in self._ready_at and self._ready_at[item] <= ready_at:
                return
            self._ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._seq), item))
            if self._delay_thr is None:
                self._delay_thr = Thread(target=self._delay_loop, name="workqueue-delay", daemon=True)
                self._delay_thr.start()
            self._cond.notify_all()

    def add_rate_limited(self, item: Hashable) -> None:
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    def _delay_loop(self) -> None:
        while True:
            ready: list[Hashable] = []
            with self._cond:
                if self._shutting_down:
                    return
                now = time.monotonic()
                while self._waiting and self._waiting[0][0] <= now:
                    ready_at, _, item = heapq.heappop(self._waiting)
                    # Skip entries superseded by an earlier add_after.
                    if self._ready_at.get(item) == ready_at:
                        del self._ready_at[item]
                        ready.append(item)
                if not ready:
                    timeout = self._waiting[0][0] - now if self._waiting else None
                    self._cond.wait(timeout)
                    continue
            for item in ready:
                self.add(item)

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        """Block until nothing is queued or being processed. Delayed items don't count."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._processing or (self._queue and not self._shutting_down):
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
