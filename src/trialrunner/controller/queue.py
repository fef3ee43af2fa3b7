# src/trialrunner/controller/queue.py
from __future__ import annotations

import heapq
import itertools
import threading
from time import monotonic
from typing import Callable, Dict, Generic, Hashable, List, Optional, Set, Tuple, TypeVar

K = TypeVar("K", bound=Hashable)


class WorkQueue(Generic[K]):
    """
    Rate-free work queue keyed by object identity.

    - A key is queued at most once (`dirty`).
    - A key handed out by `get()` is `processing` until `done()`; adding it
      again meanwhile only marks it dirty, and it is re-queued on `done()`.
      This guarantees at most one in-flight reconcile per key.
    - `add_after()` keeps delayed keys in a heap; the earliest deadline for a
      key wins.
    """

    def __init__(self, clock: Callable[[], float] = monotonic) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: List[K] = []
        self._dirty: Set[K] = set()
        self._processing: Set[K] = set()
        self._delayed: List[Tuple[float, int, K]] = []
        self._deadlines: Dict[K, float] = {}
        self._seq = itertools.count()
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutdown

    def add(self, key: K) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: K) -> None:
        if self._shutdown or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add_after(self, key: K, delay_s: float) -> None:
        if delay_s <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutdown:
                return
            deadline = self._clock() + delay_s
            current = self._deadlines.get(key)
            if current is not None and current <= deadline:
                return
            self._deadlines[key] = deadline
            heapq.heappush(self._delayed, (deadline, next(self._seq), key))
            self._cond.notify()

    def _promote_due_locked(self) -> Optional[float]:
        """Move due delayed keys to the queue; returns seconds until the next deadline."""
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            deadline, _, key = heapq.heappop(self._delayed)
            if self._deadlines.get(key) != deadline:
                # Superseded by an earlier deadline for the same key.
                continue
            del self._deadlines[key]
            self._add_locked(key)
        if self._delayed:
            return self._delayed[0][0] - now
        return None

    def get(self, timeout: Optional[float] = None) -> Optional[K]:
        """
        Next key to process, or None on timeout or shutdown.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.pop(0)
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key
                if self._shutdown:
                    return None

                wait: Optional[float] = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: K) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()


class ExponentialBackoff(Generic[K]):
    """
    Per-key failure backoff: base, 2*base, 4*base, ... capped at `max_s`.
    `forget()` resets a key after a successful pass.
    """

    def __init__(self, base_s: float, max_s: float) -> None:
        self._base_s = base_s
        self._max_s = max_s
        self._failures: Dict[K, int] = {}
        self._lock = threading.Lock()

    def when(self, key: K) -> float:
        with self._lock:
            n = self._failures.get(key, 0)
            self._failures[key] = n + 1
        # Cap the exponent so huge failure counts cannot overflow.
        return min(self._base_s * (2 ** min(n, 62)), self._max_s)

    def forget(self, key: K) -> None:
        with self._lock:
            self._failures.pop(key, None)

    def failures(self, key: K) -> int:
        with self._lock:
            return self._failures.get(key, 0)
