from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable

from controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class WorkQueue:
    """Deduplicating, rate-limited work queue for one resource kind.

    Keys are resource identities such as ``(namespace, name)``; workers always
    re-read the object, so only the key is queued.  Bookkeeping:

        ``_dirty``
            Keys that need processing.  Adding a key already dirty is a no-op,
            which coalesces bursts of events into one reconciliation.
        ``_processing``
            Keys handed to a worker and not yet marked :meth:`done`.  A key
            added while processing stays dirty but is not queued, so at most
            one worker handles a key at a time; :meth:`done` queues it again.
        ``_waiting``
            Heap of ``(ready_at, seq, key)`` for delayed adds.
        ``_failures``
            Per-key failure counters driving exponential backoff in
            :meth:`add_rate_limited`, cleared by :meth:`forget`.
    """

    def __init__(
        self,
        name: str,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._seq = itertools.count()
        self._failures: dict[Hashable, int] = {}
        self._shutting_down = False

    def add(self, key: Hashable) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        METRICS.queue_depth.labels(kind=self.name).set(len(self._queue))
        self._cond.notify()

    def add_after(self, key: Hashable, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay_seconds
            heapq.heappush(self._waiting, (ready_at, next(self._seq), key))
            self._cond.notify()

    def add_rate_limited(self, key: Hashable) -> float:
        """Re-add *key* after a per-key exponential backoff; return the delay used."""
        with self._cond:
            attempt = self._failures.get(key, 0) + 1
            self._failures[key] = attempt
        delay_seconds = min(
            self.max_delay_seconds, self.base_delay_seconds * float(2 ** (attempt - 1))
        )
        self.add_after(key, delay_seconds)
        return delay_seconds

    def forget(self, key: Hashable) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def _promote_ready_locked(self) -> float | None:
        """Move due delayed keys into the queue; return seconds until the next one."""
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, key = heapq.heappop(self._waiting)
            self._add_locked(key)
        if self._waiting:
            return self._waiting[0][0] - now
        return None

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block for the next key; returns None on timeout or once shut down and drained."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                next_delay = self._promote_ready_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    METRICS.queue_depth.labels(kind=self.name).set(len(self._queue))
                    return key
                if self._shutting_down:
                    return None

                wait_for = next_delay
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                METRICS.queue_depth.labels(kind=self.name).set(len(self._queue))
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._waiting.clear()
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


def run_worker(
    queue: WorkQueue,
    handler: Callable[[str, str], object],
    stop_event: threading.Event,
    logger: logging.Logger | None = None,
    poll_seconds: float = 1.0,
) -> None:
    """Process ``(namespace, name)`` keys from *queue* until stopped or shut down.

    A key whose handler raises is logged and re-added with backoff; a key
    whose handler succeeds has its failure counter cleared.
    """
    log = logger or LOGGER
    while not stop_event.is_set():
        key = queue.get(timeout=poll_seconds)
        if key is None:
            if queue.shutting_down:
                return
            continue

        namespace, name = key  # type: ignore[misc]
        started = time.monotonic()
        try:
            handler(namespace, name)
        except Exception:
            log.exception("Failed to reconcile %s %s/%s; requeueing", queue.name, namespace, name)
            METRICS.reconcile_total.labels(kind=queue.name, result="error").inc()
            METRICS.requeues_total.labels(kind=queue.name).inc()
            queue.add_rate_limited(key)
        else:
            METRICS.reconcile_total.labels(kind=queue.name, result="success").inc()
            queue.forget(key)
        finally:
            METRICS.reconcile_duration_seconds.labels(kind=queue.name).observe(
                time.monotonic() - started
            )
            queue.done(key)
