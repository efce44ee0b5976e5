from __future__ import annotations

import logging
import time
from collections import OrderedDict, deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from threading import BoundedSemaphore, Lock
from typing import Any, Callable, Generic, TypeVar

from src.observability import incr_metric, log_event


T = TypeVar("T")


class QueueFullError(Exception):
    """The background queue is at capacity."""


class BackgroundTaskQueue:
    """Bounded thread-pool queue with explicit submit / wait-for-idle.

    At most `capacity` tasks may be queued or running; `submit` raises
    QueueFullError instead of blocking the caller.
    """

    def __init__(self, name: str, *, workers: int = 4, capacity: int = 100) -> None:
        self.name = name
        self.capacity = capacity
        self._executor = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix=name)
        self._slots = BoundedSemaphore(max(1, capacity))
        self._lock = Lock()
        self._pending: set[Future[Any]] = set()

    def submit(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> Future[T]:
        if not self._slots.acquire(blocking=False):
            incr_metric("background.tasks.rejected", queue=self.name)
            raise QueueFullError(f"{self.name} queue is full ({self.capacity} tasks)")
        try:
            future = self._executor.submit(self._run, fn, *args, **kwargs)
        except RuntimeError:
            self._slots.release()
            raise
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._finished)
        incr_metric("background.tasks.submitted", queue=self.name)
        return future

    def _run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return fn(*args, **kwargs)
        except Exception as exc:
            incr_metric("background.tasks.failed", queue=self.name)
            log_event(
                "background_task_failed",
                level=logging.ERROR,
                queue=self.name,
                task=getattr(fn, "__name__", repr(fn)),
                error_type=exc.__class__.__name__,
                error=str(exc),
            )
            raise

    def _finished(self, future: Future[Any]) -> None:
        # Free the slot before the future leaves `_pending` so wait_idle implies capacity.
        self._slots.release()
        with self._lock:
            self._pending.discard(future)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every submitted task has finished; False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = list(self._pending)
            if not pending:
                return True
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            _done, not_done = wait(pending, timeout=remaining)
            if not_done and deadline is not None and time.monotonic() >= deadline:
                return False

    def shutdown(self, wait_for_tasks: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_tasks)


class RingBuffer(Generic[T]):
    """Fixed-capacity buffer keeping the newest items."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._items: deque[T] = deque(maxlen=capacity)
        self._lock = Lock()
        self.evicted = 0

    def push(self, item: T) -> None:
        with self._lock:
            if len(self._items) == self.capacity:
                self.evicted += 1
            self._items.append(item)

    def recent(self, limit: int | None = None) -> list[T]:
        """Newest first."""
        with self._lock:
            items = list(self._items)
        items.reverse()
        return items if limit is None else items[:limit]

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class FixedWindowRateLimiter:
    """Per-key request counter over fixed windows, tracking at most `max_keys` keys."""

    def __init__(
        self,
        *,
        max_per_window: int,
        window_seconds: float = 60.0,
        max_keys: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_per_window = max_per_window
        self.window_seconds = window_seconds
        self.max_keys = max_keys
        self.clock = clock
        self._lock = Lock()
        self._windows: OrderedDict[str, tuple[float, int]] = OrderedDict()

    def allow(self, key: str) -> bool:
        now = self.clock()
        with self._lock:
            started, count = self._windows.pop(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            count += 1
            self._windows[key] = (started, count)
            while len(self._windows) > self.max_keys:
                self._windows.popitem(last=False)
            return count <= self.max_per_window
