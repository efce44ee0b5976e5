from __future__ import annotations

import queue
from threading import Lock
from typing import Any

from src.observability import incr_metric


class Subscription:
    """Bounded per-subscriber event queue; the oldest event is dropped on overflow."""

    def __init__(self, tenant_id: str, max_queue: int) -> None:
        self.tenant_id = tenant_id
        self._queue: queue.Queue[dict[str, Any]] = queue.Queue(maxsize=max(1, max_queue))
        self.dropped = 0

    def put(self, event: dict[str, Any]) -> None:
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def get(self, timeout: float | None = None) -> dict[str, Any] | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events


class NotificationHub:
    """Per-tenant fan-out of status and job events to live subscribers."""

    def __init__(self, *, max_queue: int = 100) -> None:
        self.max_queue = max_queue
        self._lock = Lock()
        self._subscribers: dict[str, set[Subscription]] = {}

    def subscribe(self, tenant_id: str, max_queue: int | None = None) -> Subscription:
        subscription = Subscription(tenant_id, max_queue or self.max_queue)
        with self._lock:
            self._subscribers.setdefault(tenant_id, set()).add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.tenant_id)
            if not subscribers:
                return
            subscribers.discard(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.tenant_id, None)

    def subscriber_count(self, tenant_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(tenant_id, ()))

    def publish(self, tenant_id: str, event: dict[str, Any]) -> int:
        with self._lock:
            targets = list(self._subscribers.get(tenant_id, ()))
        for subscription in targets:
            subscription.put(event)
        incr_metric("notifications.published", event_type=event.get("type", "status"))
        return len(targets)
