from __future__ import annotations

from threading import Event

import pytest

from src.services.background import BackgroundTaskQueue, FixedWindowRateLimiter, QueueFullError, RingBuffer
from src.services.jobs import BulkJobRegistry
from src.services.notifications import NotificationHub


def test_queue_rejects_work_beyond_capacity_and_drains():
    gate = Event()
    queue = BackgroundTaskQueue("test", workers=1, capacity=2)
    try:
        first = queue.submit(gate.wait, 5)
        queue.submit(gate.wait, 5)
        with pytest.raises(QueueFullError):
            queue.submit(gate.wait, 5)
        assert queue.pending_count() == 2
        assert queue.wait_idle(timeout=0.05) is False

        gate.set()
        assert queue.wait_idle(timeout=5) is True
        assert first.result() is True
        assert queue.pending_count() == 0
        queue.submit(lambda: None).result(timeout=5)
    finally:
        gate.set()
        queue.shutdown()


def test_failed_tasks_free_their_slot():
    queue = BackgroundTaskQueue("test", workers=1, capacity=1)
    try:
        def _boom():
            raise RuntimeError("boom")

        future = queue.submit(_boom)
        assert queue.wait_idle(timeout=5)
        assert isinstance(future.exception(), RuntimeError)
        assert queue.submit(lambda: "ok").result(timeout=5) == "ok"
    finally:
        queue.shutdown()


def test_ring_buffer_keeps_newest_items():
    ring = RingBuffer[int](3)
    for value in range(5):
        ring.push(value)

    assert ring.recent() == [4, 3, 2]
    assert ring.recent(2) == [4, 3]
    assert len(ring) == 3
    assert ring.evicted == 2
    with pytest.raises(ValueError):
        RingBuffer[int](0)


def test_fixed_window_rate_limiter():
    now = {"t": 0.0}
    limiter = FixedWindowRateLimiter(max_per_window=2, window_seconds=60, max_keys=2, clock=lambda: now["t"])

    assert limiter.allow("a")
    assert limiter.allow("a")
    assert not limiter.allow("a")
    assert limiter.allow("b")
    now["t"] = 61.0
    assert limiter.allow("a")


def test_notification_subscriber_queue_drops_oldest():
    hub = NotificationHub(max_queue=2)
    subscription = hub.subscribe("tenant-1")

    for index in range(3):
        assert hub.publish("tenant-1", {"type": "status", "n": index}) == 1

    assert [event["n"] for event in subscription.drain()] == [1, 2]
    assert subscription.dropped == 1
    hub.unsubscribe(subscription)
    assert hub.subscriber_count("tenant-1") == 0
    assert hub.publish("tenant-1", {"type": "status"}) == 0


def test_job_registry_is_tenant_scoped_and_tracks_outcome():
    registry = BulkJobRegistry()
    job = registry.create("tenant-1", "october_updates", 4)

    registry.mark_running(job.job_id)
    registry.record_batch(job.job_id, succeeded=0, failed=2, duplicates=0, credits_deducted=0.0, results=["a", "b"])
    registry.record_batch(job.job_id, succeeded=1, failed=0, duplicates=1, credits_deducted=1.6, results=["c", "d"])
    finished = registry.finish(job.job_id)

    assert registry.get("tenant-2", job.job_id) is None
    stored = registry.get("tenant-1", job.job_id)
    assert finished.status == "completed"
    assert stored.processed == 4
    assert stored.credits_deducted == 1.6
    assert stored.results == ["a", "b", "c", "d"]

    all_failed = registry.create("tenant-1", "retry", 1)
    registry.record_batch(all_failed.job_id, succeeded=0, failed=1, duplicates=0, credits_deducted=0.0, results=[])
    assert registry.finish(all_failed.job_id).status == "failed"


def test_job_registry_evicts_oldest_finished_jobs():
    registry = BulkJobRegistry(max_jobs=2)
    first = registry.create("tenant-1", "a", 1)
    registry.finish(first.job_id)
    registry.create("tenant-1", "b", 1)
    registry.create("tenant-1", "c", 1)

    assert registry.get("tenant-1", first.job_id) is None


def test_job_registry_keeps_billing_errors_across_batches():
    registry = BulkJobRegistry()
    job = registry.create("tenant-1", "october_updates", 2)

    registry.record_batch(job.job_id, succeeded=1, failed=0, duplicates=0, credits_deducted=0.0, results=[], billing_error="batch one")
    registry.record_batch(job.job_id, succeeded=1, failed=0, duplicates=0, credits_deducted=0.8, results=[])
    registry.record_batch(job.job_id, succeeded=0, failed=0, duplicates=0, credits_deducted=0.0, results=[], billing_error="batch three")

    assert registry.get("tenant-1", job.job_id).billing_error == "batch one; batch three"
