from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.services.duplicates import DuplicateDetector, DuplicateStoreError, compute_fingerprint
from tests.fakes import FakeSupabase


class Clock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def test_fingerprint_ignores_formatting_and_variable_order():
    a = compute_fingerprint("tenant-1", "order_update", "+91 98765 43210", {"1": "Asha", "2": "#4512"})
    b = compute_fingerprint("tenant-1", "order_update", "919876543210", {"2": "#4512", "1": "Asha"})
    c = compute_fingerprint("tenant-1", "order_update", "919876543210", {"1": "Asha", "2": "#4513"})
    d = compute_fingerprint("tenant-2", "order_update", "919876543210", {"1": "Asha", "2": "#4512"})

    assert a == b
    assert len({a, c, d}) == 3


def test_repeat_within_window_is_flagged_and_expired_window_is_reclaimed():
    clock = Clock()
    detector = DuplicateDetector(FakeSupabase(), window_seconds=300, clock=clock)

    first = detector.check("tenant-1", "order_update", "919876543210", {"1": "Asha"})
    clock.now += timedelta(seconds=120)
    second = detector.check("tenant-1", "order_update", "919876543210", {"1": "Asha"})
    other_vars = detector.check("tenant-1", "order_update", "919876543210", {"1": "Ravi"})
    clock.now += timedelta(seconds=301)
    after_window = detector.check("tenant-1", "order_update", "919876543210", {"1": "Asha"})
    clock.now += timedelta(seconds=10)
    right_after = detector.check("tenant-1", "order_update", "919876543210", {"1": "Asha"})

    assert first.is_duplicate is False
    assert second.is_duplicate is True
    assert second.fingerprint == first.fingerprint
    assert other_vars.is_duplicate is False
    assert after_window.is_duplicate is False
    assert right_after.is_duplicate is True


def test_released_fingerprint_can_be_sent_again():
    db = FakeSupabase()
    detector = DuplicateDetector(db, clock=Clock())

    check = detector.check("tenant-1", "order_update", "919876543210")
    detector.release("tenant-1", check.fingerprint)

    assert db.rows("message_fingerprints") == []
    assert detector.check("tenant-1", "order_update", "919876543210").is_duplicate is False


def test_storage_failure_raises_duplicate_store_error():
    db = FakeSupabase()
    db.fail_next("message_fingerprints", "insert", Exception("connection refused"))
    detector = DuplicateDetector(db, clock=Clock())

    with pytest.raises(DuplicateStoreError):
        detector.check("tenant-1", "order_update", "919876543210")
