from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from src.models.campaign_logs import SendMeta
from src.models.webhooks import CanonicalStatusEvent
from src.services.campaign_logs import (
    CampaignLogStorageError,
    CampaignLogStore,
    CampaignLogValidationError,
)
from tests.fakes import FakeSupabase


T0 = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def _meta(**overrides) -> SendMeta:
    values = {
        "campaign_name": "october_updates",
        "template_name": "order_update",
        "language_code": "en_US",
        "provider": "meta",
        "provider_channel_ref": "pni-1",
        "metadata": {"recipient_index": 0},
    }
    values.update(overrides)
    return SendMeta(**values)


def _event(message_id: str, status: str, *, at: datetime = T0, recipient: str | None = "919876543210", error=None):
    return CanonicalStatusEvent(
        provider="meta",
        provider_message_id=message_id,
        status=status,
        timestamp=at,
        recipient=recipient,
        error_detail=error,
        channel_ref="pni-1",
    )


def test_upsert_on_send_creates_one_sent_row():
    db = FakeSupabase()
    store = CampaignLogStore(db)

    entry = store.upsert_on_send("tenant-1", "wamid.1", "+91 98765 43210", _meta())

    assert entry.status == "sent"
    assert entry.recipient_number == "919876543210"
    assert entry.sent_at is not None
    assert entry.version == 1
    rows = db.rows("campaign_logs")
    assert len(rows) == 1
    assert rows[0]["campaign_name"] == "october_updates"
    assert rows[0]["metadata"] == {"recipient_index": 0}


def test_upsert_on_send_is_idempotent_for_the_same_message():
    db = FakeSupabase()
    store = CampaignLogStore(db)

    store.upsert_on_send("tenant-1", "wamid.1", "919876543210", _meta())
    second = store.upsert_on_send("tenant-1", "wamid.1", "919876543210", _meta(metadata={"job_id": "job-1"}))

    assert len(db.rows("campaign_logs")) == 1
    assert second.version == 2
    assert second.metadata == {"recipient_index": 0, "job_id": "job-1"}


def test_upsert_rejects_blank_recipient_and_missing_message_id():
    store = CampaignLogStore(FakeSupabase())

    with pytest.raises(CampaignLogValidationError):
        store.upsert_on_send("tenant-1", "wamid.1", "  ", _meta())
    with pytest.raises(CampaignLogValidationError):
        store.upsert_on_send("tenant-1", "", "919876543210", _meta())


def test_same_message_id_is_scoped_per_tenant():
    db = FakeSupabase()
    store = CampaignLogStore(db)

    store.upsert_on_send("tenant-1", "wamid.1", "919876543210", _meta())
    store.upsert_on_send("tenant-2", "wamid.1", "919876543211", _meta())

    assert len(db.rows("campaign_logs")) == 2
    assert store.get_by_message_id("tenant-2", "wamid.1").recipient_number == "919876543211"
    assert store.find_tenant_for_message("wamid.1") is None


def test_record_dispatch_failure_writes_failed_row_without_message_id():
    db = FakeSupabase()
    store = CampaignLogStore(db)

    entry = store.record_dispatch_failure("tenant-1", "919876543210", _meta(), "BAD_REQUEST: invalid parameter")
    store.record_dispatch_failure("tenant-1", "919876543211", _meta(), None)

    assert entry.status == "failed"
    assert entry.message_id is None
    assert entry.error_message == "BAD_REQUEST: invalid parameter"
    assert db.rows("campaign_logs")[1]["error_message"] == "Delivery failed"


def test_status_updates_only_move_forward_and_keep_first_timestamps():
    db = FakeSupabase()
    store = CampaignLogStore(db)
    store.upsert_on_send("tenant-1", "wamid.1", "919876543210", _meta())

    assert store.update_by_message_id("tenant-1", "wamid.1", "delivered", T0)
    assert store.update_by_message_id("tenant-1", "wamid.1", "read", T0 + timedelta(minutes=1))
    assert not store.update_by_message_id("tenant-1", "wamid.1", "delivered", T0 + timedelta(minutes=2))
    assert not store.update_by_message_id("tenant-1", "wamid.1", "read", T0 + timedelta(minutes=3))

    entry = store.get_by_message_id("tenant-1", "wamid.1")
    assert entry.status == "read"
    assert entry.delivered_at == T0
    assert entry.read_at == T0 + timedelta(minutes=1)


def test_update_for_unknown_message_is_a_noop():
    store = CampaignLogStore(FakeSupabase())

    assert store.update_by_message_id("tenant-1", "wamid.missing", "delivered", T0) is False


def test_failure_is_terminal_but_accepts_a_more_specific_error():
    db = FakeSupabase()
    store = CampaignLogStore(db)
    store.upsert_on_send("tenant-1", "wamid.1", "919876543210", _meta())

    assert store.update_by_message_id("tenant-1", "wamid.1", "failed", T0)
    assert not store.update_by_message_id("tenant-1", "wamid.1", "delivered", T0)
    assert store.update_by_message_id("tenant-1", "wamid.1", "failed", T0, "131026: Message undeliverable")
    assert not store.update_by_message_id("tenant-1", "wamid.1", "failed", T0, "Delivery failed")

    entry = store.get_by_message_id("tenant-1", "wamid.1")
    assert entry.status == "failed"
    assert entry.error_message == "131026: Message undeliverable"
    assert entry.delivered_at is None


def test_webhook_before_send_creates_placeholder_that_send_adopts():
    db = FakeSupabase()
    store = CampaignLogStore(db)

    assert store.create_or_update_from_webhook("tenant-1", _event("wamid.1", "delivered"))
    placeholder = store.get_by_message_id("tenant-1", "wamid.1")
    assert placeholder.campaign_name == "webhook_only"
    assert placeholder.template_name == "unknown"
    assert placeholder.status == "delivered"

    adopted = store.upsert_on_send("tenant-1", "wamid.1", "919876543210", _meta())

    assert len(db.rows("campaign_logs")) == 1
    assert adopted.campaign_name == "october_updates"
    assert adopted.template_name == "order_update"
    assert adopted.status == "delivered"
    assert adopted.delivered_at == T0
    assert adopted.sent_at is not None
    assert adopted.metadata == {"source": "webhook", "recipient_index": 0}


def test_webhook_without_recipient_cannot_create_a_row():
    store = CampaignLogStore(FakeSupabase())

    with pytest.raises(CampaignLogValidationError):
        store.create_or_update_from_webhook("tenant-1", _event("wamid.1", "delivered", recipient=None))


def test_storage_errors_are_wrapped_as_retryable():
    db = FakeSupabase()
    store = CampaignLogStore(db)
    db.fail_next("campaign_logs", "select")

    with pytest.raises(CampaignLogStorageError) as exc_info:
        store.update_by_message_id("tenant-1", "wamid.1", "delivered", T0)

    assert exc_info.value.retryable is True


def test_losing_every_compare_and_set_raises_after_the_attempt_budget():
    db = FakeSupabase()
    store = CampaignLogStore(db, cas_attempts=3)
    store.upsert_on_send("tenant-1", "wamid.1", "919876543210", _meta())

    original_table = db.table

    class _BumpingQuery:
        def __init__(self, query):
            self._query = query

        def __getattr__(self, name):
            return getattr(self._query, name)

        def update(self, payload):
            # Another writer bumps the version between our read and our write.
            for row in db.tables["campaign_logs"]:
                row["version"] = row.get("version", 1) + 1
            self._query.update(payload)
            return self._query

    db.table = lambda name: _BumpingQuery(original_table(name))

    with pytest.raises(CampaignLogStorageError):
        store.update_by_message_id("tenant-1", "wamid.1", "delivered", T0)


def test_concurrent_send_and_webhook_writers_converge_on_one_row():
    for _ in range(20):
        db = FakeSupabase()
        store = CampaignLogStore(db, cas_attempts=20)
        events = [
            _event("wamid.1", "delivered", at=T0),
            _event("wamid.1", "read", at=T0 + timedelta(seconds=5)),
            _event("wamid.1", "sent", at=T0 - timedelta(seconds=5)),
        ]

        with ThreadPoolExecutor(max_workers=4) as pool:
            futures = [pool.submit(store.create_or_update_from_webhook, "tenant-1", e) for e in events]
            futures.append(pool.submit(store.upsert_on_send, "tenant-1", "wamid.1", "919876543210", _meta()))
            for future in futures:
                future.result()

        rows = db.rows("campaign_logs")
        assert len(rows) == 1
        assert rows[0]["status"] == "read"
        assert rows[0]["campaign_name"] == "october_updates"
