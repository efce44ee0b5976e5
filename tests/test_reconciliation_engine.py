from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

from src.models.campaign_logs import SendMeta
from src.models.webhooks import CanonicalStatusEvent
from src.observability import metric_total, reset_metrics
from src.services.campaign_logs import CampaignLogStore
from src.services.notifications import NotificationHub
from src.services.reconciliation import StatusReconciliationEngine
from tests.fakes import FakeSupabase


T0 = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def _meta() -> SendMeta:
    return SendMeta(campaign_name="october_updates", template_name="order_update", provider="meta")


def _event(message_id: str, status: str, offset_seconds: int = 0, error: str | None = None) -> CanonicalStatusEvent:
    return CanonicalStatusEvent(
        provider="meta",
        provider_message_id=message_id,
        status=status,
        timestamp=T0 + timedelta(seconds=offset_seconds),
        recipient="919876543210",
        error_detail=error,
        channel_ref="pni-1",
    )


def _engine(db: FakeSupabase, hub: NotificationHub | None = None) -> tuple[StatusReconciliationEngine, CampaignLogStore]:
    store = CampaignLogStore(db)
    return StatusReconciliationEngine(store, hub), store


def _meta_payload(statuses: list[dict], phone_number_id: str = "pni-1") -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [{"changes": [{"value": {"metadata": {"phone_number_id": phone_number_id}, "statuses": statuses}}]}],
    }


def test_out_of_order_events_converge_to_the_highest_status():
    events = [
        _event("wamid.1", "sent", 0),
        _event("wamid.1", "delivered", 5),
        _event("wamid.1", "read", 9),
    ]
    for seed in range(10):
        shuffled = list(events)
        random.Random(seed).shuffle(shuffled)
        db = FakeSupabase()
        engine, store = _engine(db)
        store.upsert_on_send("tenant-1", "wamid.1", "919876543210", _meta())

        for event in shuffled:
            engine.apply_provider_event("tenant-1", event)

        entry = store.get_by_message_id("tenant-1", "wamid.1")
        assert entry.status == "read"
        assert entry.read_at == T0 + timedelta(seconds=9)
        # delivered_at is only written when the delivered event itself was applied.
        assert entry.delivered_at in (None, T0 + timedelta(seconds=5))


def test_replaying_an_event_does_not_apply_twice():
    db = FakeSupabase()
    engine, store = _engine(db)
    store.upsert_on_send("tenant-1", "wamid.1", "919876543210", _meta())

    assert engine.apply_provider_event("tenant-1", _event("wamid.1", "delivered", 5)) is True
    version_after_first = store.get_by_message_id("tenant-1", "wamid.1").version
    assert engine.apply_provider_event("tenant-1", _event("wamid.1", "delivered", 5)) is False

    entry = store.get_by_message_id("tenant-1", "wamid.1")
    assert entry.version == version_after_first
    assert entry.delivered_at == T0 + timedelta(seconds=5)


def test_failure_beats_late_success_events():
    db = FakeSupabase()
    engine, store = _engine(db)
    store.upsert_on_send("tenant-1", "wamid.1", "919876543210", _meta())

    assert engine.apply_provider_event("tenant-1", _event("wamid.1", "failed", 3, error="131026: Message undeliverable"))
    assert not engine.apply_provider_event("tenant-1", _event("wamid.1", "read", 9))

    entry = store.get_by_message_id("tenant-1", "wamid.1")
    assert entry.status == "failed"
    assert entry.error_message == "131026: Message undeliverable"


def test_applied_events_are_published_to_tenant_subscribers():
    db = FakeSupabase()
    hub = NotificationHub()
    engine, store = _engine(db, hub)
    store.upsert_on_send("tenant-1", "wamid.1", "919876543210", _meta())
    mine = hub.subscribe("tenant-1")
    other = hub.subscribe("tenant-2")

    engine.apply_provider_event("tenant-1", _event("wamid.1", "delivered", 5))
    engine.apply_provider_event("tenant-1", _event("wamid.1", "sent", 1))

    published = mine.drain()
    assert published == [
        {
            "type": "status",
            "message_id": "wamid.1",
            "status": "delivered",
            "recipient": "919876543210",
            "timestamp": (T0 + timedelta(seconds=5)).isoformat(),
        }
    ]
    assert other.drain() == []


def test_storage_failure_drops_the_event_without_raising():
    reset_metrics()
    db = FakeSupabase()
    engine, store = _engine(db)
    store.upsert_on_send("tenant-1", "wamid.1", "919876543210", _meta())
    db.fail_next("campaign_logs", "select")

    assert engine.apply_provider_event("tenant-1", _event("wamid.1", "delivered")) is False
    assert metric_total("reconciliation.events.dropped") == 1
    assert store.get_by_message_id("tenant-1", "wamid.1").status == "sent"


def test_webhook_payload_summary_counts_each_outcome():
    reset_metrics()
    db = FakeSupabase()
    engine, store = _engine(db)
    store.upsert_on_send("tenant-1", "wamid.1", "919876543210", _meta())
    store.upsert_on_send("tenant-1", "wamid.2", "919876543211", _meta())
    store.update_by_message_id("tenant-1", "wamid.2", "read", T0)

    payload = _meta_payload(
        [
            {"id": "wamid.1", "status": "delivered", "timestamp": "1714557600", "recipient_id": "919876543210"},
            {"id": "wamid.2", "status": "delivered", "timestamp": "1714557600", "recipient_id": "919876543211"},
            {"id": "wamid.3", "status": "sent", "timestamp": "1714557600", "recipient_id": "919876543212"},
            {"id": "wamid.4", "status": "mystery", "timestamp": "1714557600"},
        ]
    )
    resolved = {"wamid.1": "tenant-1", "wamid.2": "tenant-1", "wamid.3": None}

    summary = engine.apply_webhook_payload("meta", payload, lambda event: resolved.get(event.provider_message_id))

    assert summary.received == 3
    assert summary.applied == 1
    assert summary.ignored == 1
    assert summary.skipped == 1
    assert summary.unresolved_tenant == 1
    assert summary.failed == 0
    assert metric_total("reconciliation.events.unresolved_tenant") == 1


def test_webhook_first_event_creates_a_placeholder_row():
    db = FakeSupabase()
    engine, store = _engine(db)

    summary = engine.apply_webhook_payload(
        "meta",
        _meta_payload([{"id": "wamid.7", "status": "delivered", "timestamp": "1714557600", "recipient_id": "14155550100"}]),
        lambda _event: "tenant-1",
    )

    assert summary.applied == 1
    entry = store.get_by_message_id("tenant-1", "wamid.7")
    assert entry.campaign_name == "webhook_only"
    assert entry.recipient_number == "14155550100"
    assert entry.provider_channel_ref == "pni-1"


def test_unexpected_errors_are_counted_and_processing_continues():
    db = FakeSupabase()
    engine, store = _engine(db)
    store.upsert_on_send("tenant-1", "wamid.2", "919876543211", _meta())

    def _resolver(event):
        if event.provider_message_id == "wamid.1":
            raise RuntimeError("directory unavailable")
        return "tenant-1"

    payload = _meta_payload(
        [
            {"id": "wamid.1", "status": "delivered", "timestamp": "1714557600", "recipient_id": "919876543210"},
            {"id": "wamid.2", "status": "delivered", "timestamp": "1714557600", "recipient_id": "919876543211"},
        ]
    )

    summary = engine.apply_webhook_payload("meta", payload, _resolver)

    assert summary.failed == 1
    assert summary.applied == 1
    assert store.get_by_message_id("tenant-1", "wamid.2").status == "delivered"


def test_late_arriving_earlier_sent_event_keeps_delivered_and_sent_at():
    db = FakeSupabase()
    engine, store = _engine(db)
    store.upsert_on_send("tenant-1", "wamid.1", "919876543210", _meta())
    sent_at = store.get_by_message_id("tenant-1", "wamid.1").sent_at

    assert engine.apply_provider_event("tenant-1", _event("wamid.1", "delivered", 10))
    assert not engine.apply_provider_event("tenant-1", _event("wamid.1", "sent", 8))

    entry = store.get_by_message_id("tenant-1", "wamid.1")
    assert entry.status == "delivered"
    assert entry.sent_at == sent_at
