from datetime import datetime, timezone

from src.domain.webhook_payloads import (
    build_error_message,
    extract_channel_ref,
    extract_status_events,
    summarize_payload,
)


def _meta_payload(statuses: list[dict], phone_number_id: str = "pni-1") -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "waba-1",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"phone_number_id": phone_number_id},
                            "statuses": statuses,
                        },
                    }
                ],
            }
        ],
    }


def test_meta_envelope_is_translated_to_canonical_events():
    payload = _meta_payload(
        [
            {"id": "wamid.1", "status": "delivered", "timestamp": "1700000000", "recipient_id": "919876543210"},
            {"id": "wamid.2", "status": "played", "timestamp": 1700000100},
            {"id": "wamid.3", "status": "deleted", "timestamp": "1700000200"},
            {"status": "sent"},
        ]
    )

    events, skipped = extract_status_events("meta", payload)

    assert skipped == 2
    assert [e.provider_message_id for e in events] == ["wamid.1", "wamid.2"]
    assert events[0].status == "delivered"
    assert events[0].timestamp == datetime.fromtimestamp(1700000000, tz=timezone.utc)
    assert events[0].recipient == "919876543210"
    assert events[0].channel_ref == "pni-1"
    assert events[1].status == "read"
    assert events[1].recipient is None
    assert extract_channel_ref(payload) == "pni-1"


def test_failed_status_carries_the_provider_error_detail():
    payload = _meta_payload(
        [
            {
                "id": "wamid.9",
                "status": "failed",
                "timestamp": "1700000000",
                "recipient_id": "919876543210",
                "errors": [
                    {
                        "code": 131026,
                        "title": "Message undeliverable",
                        "error_data": {"details": "Recipient is not on WhatsApp"},
                    }
                ],
            }
        ]
    )

    events, _ = extract_status_events("meta", payload)

    assert events[0].status == "failed"
    assert events[0].error_detail == "131026: Message undeliverable - Recipient is not on WhatsApp"


def test_error_message_fallbacks():
    assert build_error_message({"errors": [{"code": 470, "title": "Re-engagement message"}]}) == (
        "470: Re-engagement message"
    )
    assert build_error_message({"error": {"code": 1013, "message": "User is not valid"}}) == "1013: User is not valid"
    assert build_error_message({}) == "Delivery failed"


def test_flat_360dialog_statuses_and_iso_timestamps():
    payload = {
        "statuses": [
            {"id": "gw-1", "status": "queued", "timestamp": "2024-05-01T10:00:00Z", "recipient_id": "14155550100"},
            {"id": "gw-2", "status": "sent", "timestamp": "2024-05-01T10:00:05+00:00"},
        ]
    }

    events, skipped = extract_status_events("360dialog", payload)

    assert skipped == 0
    assert [e.status for e in events] == ["processing", "sent"]
    assert events[0].timestamp == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert events[0].channel_ref is None
    assert extract_channel_ref(payload) is None


def test_payload_without_statuses_yields_nothing():
    inbound = _meta_payload([])
    inbound["entry"][0]["changes"][0]["value"]["messages"] = [{"from": "919876543210", "type": "text"}]

    events, skipped = extract_status_events("meta", inbound)

    assert events == []
    assert skipped == 0
    assert extract_status_events("meta", {"object": "page"}) == ([], 0)


def test_summaries_for_debug_ring():
    summary = summarize_payload(_meta_payload([{"id": "wamid.1", "status": "sent", "timestamp": "1"}]))
    assert summary.startswith("pni=pni-1 statuses=1")
    assert "first id=wamid.1" in summary
    assert summarize_payload(None) == "unparsed"
    assert summarize_payload({"object": "page"}) == "object=page (unparsed)"
