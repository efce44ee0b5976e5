from __future__ import annotations

import httpx
import pytest

from src.providers.meta import client as meta_client


def _capture(monkeypatch, response: httpx.Response | Exception) -> list[dict]:
    calls: list[dict] = []

    def _fake_post_json(**kwargs):
        calls.append(kwargs)
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(meta_client, "_post_json", _fake_post_json)
    return calls


def _send(**overrides):
    values = {
        "recipient": "919876543210",
        "template_name": "order_update",
        "language_code": "en_US",
        "components": [{"type": "body", "parameters": [{"type": "text", "text": "Asha"}]}],
        "base_url": "https://graph.example",
        "api_version": "v22.0",
    }
    values.update(overrides)
    return meta_client.send_template_message("token-1", "pni-1", **values)


def test_send_template_posts_cloud_api_payload(monkeypatch):
    calls = _capture(
        monkeypatch,
        httpx.Response(200, json={"messaging_product": "whatsapp", "messages": [{"id": "wamid.HBgM"}]}),
    )

    result = _send()

    assert result["message_id"] == "wamid.HBgM"
    call = calls[0]
    assert call["url"] == "https://graph.example/v22.0/pni-1/messages"
    assert call["headers"]["Authorization"] == "Bearer token-1"
    assert call["payload"] == {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": "919876543210",
        "type": "template",
        "template": {
            "name": "order_update",
            "language": {"code": "en_US"},
            "components": [{"type": "body", "parameters": [{"type": "text", "text": "Asha"}]}],
        },
    }


@pytest.mark.parametrize(
    ("response", "code", "retryable"),
    [
        (httpx.Response(429, json={"error": {"message": "slow down"}}, headers={"Retry-After": "3"}), "RATE_LIMITED", True),
        (httpx.Response(400, json={"error": {"code": 131056, "message": "pair rate limit"}}), "RATE_LIMITED", True),
        (httpx.Response(502, text="bad gateway"), "RETRYABLE", True),
        (httpx.Response(401, json={"error": {"code": 190, "message": "expired token"}}), "INVALID_CREDENTIAL", False),
        (httpx.Response(400, json={"error": {"code": 132000, "message": "param count"}}), "TEMPLATE_PARAM_MISMATCH", False),
        (httpx.Response(400, json={"error": {"code": 100, "message": "Invalid parameter"}}), "TEMPLATE_PARAM_MISMATCH", False),
        (httpx.Response(400, json={"error": {"code": 131030, "message": "Recipient not allowed"}}), "BAD_REQUEST", False),
    ],
)
def test_error_taxonomy(monkeypatch, response, code, retryable):
    _capture(monkeypatch, response)

    with pytest.raises(meta_client.MetaProviderError) as exc_info:
        _send()

    assert exc_info.value.code == code
    assert exc_info.value.retryable is retryable
    assert exc_info.value.status_code == response.status_code


def test_retry_after_header_is_parsed(monkeypatch):
    _capture(monkeypatch, httpx.Response(429, json={}, headers={"Retry-After": "12"}))

    with pytest.raises(meta_client.MetaProviderError) as exc_info:
        _send()

    assert exc_info.value.retry_after_seconds == 12.0


def test_connectivity_errors_are_retryable(monkeypatch):
    _capture(monkeypatch, httpx.ConnectError("connection refused"))

    with pytest.raises(meta_client.MetaProviderError) as exc_info:
        _send()

    assert exc_info.value.code == "RETRYABLE"


def test_unexpected_success_bodies_are_terminal(monkeypatch):
    _capture(monkeypatch, httpx.Response(200, json={"messages": []}))
    with pytest.raises(meta_client.MetaProviderError) as missing_id:
        _send()
    assert missing_id.value.code == "UNKNOWN"
    assert missing_id.value.retryable is False

    _capture(monkeypatch, httpx.Response(200, text="<html>ok</html>"))
    with pytest.raises(meta_client.MetaProviderError) as not_json:
        _send()
    assert not_json.value.code == "UNKNOWN"


def test_missing_credentials_fail_without_network(monkeypatch):
    calls = _capture(monkeypatch, httpx.Response(200, json={}))

    with pytest.raises(meta_client.MetaProviderError) as exc_info:
        meta_client.send_template_message("", "pni-1", recipient="1", template_name="t", language_code="en")

    assert exc_info.value.code == "INVALID_CREDENTIAL"
    assert calls == []
