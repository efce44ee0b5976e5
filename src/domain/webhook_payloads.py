from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterator

from src.domain.normalization import DEFAULT_FAILURE_MESSAGE, normalize_delivery_status
from src.models.webhooks import CanonicalStatusEvent
from src.observability import incr_metric, log_event


def _parse_ts(value: Any) -> datetime:
    if value is None or value == "":
        return datetime.now(timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text), tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(timezone.utc)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def build_error_message(status_obj: dict[str, Any]) -> str:
    errors = status_obj.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        error = errors[0]
        code = error.get("code") or "Unknown"
        title = error.get("title") or "Unknown Error"
        error_data = error.get("error_data") if isinstance(error.get("error_data"), dict) else {}
        details = error.get("details") or error_data.get("details") or ""
        return f"{code}: {title}{' - ' + details if details else ''}"
    error = status_obj.get("error")
    if isinstance(error, dict):
        code = error.get("code") or "Unknown"
        message = error.get("message") or error.get("title") or "Unknown Error"
        return f"{code}: {message}"
    return DEFAULT_FAILURE_MESSAGE


def _iter_changes(payload: dict[str, Any]) -> Iterator[tuple[str | None, dict[str, Any]]]:
    """Yield (phone_number_id, value) for every change in a Cloud API envelope.

    The on-premise gateway format carries `statuses` at the top level; it is
    treated as a single change without a channel reference.
    """
    entries = payload.get("entry")
    if isinstance(entries, list):
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            for change in entry.get("changes") or []:
                if not isinstance(change, dict):
                    continue
                value = change.get("value")
                if not isinstance(value, dict):
                    continue
                metadata = value.get("metadata") if isinstance(value.get("metadata"), dict) else {}
                channel_ref = metadata.get("phone_number_id")
                yield (str(channel_ref) if channel_ref else None), value
        return
    if isinstance(payload.get("statuses"), list):
        yield None, payload


def extract_channel_ref(payload: dict[str, Any]) -> str | None:
    for channel_ref, _value in _iter_changes(payload):
        if channel_ref:
            return channel_ref
    return None


def extract_status_events(provider: str, payload: dict[str, Any]) -> tuple[list[CanonicalStatusEvent], int]:
    """Translate a provider payload into canonical events.

    Returns the events plus the number of status entries that were skipped
    (missing id, unknown or ignored vocabulary).
    """
    events: list[CanonicalStatusEvent] = []
    skipped = 0
    for channel_ref, value in _iter_changes(payload):
        for status_obj in value.get("statuses") or []:
            if not isinstance(status_obj, dict):
                skipped += 1
                continue
            message_id = status_obj.get("id")
            raw_status = status_obj.get("status")
            canonical = normalize_delivery_status(provider, raw_status)
            if not message_id or canonical is None:
                skipped += 1
                incr_metric("webhook.statuses.skipped", provider=provider)
                log_event(
                    "webhook_status_skipped",
                    level=logging.DEBUG,
                    provider=provider,
                    message_id=message_id,
                    raw_status=raw_status,
                )
                continue
            recipient = status_obj.get("recipient_id")
            events.append(
                CanonicalStatusEvent(
                    provider=provider,
                    provider_message_id=str(message_id),
                    status=canonical,
                    timestamp=_parse_ts(status_obj.get("timestamp")),
                    recipient=str(recipient) if recipient else None,
                    error_detail=build_error_message(status_obj) if canonical == "failed" else None,
                    channel_ref=channel_ref,
                )
            )
    return events, skipped


def summarize_payload(payload: Any) -> str:
    if not isinstance(payload, dict):
        return "unparsed"
    for channel_ref, value in _iter_changes(payload):
        statuses = value.get("statuses") if isinstance(value.get("statuses"), list) else []
        messages = value.get("messages") if isinstance(value.get("messages"), list) else []
        if statuses and isinstance(statuses[0], dict):
            first = statuses[0]
            return (
                f"pni={channel_ref} statuses={len(statuses)} "
                f"first id={first.get('id')} status={first.get('status')} ts={first.get('timestamp')}"
            )
        if messages and isinstance(messages[0], dict):
            first = messages[0]
            return f"pni={channel_ref} messages={len(messages)} first from={first.get('from')} type={first.get('type')}"
        return f"pni={channel_ref} (no statuses)"
    return f"object={payload.get('object')} (unparsed)"
