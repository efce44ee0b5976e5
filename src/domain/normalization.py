from __future__ import annotations

import re
from typing import Literal


CanonicalStatus = Literal["pending", "processing", "sent", "delivered", "read", "failed", "completed"]
ProviderSlug = Literal["meta", "360dialog"]

# failed sits above every other level so no later non-failed event can replace it.
STATUS_LEVELS: dict[str, int] = {
    "pending": 0,
    "processing": 1,
    "sent": 2,
    "delivered": 3,
    "read": 4,
    "completed": 5,
    "failed": 6,
}

DEFAULT_FAILURE_MESSAGE = "Delivery failed"

MIN_RECIPIENT_DIGITS = 7
MAX_RECIPIENT_DIGITS = 15

_PHONE_SEPARATORS = re.compile(r"[\s\-\.\(\)]")
_DIGITS_ONLY = re.compile(r"^\d+$")


def status_level(value: str) -> int:
    return STATUS_LEVELS[value]


def normalize_delivery_status(provider: str, value: str | None) -> CanonicalStatus | None:
    """Map a provider's status word onto the ledger vocabulary; None means ignore."""
    if not value:
        return None
    key = str(value).strip().lower()
    shared = {
        "sent": "sent",
        "delivered": "delivered",
        "read": "read",
        "failed": "failed",
        "undelivered": "failed",
    }
    if key in shared:
        return shared[key]  # type: ignore[return-value]
    if provider == "meta":
        mapping = {
            "played": "read",
        }
        return mapping.get(key)  # type: ignore[return-value]
    if provider == "360dialog":
        mapping = {
            "accepted": "processing",
            "enqueued": "processing",
            "queued": "processing",
        }
        return mapping.get(key)  # type: ignore[return-value]
    return None


def should_apply_status(
    current: str,
    incoming: str,
    *,
    current_error: str | None = None,
    incoming_error: str | None = None,
) -> bool:
    if incoming == "failed":
        if current != "failed":
            return True
        return bool(
            incoming_error
            and incoming_error != DEFAULT_FAILURE_MESSAGE
            and incoming_error != current_error
        )
    if current == "failed":
        return False
    return status_level(incoming) > status_level(current)


def normalize_recipient(value: str | None) -> str:
    if value is None:
        return ""
    cleaned = _PHONE_SEPARATORS.sub("", str(value).strip())
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]
    return cleaned


def recipient_error(value: str | None) -> str | None:
    """Return why `value` is not a dialable WhatsApp number, or None when it is."""
    normalized = normalize_recipient(value)
    if not normalized:
        return "empty"
    if not _DIGITS_ONLY.match(normalized):
        return "non_digit_characters"
    if normalized.startswith("0"):
        return "missing_country_code"
    if len(normalized) < MIN_RECIPIENT_DIGITS or len(normalized) > MAX_RECIPIENT_DIGITS:
        return "invalid_length"
    return None


def is_valid_recipient(value: str | None) -> bool:
    return recipient_error(value) is None
