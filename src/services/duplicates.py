from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from src.domain.normalization import normalize_recipient
from src.observability import incr_metric, log_event


class DuplicateStoreError(Exception):
    """Fingerprint storage failed."""


@dataclass
class DuplicateCheck:
    is_duplicate: bool
    fingerprint: str


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _is_unique_violation(exc: Exception) -> bool:
    message = str(exc).lower()
    return "duplicate" in message or "unique" in message or "23505" in message


def compute_fingerprint(
    tenant_id: str,
    template_name: str,
    recipient: str,
    variables: dict[str, Any] | None = None,
) -> str:
    material = json.dumps(
        {
            "tenant_id": tenant_id,
            "template_name": template_name,
            "recipient": normalize_recipient(recipient),
            "variables": {str(k): str(v) for k, v in sorted((variables or {}).items(), key=lambda kv: str(kv[0]))},
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(material.encode()).hexdigest()


class DuplicateDetector:
    """Flags a (template, recipient, variables) send repeated within the window.

    The first sighting in a window is recorded atomically: an insert on
    (tenant_id, fingerprint), or a compare-and-set of `seen_at` when the
    previous sighting has expired.
    """

    table_name = "message_fingerprints"

    def __init__(
        self,
        client: Any,
        *,
        window_seconds: int = 300,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.client = client
        self.window = timedelta(seconds=window_seconds)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _table(self):
        return self.client.table(self.table_name)

    def check(
        self,
        tenant_id: str,
        template_name: str,
        recipient: str,
        variables: dict[str, Any] | None = None,
    ) -> DuplicateCheck:
        fingerprint = compute_fingerprint(tenant_id, template_name, recipient, variables)
        now = self.clock()
        try:
            self._table().insert(
                {
                    "tenant_id": tenant_id,
                    "fingerprint": fingerprint,
                    "template_name": template_name,
                    "recipient_number": normalize_recipient(recipient),
                    "seen_at": now.isoformat(),
                }
            ).execute()
            return DuplicateCheck(is_duplicate=False, fingerprint=fingerprint)
        except Exception as exc:
            if not _is_unique_violation(exc):
                raise DuplicateStoreError(f"message_fingerprints insert failed: {exc}") from exc

        try:
            existing = (
                self._table()
                .select("seen_at")
                .eq("tenant_id", tenant_id)
                .eq("fingerprint", fingerprint)
                .execute()
            )
        except Exception as exc:
            raise DuplicateStoreError(f"message_fingerprints lookup failed: {exc}") from exc
        if not existing.data:
            # Released between our insert and lookup; treat as a fresh send.
            return self.check(tenant_id, template_name, recipient, variables)

        previous = existing.data[0]["seen_at"]
        if _parse_ts(previous) > now - self.window:
            incr_metric("duplicates.blocked")
            log_event(
                "duplicate_send_blocked",
                tenant_id=tenant_id,
                template_name=template_name,
                recipient=normalize_recipient(recipient),
                fingerprint=fingerprint,
            )
            return DuplicateCheck(is_duplicate=True, fingerprint=fingerprint)

        try:
            refreshed = (
                self._table()
                .update({"seen_at": now.isoformat()})
                .eq("tenant_id", tenant_id)
                .eq("fingerprint", fingerprint)
                .eq("seen_at", previous)
                .execute()
            )
        except Exception as exc:
            raise DuplicateStoreError(f"message_fingerprints refresh failed: {exc}") from exc
        if refreshed.data:
            return DuplicateCheck(is_duplicate=False, fingerprint=fingerprint)
        # Another request claimed the expired fingerprint first.
        incr_metric("duplicates.blocked")
        return DuplicateCheck(is_duplicate=True, fingerprint=fingerprint)

    def release(self, tenant_id: str, fingerprint: str) -> None:
        """Forget a fingerprint whose send never went out."""
        try:
            self._table().delete().eq("tenant_id", tenant_id).eq("fingerprint", fingerprint).execute()
        except Exception as exc:
            raise DuplicateStoreError(f"message_fingerprints release failed: {exc}") from exc
        incr_metric("duplicates.released")
