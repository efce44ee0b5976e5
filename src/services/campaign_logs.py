from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from src.domain.normalization import (
    DEFAULT_FAILURE_MESSAGE,
    normalize_recipient,
    should_apply_status,
)
from src.models.campaign_logs import (
    UNKNOWN_TEMPLATE,
    WEBHOOK_ONLY_CAMPAIGN,
    CampaignLogEntry,
    SendMeta,
)
from src.models.webhooks import CanonicalStatusEvent
from src.observability import incr_metric, log_event


_TIMESTAMP_COLUMNS = {
    "sent": "sent_at",
    "delivered": "delivered_at",
    "read": "read_at",
}


class CampaignLogStorageError(Exception):
    """The ledger could not be read or written; the caller may retry."""

    retryable = True


class CampaignLogValidationError(ValueError):
    """A ledger write was rejected before touching storage."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_unique_violation(exc: Exception) -> bool:
    message = str(exc).lower()
    return "duplicate" in message or "unique" in message or "23505" in message


class CampaignLogStore:
    """Durable per-message ledger backed by the `campaign_logs` table.

    Every write touches a single row. Updates are compare-and-set on the
    row's `version` column and are retried when another writer got there
    first; creation relies on the unique index over (tenant_id, message_id)
    and falls back to the update path when it loses the insert race.
    """

    table_name = "campaign_logs"

    def __init__(self, client: Any, *, cas_attempts: int = 5) -> None:
        self.client = client
        self.cas_attempts = max(1, cas_attempts)

    def _table(self):
        return self.client.table(self.table_name)

    def _execute(self, query: Any, *, operation: str) -> Any:
        try:
            return query.execute()
        except Exception as exc:
            incr_metric("campaign_logs.storage_errors", operation=operation)
            raise CampaignLogStorageError(f"campaign_logs {operation} failed: {exc}") from exc

    def _fetch_row(self, tenant_id: str, message_id: str) -> dict[str, Any] | None:
        result = self._execute(
            self._table().select("*").eq("tenant_id", tenant_id).eq("message_id", message_id).limit(1),
            operation="select",
        )
        return result.data[0] if result.data else None

    def _insert(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        """Insert a row, returning None when the (tenant, message id) already exists."""
        try:
            result = self._table().insert(payload).execute()
        except Exception as exc:
            if _is_unique_violation(exc):
                return None
            incr_metric("campaign_logs.storage_errors", operation="insert")
            raise CampaignLogStorageError(f"campaign_logs insert failed: {exc}") from exc
        if not result.data:
            raise CampaignLogStorageError("campaign_logs insert returned no row")
        return result.data[0]

    def _compare_and_set(self, row: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any] | None:
        version = int(row.get("version") or 1)
        payload = {**changes, "version": version + 1, "updated_at": _now_iso()}
        result = self._execute(
            self._table().update(payload).eq("id", row["id"]).eq("version", version),
            operation="update",
        )
        return result.data[0] if result.data else None

    def _record_conflict(self, *, path: str, tenant_id: str, message_id: str | None, attempt: int) -> None:
        incr_metric("campaign_logs.write_conflicts", path=path)
        log_event(
            "campaign_log_write_conflict",
            level=logging.DEBUG,
            path=path,
            tenant_id=tenant_id,
            message_id=message_id,
            attempt=attempt,
        )

    def _exhausted(self, *, path: str, tenant_id: str, message_id: str | None) -> CampaignLogStorageError:
        incr_metric("campaign_logs.conflicts_exhausted", path=path)
        log_event(
            "campaign_log_conflicts_exhausted",
            level=logging.WARNING,
            path=path,
            tenant_id=tenant_id,
            message_id=message_id,
            attempts=self.cas_attempts,
        )
        return CampaignLogStorageError(
            f"campaign_logs row for message {message_id} kept changing after {self.cas_attempts} attempts"
        )

    def get_by_message_id(self, tenant_id: str, message_id: str) -> CampaignLogEntry | None:
        row = self._fetch_row(tenant_id, message_id)
        return CampaignLogEntry.model_validate(row) if row else None

    def find_tenant_for_message(self, message_id: str) -> str | None:
        """Tenant owning `message_id`, or None when unknown or ambiguous."""
        result = self._execute(
            self._table().select("tenant_id").eq("message_id", message_id).limit(2),
            operation="select",
        )
        tenants = {row["tenant_id"] for row in result.data or []}
        return tenants.pop() if len(tenants) == 1 else None

    def list_for_campaign(self, tenant_id: str, campaign_name: str, *, limit: int = 500) -> list[CampaignLogEntry]:
        result = self._execute(
            self._table()
            .select("*")
            .eq("tenant_id", tenant_id)
            .eq("campaign_name", campaign_name)
            .order("created_at")
            .limit(limit),
            operation="select",
        )
        return [CampaignLogEntry.model_validate(row) for row in result.data or []]

    def upsert_on_send(
        self,
        tenant_id: str,
        message_id: str,
        recipient: str,
        meta: SendMeta,
    ) -> CampaignLogEntry:
        recipient_number = normalize_recipient(recipient)
        if not recipient_number:
            raise CampaignLogValidationError("recipient_number is required")
        if not message_id:
            raise CampaignLogValidationError("message_id is required for an acknowledged send")

        sent_at = _now_iso()
        for attempt in range(1, self.cas_attempts + 1):
            row = self._fetch_row(tenant_id, message_id)
            if row is None:
                inserted = self._insert(
                    {
                        "tenant_id": tenant_id,
                        "campaign_name": meta.campaign_name,
                        "template_name": meta.template_name,
                        "language_code": meta.language_code,
                        "provider": meta.provider,
                        "provider_channel_ref": meta.provider_channel_ref,
                        "recipient_number": recipient_number,
                        "message_id": message_id,
                        "status": "sent",
                        "sent_at": sent_at,
                        "metadata": dict(meta.metadata),
                        "version": 1,
                        "created_at": sent_at,
                        "updated_at": sent_at,
                    }
                )
                if inserted is not None:
                    incr_metric("campaign_logs.created", path="send")
                    return CampaignLogEntry.model_validate(inserted)
                self._record_conflict(path="send", tenant_id=tenant_id, message_id=message_id, attempt=attempt)
                continue

            changes: dict[str, Any] = {
                "campaign_name": meta.campaign_name,
                "template_name": meta.template_name,
                "metadata": {**(row.get("metadata") or {}), **meta.metadata},
            }
            for key in ("language_code", "provider", "provider_channel_ref"):
                value = getattr(meta, key)
                if value is not None:
                    changes[key] = value
            if not row.get("recipient_number"):
                changes["recipient_number"] = recipient_number
            if should_apply_status(row["status"], "sent"):
                changes["status"] = "sent"
            if not row.get("sent_at"):
                changes["sent_at"] = sent_at

            updated = self._compare_and_set(row, changes)
            if updated is not None:
                adopted = row.get("campaign_name") == WEBHOOK_ONLY_CAMPAIGN
                incr_metric("campaign_logs.adopted" if adopted else "campaign_logs.updated", path="send")
                return CampaignLogEntry.model_validate(updated)
            self._record_conflict(path="send", tenant_id=tenant_id, message_id=message_id, attempt=attempt)

        raise self._exhausted(path="send", tenant_id=tenant_id, message_id=message_id)

    def record_dispatch_failure(
        self,
        tenant_id: str,
        recipient: str,
        meta: SendMeta,
        error_message: str | None,
    ) -> CampaignLogEntry:
        recipient_number = normalize_recipient(recipient)
        if not recipient_number:
            raise CampaignLogValidationError("recipient_number is required")
        now = _now_iso()
        inserted = self._insert(
            {
                "tenant_id": tenant_id,
                "campaign_name": meta.campaign_name,
                "template_name": meta.template_name,
                "language_code": meta.language_code,
                "provider": meta.provider,
                "provider_channel_ref": meta.provider_channel_ref,
                "recipient_number": recipient_number,
                "message_id": None,
                "status": "failed",
                "error_message": error_message or DEFAULT_FAILURE_MESSAGE,
                "metadata": dict(meta.metadata),
                "version": 1,
                "created_at": now,
                "updated_at": now,
            }
        )
        if inserted is None:
            raise CampaignLogStorageError("campaign_logs insert of a failed send hit a unique constraint")
        incr_metric("campaign_logs.created", path="send_failure")
        return CampaignLogEntry.model_validate(inserted)

    def _status_changes(
        self,
        row: dict[str, Any],
        status: str,
        timestamp: str,
        error: str | None,
    ) -> dict[str, Any] | None:
        if not should_apply_status(
            row["status"],
            status,
            current_error=row.get("error_message"),
            incoming_error=error,
        ):
            return None
        changes: dict[str, Any] = {"status": status}
        if status == "failed":
            changes["error_message"] = error or row.get("error_message") or DEFAULT_FAILURE_MESSAGE
        column = _TIMESTAMP_COLUMNS.get(status)
        if column and not row.get(column):
            changes[column] = timestamp
        return changes

    def _apply_status(
        self,
        tenant_id: str,
        message_id: str,
        status: str,
        timestamp: datetime,
        error: str | None,
        *,
        path: str,
        create_row: dict[str, Any] | None = None,
        missing_row_error: Exception | None = None,
    ) -> bool:
        timestamp_iso = timestamp.isoformat()
        for attempt in range(1, self.cas_attempts + 1):
            row = self._fetch_row(tenant_id, message_id)
            if row is None:
                if create_row is None:
                    if missing_row_error is not None:
                        raise missing_row_error
                    return False
                inserted = self._insert(create_row)
                if inserted is not None:
                    incr_metric("campaign_logs.created", path=path)
                    return True
                self._record_conflict(path=path, tenant_id=tenant_id, message_id=message_id, attempt=attempt)
                continue

            changes = self._status_changes(row, status, timestamp_iso, error)
            if changes is None:
                incr_metric("campaign_logs.status_ignored", path=path, status=status)
                log_event(
                    "campaign_log_status_ignored",
                    level=logging.DEBUG,
                    tenant_id=tenant_id,
                    message_id=message_id,
                    current_status=row["status"],
                    incoming_status=status,
                )
                return False
            if self._compare_and_set(row, changes) is not None:
                incr_metric("campaign_logs.status_applied", path=path, status=status)
                return True
            self._record_conflict(path=path, tenant_id=tenant_id, message_id=message_id, attempt=attempt)

        raise self._exhausted(path=path, tenant_id=tenant_id, message_id=message_id)

    def update_by_message_id(
        self,
        tenant_id: str,
        message_id: str,
        status: str,
        timestamp: datetime,
        error: str | None = None,
    ) -> bool:
        return self._apply_status(tenant_id, message_id, status, timestamp, error, path="update")

    def create_or_update_from_webhook(self, tenant_id: str, event: CanonicalStatusEvent) -> bool:
        recipient_number = normalize_recipient(event.recipient)
        create_row: dict[str, Any] | None = None
        if recipient_number:
            now = _now_iso()
            create_row = {
                "tenant_id": tenant_id,
                "campaign_name": WEBHOOK_ONLY_CAMPAIGN,
                "template_name": UNKNOWN_TEMPLATE,
                "provider": event.provider,
                "provider_channel_ref": event.channel_ref,
                "recipient_number": recipient_number,
                "message_id": event.provider_message_id,
                "status": event.status,
                "metadata": {"source": "webhook"},
                "version": 1,
                "created_at": now,
                "updated_at": now,
            }
            if event.status == "failed":
                create_row["error_message"] = event.error_detail or DEFAULT_FAILURE_MESSAGE
            column = _TIMESTAMP_COLUMNS.get(event.status)
            if column:
                create_row[column] = event.timestamp.isoformat()

        return self._apply_status(
            tenant_id,
            event.provider_message_id,
            event.status,
            event.timestamp,
            event.error_detail,
            path="webhook",
            create_row=create_row,
            missing_row_error=CampaignLogValidationError("recipient_number is required to create a webhook-only row"),
        )
