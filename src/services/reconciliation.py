from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from src.domain.webhook_payloads import extract_status_events
from src.models.webhooks import CanonicalStatusEvent
from src.observability import incr_metric, log_event
from src.services.campaign_logs import (
    CampaignLogStorageError,
    CampaignLogStore,
    CampaignLogValidationError,
)
from src.services.notifications import NotificationHub


TenantResolver = Callable[[CanonicalStatusEvent], str | None]


@dataclass
class ReconciliationSummary:
    received: int = 0
    applied: int = 0
    ignored: int = 0
    skipped: int = 0
    unresolved_tenant: int = 0
    failed: int = 0


class StatusReconciliationEngine:
    """Applies canonical provider status events to the campaign ledger."""

    def __init__(self, store: CampaignLogStore, notifications: NotificationHub | None = None) -> None:
        self.store = store
        self.notifications = notifications

    def apply_provider_event(
        self,
        tenant_id: str,
        event: CanonicalStatusEvent,
        *,
        request_id: str | None = None,
    ) -> bool:
        try:
            applied = self.store.create_or_update_from_webhook(tenant_id, event)
        except CampaignLogValidationError as exc:
            incr_metric("reconciliation.events.rejected", provider=event.provider)
            log_event(
                "reconciliation_event_rejected",
                level=logging.WARNING,
                request_id=request_id,
                tenant_id=tenant_id,
                provider=event.provider,
                message_id=event.provider_message_id,
                status=event.status,
                error=str(exc),
            )
            return False
        except CampaignLogStorageError as exc:
            # The provider redelivers; a dropped event is recovered on the next attempt.
            incr_metric("reconciliation.events.dropped", provider=event.provider)
            log_event(
                "reconciliation_event_dropped",
                level=logging.ERROR,
                request_id=request_id,
                tenant_id=tenant_id,
                provider=event.provider,
                message_id=event.provider_message_id,
                status=event.status,
                error=str(exc),
            )
            return False

        if not applied:
            incr_metric("reconciliation.events.ignored", provider=event.provider, status=event.status)
            log_event(
                "reconciliation_event_ignored",
                level=logging.DEBUG,
                request_id=request_id,
                tenant_id=tenant_id,
                provider=event.provider,
                message_id=event.provider_message_id,
                status=event.status,
            )
            return False

        incr_metric("reconciliation.events.applied", provider=event.provider, status=event.status)
        log_event(
            "reconciliation_event_applied",
            request_id=request_id,
            tenant_id=tenant_id,
            provider=event.provider,
            message_id=event.provider_message_id,
            status=event.status,
        )
        if self.notifications is not None:
            self.notifications.publish(
                tenant_id,
                {
                    "type": "status",
                    "message_id": event.provider_message_id,
                    "status": event.status,
                    "recipient": event.recipient,
                    "timestamp": event.timestamp.isoformat(),
                },
            )
        return True

    def apply_webhook_payload(
        self,
        provider: str,
        payload: dict[str, Any],
        tenant_resolver: TenantResolver,
        *,
        request_id: str | None = None,
    ) -> ReconciliationSummary:
        events, skipped = extract_status_events(provider, payload)
        summary = ReconciliationSummary(received=len(events), skipped=skipped)
        for event in events:
            try:
                tenant_id = tenant_resolver(event)
            except Exception as exc:
                summary.failed += 1
                incr_metric("reconciliation.events.failed", provider=provider)
                log_event(
                    "reconciliation_tenant_lookup_failed",
                    level=logging.ERROR,
                    request_id=request_id,
                    provider=provider,
                    channel_ref=event.channel_ref,
                    message_id=event.provider_message_id,
                    error=str(exc),
                )
                continue
            if not tenant_id:
                summary.unresolved_tenant += 1
                incr_metric("reconciliation.events.unresolved_tenant", provider=provider)
                log_event(
                    "reconciliation_tenant_unresolved",
                    level=logging.WARNING,
                    request_id=request_id,
                    provider=provider,
                    channel_ref=event.channel_ref,
                    message_id=event.provider_message_id,
                )
                continue
            try:
                applied = self.apply_provider_event(tenant_id, event, request_id=request_id)
            except Exception as exc:
                summary.failed += 1
                incr_metric("reconciliation.events.failed", provider=provider)
                log_event(
                    "reconciliation_event_failed",
                    level=logging.ERROR,
                    request_id=request_id,
                    provider=provider,
                    tenant_id=tenant_id,
                    message_id=event.provider_message_id,
                    error=str(exc),
                )
                continue
            if applied:
                summary.applied += 1
            else:
                summary.ignored += 1
        log_event(
            "reconciliation_payload_processed",
            request_id=request_id,
            provider=provider,
            received=summary.received,
            applied=summary.applied,
            ignored=summary.ignored,
            skipped=summary.skipped,
            unresolved_tenant=summary.unresolved_tenant,
            failed=summary.failed,
        )
        return summary
