from __future__ import annotations

import logging
from concurrent.futures import Future
from datetime import datetime, timezone
from typing import Any

from src.domain.webhook_payloads import summarize_payload
from src.models.webhooks import WebhookDebugItem
from src.observability import incr_metric, log_event
from src.services.background import BackgroundTaskQueue, FixedWindowRateLimiter, RingBuffer
from src.services.reconciliation import ReconciliationSummary, StatusReconciliationEngine, TenantResolver


class WebhookReceiver:
    """Owns the post-acknowledgement pipeline for one provider's webhooks.

    Accepted payloads are recorded in a bounded ring buffer for debugging and
    handed to a bounded background queue that feeds the reconciliation engine.
    """

    def __init__(
        self,
        provider: str,
        engine: StatusReconciliationEngine,
        tenant_resolver: TenantResolver,
        *,
        ring_size: int = 200,
        workers: int = 4,
        queue_size: int = 500,
        debug_rate_limit_per_minute: int = 30,
    ) -> None:
        self.provider = provider
        self.engine = engine
        self.tenant_resolver = tenant_resolver
        self.recent = RingBuffer[WebhookDebugItem](ring_size)
        self.queue = BackgroundTaskQueue(f"webhook-{provider}", workers=workers, capacity=queue_size)
        self.debug_rate_limiter = FixedWindowRateLimiter(max_per_window=debug_rate_limit_per_minute, window_seconds=60.0)

    def record(self, payload: dict[str, Any] | None, *, request_id: str | None = None, note: str | None = None) -> None:
        self.recent.push(
            WebhookDebugItem(
                received_at=datetime.now(timezone.utc),
                provider=self.provider,
                summary=note or summarize_payload(payload),
                request_id=request_id,
                payload=payload,
            )
        )

    def accept(self, payload: dict[str, Any], *, request_id: str | None = None) -> Future[ReconciliationSummary]:
        """Queue a verified payload for processing; raises QueueFullError when saturated."""
        self.record(payload, request_id=request_id)
        future = self.queue.submit(self._process, payload, request_id)
        incr_metric("webhook.events.accepted", provider=self.provider)
        return future

    def _process(self, payload: dict[str, Any], request_id: str | None) -> ReconciliationSummary:
        summary = self.engine.apply_webhook_payload(
            self.provider,
            payload,
            self.tenant_resolver,
            request_id=request_id,
        )
        incr_metric("webhook.events.processed", provider=self.provider)
        if summary.failed or summary.unresolved_tenant:
            log_event(
                "webhook_processed_with_gaps",
                level=logging.WARNING,
                request_id=request_id,
                provider=self.provider,
                failed=summary.failed,
                unresolved_tenant=summary.unresolved_tenant,
            )
        return summary

    def wait_idle(self, timeout: float | None = None) -> bool:
        return self.queue.wait_idle(timeout)
