from __future__ import annotations

import logging
import queue
import random
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Sequence

from src.domain.normalization import normalize_recipient, recipient_error
from src.domain.provider_errors import ProviderSendError
from src.models.campaign_logs import SendMeta
from src.observability import incr_metric, log_event
from src.providers.resolver import SendFunction
from src.services.campaign_logs import CampaignLogStorageError, CampaignLogStore


MAX_RECIPIENTS = 10_000
MAX_CONCURRENCY = 50
MAX_ATTEMPTS = 10
_MAX_RETRY_AFTER_SECONDS = 60.0


class DispatchValidationError(ValueError):
    """Dispatch input was rejected; `errors` lists every offending entry."""

    def __init__(self, errors: list[dict[str, Any]]) -> None:
        self.errors = errors
        super().__init__(f"{len(errors)} invalid dispatch input(s)")


@dataclass
class RecipientOutcome:
    index: int
    recipient: str
    ok: bool
    message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    attempts: int = 0
    retryable: bool = False
    persisted: bool = True


@dataclass
class DispatchResult:
    total: int
    succeeded: int
    failed: int
    results: list[RecipientOutcome] = field(default_factory=list)


def validate_dispatch_request(
    recipients: Sequence[str],
    *,
    concurrency: int,
    max_attempts: int,
) -> list[str]:
    """Return the normalized recipients or raise with every problem found."""
    errors: list[dict[str, Any]] = []
    if not recipients:
        errors.append({"field": "recipients", "reason": "at_least_one_recipient_required"})
    elif len(recipients) > MAX_RECIPIENTS:
        errors.append(
            {"field": "recipients", "reason": "too_many_recipients", "limit": MAX_RECIPIENTS, "count": len(recipients)}
        )
    if not 1 <= concurrency <= MAX_CONCURRENCY:
        errors.append({"field": "concurrency", "reason": "out_of_range", "min": 1, "max": MAX_CONCURRENCY, "value": concurrency})
    if not 1 <= max_attempts <= MAX_ATTEMPTS:
        errors.append({"field": "max_attempts", "reason": "out_of_range", "min": 1, "max": MAX_ATTEMPTS, "value": max_attempts})

    normalized: list[str] = []
    for index, value in enumerate(recipients):
        reason = recipient_error(value)
        if reason:
            errors.append({"field": "recipients", "index": index, "value": value, "reason": reason})
            continue
        normalized.append(normalize_recipient(value))

    if errors:
        raise DispatchValidationError(errors)
    return normalized


class BulkDispatcher:
    """Sends one template to many recipients through a bounded worker pool.

    Workers pull recipients from one shared queue. Each recipient is tried up
    to `max_attempts` times, backing off between retryable failures, and its
    outcome is written to the campaign ledger before it is counted.
    """

    def __init__(
        self,
        store: CampaignLogStore,
        *,
        retry_base_delay_seconds: float = 0.25,
        retry_max_delay_seconds: float = 2.0,
        ledger_write_attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.retry_base_delay_seconds = retry_base_delay_seconds
        self.retry_max_delay_seconds = retry_max_delay_seconds
        self.ledger_write_attempts = max(1, ledger_write_attempts)
        self.sleep = sleep

    def _backoff_delay(self, attempt: int, retry_after: float | None = None) -> float:
        if retry_after is not None:
            return min(retry_after, _MAX_RETRY_AFTER_SECONDS)
        delay = min(self.retry_base_delay_seconds * (2 ** (attempt - 1)), self.retry_max_delay_seconds)
        delay += random.uniform(0, delay * 0.2)
        return delay

    def dispatch(
        self,
        tenant_id: str,
        recipients: Sequence[str],
        send: SendFunction,
        *,
        meta: SendMeta,
        components_for: Callable[[int, str], list[dict[str, Any]]] | None = None,
        metadata_for: Callable[[int, str], dict[str, Any]] | None = None,
        on_outcome: Callable[[RecipientOutcome], None] | None = None,
        concurrency: int = 10,
        max_attempts: int = 4,
        request_id: str | None = None,
    ) -> DispatchResult:
        normalized = validate_dispatch_request(recipients, concurrency=concurrency, max_attempts=max_attempts)
        total = len(normalized)
        workers = min(concurrency, total)

        work: queue.SimpleQueue[tuple[int, str]] = queue.SimpleQueue()
        for index, recipient in enumerate(normalized):
            work.put((index, recipient))

        results: list[RecipientOutcome | None] = [None] * total
        counters = {"succeeded": 0, "failed": 0}
        lock = Lock()

        log_event(
            "dispatch_started",
            request_id=request_id,
            tenant_id=tenant_id,
            campaign_name=meta.campaign_name,
            template_name=meta.template_name,
            provider=meta.provider,
            total=total,
            concurrency=workers,
            max_attempts=max_attempts,
        )

        def _worker() -> None:
            while True:
                try:
                    index, recipient = work.get_nowait()
                except queue.Empty:
                    return
                components = components_for(index, recipient) if components_for else []
                extra = metadata_for(index, recipient) if metadata_for else {}
                recipient_meta = meta.model_copy(update={"metadata": {**meta.metadata, **extra}})
                outcome = self._dispatch_one(
                    tenant_id,
                    index,
                    recipient,
                    send,
                    components,
                    recipient_meta,
                    max_attempts=max_attempts,
                    request_id=request_id,
                )
                with lock:
                    results[index] = outcome
                    counters["succeeded" if outcome.ok else "failed"] += 1
                if on_outcome is not None:
                    on_outcome(outcome)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dispatch") as executor:
            futures = [executor.submit(_worker) for _ in range(workers)]
            for future in futures:
                future.result()

        result = DispatchResult(
            total=total,
            succeeded=counters["succeeded"],
            failed=counters["failed"],
            results=[outcome for outcome in results if outcome is not None],
        )
        incr_metric("dispatch.batches.completed", provider=meta.provider)
        log_event(
            "dispatch_completed",
            request_id=request_id,
            tenant_id=tenant_id,
            campaign_name=meta.campaign_name,
            total=result.total,
            succeeded=result.succeeded,
            failed=result.failed,
        )
        return result

    def _dispatch_one(
        self,
        tenant_id: str,
        index: int,
        recipient: str,
        send: SendFunction,
        components: list[dict[str, Any]],
        meta: SendMeta,
        *,
        max_attempts: int,
        request_id: str | None,
    ) -> RecipientOutcome:
        attempt = 0
        while True:
            attempt += 1
            try:
                ack = send(recipient, components)
            except ProviderSendError as exc:
                error = exc
            except Exception as exc:
                error = ProviderSendError(str(exc) or exc.__class__.__name__, code="UNKNOWN")
                log_event(
                    "dispatch_send_unexpected_error",
                    level=logging.ERROR,
                    request_id=request_id,
                    tenant_id=tenant_id,
                    recipient=recipient,
                    error_type=exc.__class__.__name__,
                    error=str(exc),
                )
            else:
                incr_metric("dispatch.sends.accepted", provider=meta.provider)
                return self._record_success(
                    tenant_id, index, recipient, ack.message_id, meta, attempts=attempt, request_id=request_id
                )

            incr_metric("dispatch.sends.failed", provider=meta.provider, code=error.code)
            if not error.retryable or attempt >= max_attempts:
                return self._record_failure(
                    tenant_id, index, recipient, error, meta, attempts=attempt, request_id=request_id
                )
            delay = self._backoff_delay(attempt, error.retry_after_seconds)
            incr_metric("dispatch.sends.retried", provider=meta.provider, code=error.code)
            log_event(
                "dispatch_send_retry",
                level=logging.WARNING,
                request_id=request_id,
                tenant_id=tenant_id,
                recipient=recipient,
                attempt=attempt,
                code=error.code,
                status_code=error.status_code,
                delay_seconds=round(delay, 3),
            )
            self.sleep(delay)

    def _write_with_retry(self, write: Callable[[], Any]) -> CampaignLogStorageError | None:
        last_exc: CampaignLogStorageError | None = None
        for attempt in range(1, self.ledger_write_attempts + 1):
            try:
                write()
                return None
            except CampaignLogStorageError as exc:
                last_exc = exc
                incr_metric("dispatch.ledger_writes.failed")
                if attempt < self.ledger_write_attempts:
                    self.sleep(self._backoff_delay(attempt))
        return last_exc

    def _record_success(
        self,
        tenant_id: str,
        index: int,
        recipient: str,
        message_id: str,
        meta: SendMeta,
        *,
        attempts: int,
        request_id: str | None,
    ) -> RecipientOutcome:
        storage_error = self._write_with_retry(
            lambda: self.store.upsert_on_send(tenant_id, message_id, recipient, meta)
        )
        if storage_error is None:
            return RecipientOutcome(index=index, recipient=recipient, ok=True, message_id=message_id, attempts=attempts)

        # Accepted by the provider but not persisted; never report it as a success.
        log_event(
            "dispatch_ledger_write_failed",
            level=logging.ERROR,
            request_id=request_id,
            tenant_id=tenant_id,
            recipient=recipient,
            message_id=message_id,
            error=str(storage_error),
        )
        return RecipientOutcome(
            index=index,
            recipient=recipient,
            ok=False,
            message_id=message_id,
            error_code="STORAGE_ERROR",
            error_message=str(storage_error),
            attempts=attempts,
            retryable=True,
            persisted=False,
        )

    def _record_failure(
        self,
        tenant_id: str,
        index: int,
        recipient: str,
        error: ProviderSendError,
        meta: SendMeta,
        *,
        attempts: int,
        request_id: str | None,
    ) -> RecipientOutcome:
        error_message = f"{error.code}: {error}"
        storage_error = self._write_with_retry(
            lambda: self.store.record_dispatch_failure(tenant_id, recipient, meta, error_message)
        )
        log_event(
            "dispatch_recipient_failed",
            level=logging.WARNING,
            request_id=request_id,
            tenant_id=tenant_id,
            recipient=recipient,
            code=error.code,
            status_code=error.status_code,
            attempts=attempts,
            persisted=storage_error is None,
        )
        if storage_error is not None:
            log_event(
                "dispatch_ledger_write_failed",
                level=logging.ERROR,
                request_id=request_id,
                tenant_id=tenant_id,
                recipient=recipient,
                error=str(storage_error),
            )
        return RecipientOutcome(
            index=index,
            recipient=recipient,
            ok=False,
            error_code=error.code,
            error_message=error_message,
            attempts=attempts,
            retryable=error.retryable,
            persisted=storage_error is None,
        )
