from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable

from src.domain.normalization import normalize_recipient
from src.domain.templates import build_template_components
from src.models.campaign_logs import SendMeta
from src.models.campaigns import BulkSendRequest
from src.observability import incr_metric, log_event
from src.providers.resolver import SendFunction
from src.services.background import BackgroundTaskQueue, QueueFullError
from src.services.channels import ChannelDirectory, TenantChannel
from src.services.credits import (
    CreditLedger,
    CreditLedgerError,
    InsufficientCreditError,
    round_credits,
)
from src.services.dispatcher import BulkDispatcher, RecipientOutcome, validate_dispatch_request
from src.services.duplicates import DuplicateDetector, DuplicateStoreError
from src.services.jobs import BulkJob, BulkJobRegistry
from src.services.notifications import NotificationHub
from src.services.templates import MessageTemplate, TemplateLookup


DUPLICATE_BLOCKED = "DUPLICATE_BLOCKED"
_DUPLICATE_MESSAGE = "Same template and variables were sent to this number within the duplicate window"

SendFactory = Callable[[TenantChannel, MessageTemplate], SendFunction]


@dataclass
class RecipientPlan:
    index: int
    recipient: str
    variables: dict[str, str]
    fingerprint: str
    duplicate: bool = False


@dataclass
class PreparedCampaign:
    tenant_id: str
    campaign_name: str
    template: MessageTemplate
    channel: TenantChannel
    unit_price: float
    plans: list[RecipientPlan]
    concurrency: int
    max_attempts: int
    header_text: str | None = None
    header_media: str | None = None
    button_urls: list[str] | None = None
    request_id: str | None = None

    @property
    def total(self) -> int:
        return len(self.plans)


@dataclass
class CampaignSendResult:
    campaign_name: str
    total: int
    succeeded: int
    failed: int
    duplicates: int
    credits_deducted: float
    results: list[RecipientOutcome] = field(default_factory=list)
    billing_error: str | None = None


def _default_campaign_name(template_name: str) -> str:
    return f"{template_name}_{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')}"


class CampaignService:
    """Runs a bulk template campaign end to end for one tenant."""

    def __init__(
        self,
        *,
        channels: ChannelDirectory,
        templates: TemplateLookup,
        credits: CreditLedger,
        duplicates: DuplicateDetector,
        dispatcher: BulkDispatcher,
        send_factory: SendFactory,
        jobs: BulkJobRegistry | None = None,
        job_queue: BackgroundTaskQueue | None = None,
        notifications: NotificationHub | None = None,
        job_batch_size: int = 50,
        job_batch_pause_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.channels = channels
        self.templates = templates
        self.credits = credits
        self.duplicates = duplicates
        self.dispatcher = dispatcher
        self.send_factory = send_factory
        self.jobs = jobs
        self.job_queue = job_queue
        self.notifications = notifications
        self.job_batch_size = max(1, job_batch_size)
        self.job_batch_pause_seconds = job_batch_pause_seconds
        self.sleep = sleep

    def _release(self, tenant_id: str, fingerprints: list[str], request_id: str | None = None) -> None:
        """Forget fingerprints of sends that never went out.

        Failures are logged and counted, never raised: a fingerprint left behind
        only blocks a resend until the duplicate window expires.
        """
        for fingerprint in fingerprints:
            try:
                self.duplicates.release(tenant_id, fingerprint)
            except DuplicateStoreError as exc:
                incr_metric("campaigns.fingerprint_release.failed")
                log_event(
                    "campaign_fingerprint_release_failed",
                    level=logging.WARNING,
                    request_id=request_id,
                    tenant_id=tenant_id,
                    fingerprint=fingerprint,
                    error=str(exc),
                )

    def prepare(
        self,
        tenant_id: str,
        request: BulkSendRequest,
        *,
        request_id: str | None = None,
    ) -> PreparedCampaign:
        """Validate, gate duplicates and check credit; nothing is sent or billed here."""
        recipients = validate_dispatch_request(
            request.recipients,
            concurrency=request.concurrency,
            max_attempts=request.max_attempts,
        )
        template = self.templates.get(tenant_id, request.template_name, request.language_code)
        channel = self.channels.get_active_channel(tenant_id, request.provider)
        unit_price = self.credits.unit_price(tenant_id, template.category)

        overrides = {
            normalize_recipient(item.recipient): item.variables for item in request.recipient_variables
        }
        plans: list[RecipientPlan] = []
        recorded: list[str] = []
        try:
            for index, recipient in enumerate(recipients):
                variables = {**request.variables, **overrides.get(recipient, {})}
                check = self.duplicates.check(tenant_id, template.name, recipient, variables)
                plans.append(
                    RecipientPlan(
                        index=index,
                        recipient=recipient,
                        variables=variables,
                        fingerprint=check.fingerprint,
                        duplicate=check.is_duplicate,
                    )
                )
                if not check.is_duplicate:
                    recorded.append(check.fingerprint)

            required = round_credits(unit_price * len(plans))
            available = self.credits.balance(tenant_id)
            if available < required:
                incr_metric("campaigns.rejected", reason="insufficient_credit")
                log_event(
                    "campaign_rejected_insufficient_credit",
                    level=logging.WARNING,
                    request_id=request_id,
                    tenant_id=tenant_id,
                    template_name=template.name,
                    required=required,
                    available=available,
                )
                raise InsufficientCreditError(required=required, available=available)
        except Exception:
            self._release(tenant_id, recorded, request_id)
            raise

        return PreparedCampaign(
            tenant_id=tenant_id,
            campaign_name=request.campaign_name or _default_campaign_name(template.name),
            template=template,
            channel=channel,
            unit_price=unit_price,
            plans=plans,
            concurrency=request.concurrency,
            max_attempts=request.max_attempts,
            header_text=request.header_text,
            header_media=request.header_media,
            button_urls=request.button_urls,
            request_id=request_id,
        )

    def _deduct(
        self,
        prepared: PreparedCampaign,
        count: int,
        transaction_type: str,
        description: str,
    ) -> tuple[float, str | None]:
        if count <= 0:
            return 0.0, None
        try:
            deduction = self.credits.deduct(
                prepared.tenant_id,
                prepared.unit_price * count,
                transaction_type=transaction_type,  # type: ignore[arg-type]
                template_category=prepared.template.category,
                template_name=prepared.template.name,
                campaign_name=prepared.campaign_name,
                description=description,
            )
        except CreditLedgerError as exc:
            log_event(
                "campaign_billing_failed",
                level=logging.ERROR,
                request_id=prepared.request_id,
                tenant_id=prepared.tenant_id,
                campaign_name=prepared.campaign_name,
                transaction_type=transaction_type,
                count=count,
                error=str(exc),
            )
            return 0.0, str(exc)
        if not deduction.success:
            return 0.0, f"{transaction_type} deduction rejected by the credit ledger"
        return deduction.amount, None

    def execute(
        self,
        prepared: PreparedCampaign,
        plans: list[RecipientPlan] | None = None,
        *,
        job_id: str | None = None,
        on_outcome: Callable[[RecipientOutcome], None] | None = None,
    ) -> CampaignSendResult:
        plans = prepared.plans if plans is None else plans
        duplicate_plans = [plan for plan in plans if plan.duplicate]
        send_plans = [plan for plan in plans if not plan.duplicate]
        outcomes: list[RecipientOutcome] = []
        credits_deducted = 0.0
        billing_errors: list[str] = []

        if duplicate_plans:
            amount, error = self._deduct(
                prepared,
                len(duplicate_plans),
                "DEDUCTION_DUPLICATE_BLOCKED",
                f"Duplicate sends blocked for {prepared.template.name}",
            )
            credits_deducted += amount
            if error:
                billing_errors.append(error)
            for plan in duplicate_plans:
                outcome = RecipientOutcome(
                    index=plan.index,
                    recipient=plan.recipient,
                    ok=False,
                    error_code=DUPLICATE_BLOCKED,
                    error_message=_DUPLICATE_MESSAGE,
                )
                outcomes.append(outcome)
                if on_outcome is not None:
                    on_outcome(outcome)

        succeeded = 0
        failed = 0
        if send_plans:
            send = self.send_factory(prepared.channel, prepared.template)

            def _components(position: int, _recipient: str) -> list[dict[str, Any]]:
                return build_template_components(
                    prepared.template.components,
                    send_plans[position].variables,
                    header_text=prepared.header_text,
                    header_media=prepared.header_media,
                    button_urls=prepared.button_urls,
                )

            def _metadata(position: int, _recipient: str) -> dict[str, Any]:
                metadata: dict[str, Any] = {
                    "recipient_index": send_plans[position].index,
                    "variables": send_plans[position].variables,
                }
                if job_id:
                    metadata["job_id"] = job_id
                return metadata

            def _forward(outcome: RecipientOutcome) -> None:
                if on_outcome is not None:
                    on_outcome(replace(outcome, index=send_plans[outcome.index].index))

            dispatch = self.dispatcher.dispatch(
                prepared.tenant_id,
                [plan.recipient for plan in send_plans],
                send,
                meta=SendMeta(
                    campaign_name=prepared.campaign_name,
                    template_name=prepared.template.name,
                    language_code=prepared.template.language,
                    provider=prepared.channel.provider,
                    provider_channel_ref=prepared.channel.channel_ref or prepared.channel.phone_number_id,
                ),
                components_for=_components,
                metadata_for=_metadata,
                on_outcome=_forward,
                concurrency=prepared.concurrency,
                max_attempts=prepared.max_attempts,
                request_id=prepared.request_id,
            )
            succeeded = dispatch.succeeded
            failed = dispatch.failed
            unsent: list[str] = []
            for outcome in dispatch.results:
                plan = send_plans[outcome.index]
                outcomes.append(replace(outcome, index=plan.index))
                if not outcome.ok and outcome.message_id is None:
                    unsent.append(plan.fingerprint)

            amount, error = self._deduct(
                prepared,
                succeeded,
                "DEDUCTION_BULK_DELIVERED",
                f"Bulk send of {prepared.template.name} to {succeeded} recipient(s)",
            )
            credits_deducted += amount
            if error:
                billing_errors.append(error)
            self._release(prepared.tenant_id, unsent, prepared.request_id)

        outcomes.sort(key=lambda outcome: outcome.index)
        result = CampaignSendResult(
            campaign_name=prepared.campaign_name,
            total=len(plans),
            succeeded=succeeded,
            failed=failed,
            duplicates=len(duplicate_plans),
            credits_deducted=round_credits(credits_deducted),
            results=outcomes,
            billing_error="; ".join(billing_errors) or None,
        )
        incr_metric("campaigns.executed", provider=prepared.channel.provider, mode="job" if job_id else "sync")
        log_event(
            "campaign_executed",
            request_id=prepared.request_id,
            tenant_id=prepared.tenant_id,
            campaign_name=prepared.campaign_name,
            job_id=job_id,
            total=result.total,
            succeeded=result.succeeded,
            failed=result.failed,
            duplicates=result.duplicates,
            credits_deducted=result.credits_deducted,
        )
        return result

    def submit_job(self, prepared: PreparedCampaign) -> BulkJob:
        if self.jobs is None or self.job_queue is None:
            raise RuntimeError("job mode requires a job registry and a job queue")
        job = self.jobs.create(prepared.tenant_id, prepared.campaign_name, prepared.total)
        try:
            self.job_queue.submit(self._run_job, self.jobs, prepared, job.job_id)
        except QueueFullError as exc:
            self.jobs.finish(job.job_id, error=str(exc))
            self._release(
                prepared.tenant_id,
                [plan.fingerprint for plan in prepared.plans if not plan.duplicate],
                prepared.request_id,
            )
            raise
        log_event(
            "campaign_job_queued",
            request_id=prepared.request_id,
            tenant_id=prepared.tenant_id,
            job_id=job.job_id,
            campaign_name=prepared.campaign_name,
            total=prepared.total,
        )
        return job

    def _notify(self, tenant_id: str, event: dict[str, Any]) -> None:
        if self.notifications is not None:
            self.notifications.publish(tenant_id, event)

    def _run_job(self, jobs: BulkJobRegistry, prepared: PreparedCampaign, job_id: str) -> BulkJob:
        jobs.mark_running(job_id)
        batches = [
            prepared.plans[start : start + self.job_batch_size]
            for start in range(0, len(prepared.plans), self.job_batch_size)
        ]
        # Recipient indexes the provider acknowledged.
        acknowledged: set[int] = set()

        def _publish_outcome(outcome: RecipientOutcome) -> None:
            if outcome.message_id is not None:
                acknowledged.add(outcome.index)
            self._notify(
                prepared.tenant_id,
                {
                    "type": "status",
                    "job_id": job_id,
                    "message_id": outcome.message_id,
                    "status": "sent" if outcome.ok else "failed",
                    "recipient": outcome.recipient,
                    "error_code": outcome.error_code,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
            )

        for batch_index, batch in enumerate(batches):
            try:
                result = self.execute(prepared, batch, job_id=job_id, on_outcome=_publish_outcome)
            except Exception as exc:
                job = jobs.finish(job_id, error=f"batch {batch_index + 1} failed: {exc}")
                incr_metric("campaigns.jobs.failed")
                log_event(
                    "campaign_job_failed",
                    level=logging.ERROR,
                    request_id=prepared.request_id,
                    tenant_id=prepared.tenant_id,
                    job_id=job_id,
                    batch=batch_index + 1,
                    error=str(exc),
                )
                self._release(
                    prepared.tenant_id,
                    [
                        plan.fingerprint
                        for pending in batches[batch_index:]
                        for plan in pending
                        if not plan.duplicate and plan.index not in acknowledged
                    ],
                    prepared.request_id,
                )
                self._notify(
                    prepared.tenant_id,
                    {"type": "job_completed", "job_id": job_id, "status": job.status, "error": job.error},
                )
                return job

            job = jobs.record_batch(
                job_id,
                succeeded=result.succeeded,
                failed=result.failed,
                duplicates=result.duplicates,
                credits_deducted=result.credits_deducted,
                results=result.results,
                billing_error=result.billing_error,
            )
            self._notify(
                prepared.tenant_id,
                {
                    "type": "job_progress",
                    "job_id": job_id,
                    "batch": batch_index + 1,
                    "batches": len(batches),
                    "processed": job.processed,
                    "total": job.total,
                    "succeeded": job.succeeded,
                    "failed": job.failed,
                    "duplicates": job.duplicates,
                },
            )
            if batch_index < len(batches) - 1 and self.job_batch_pause_seconds > 0:
                self.sleep(self.job_batch_pause_seconds)

        job = jobs.finish(job_id)
        incr_metric("campaigns.jobs.finished", status=job.status)
        log_event(
            "campaign_job_finished",
            request_id=prepared.request_id,
            tenant_id=prepared.tenant_id,
            job_id=job_id,
            status=job.status,
            succeeded=job.succeeded,
            failed=job.failed,
            duplicates=job.duplicates,
            credits_deducted=job.credits_deducted,
        )
        self._notify(
            prepared.tenant_id,
            {
                "type": "job_completed",
                "job_id": job_id,
                "status": job.status,
                "succeeded": job.succeeded,
                "failed": job.failed,
                "duplicates": job.duplicates,
            },
        )
        return job
