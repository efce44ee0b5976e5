from __future__ import annotations

from functools import lru_cache

from src.config import settings
from src.db import supabase
from src.models.webhooks import CanonicalStatusEvent
from src.providers.resolver import SendFunction, build_send_function
from src.services.background import BackgroundTaskQueue
from src.services.campaign_logs import CampaignLogStore
from src.services.campaigns import CampaignService
from src.services.channels import ChannelDirectory, TenantChannel
from src.services.credits import SupabaseCreditLedger
from src.services.dispatcher import BulkDispatcher
from src.services.duplicates import DuplicateDetector
from src.services.jobs import BulkJobRegistry
from src.services.notifications import NotificationHub
from src.services.reconciliation import StatusReconciliationEngine
from src.services.templates import MessageTemplate, TemplateLookup
from src.services.webhook_receiver import WebhookReceiver


@lru_cache
def get_campaign_log_store() -> CampaignLogStore:
    return CampaignLogStore(supabase, cas_attempts=settings.ledger_cas_attempts)


@lru_cache
def get_channel_directory() -> ChannelDirectory:
    return ChannelDirectory(supabase)


@lru_cache
def get_notification_hub() -> NotificationHub:
    return NotificationHub(max_queue=settings.notification_queue_size)


@lru_cache
def get_reconciliation_engine() -> StatusReconciliationEngine:
    return StatusReconciliationEngine(get_campaign_log_store(), get_notification_hub())


@lru_cache
def get_job_registry() -> BulkJobRegistry:
    return BulkJobRegistry()


def _tenant_resolver(provider: str):
    def _resolve(event: CanonicalStatusEvent) -> str | None:
        channel = get_channel_directory().find_by_reference(provider, event.channel_ref)
        if channel is not None:
            return channel.tenant_id
        return get_campaign_log_store().find_tenant_for_message(event.provider_message_id)

    return _resolve


def _build_receiver(provider: str) -> WebhookReceiver:
    return WebhookReceiver(
        provider,
        get_reconciliation_engine(),
        _tenant_resolver(provider),
        ring_size=settings.webhook_ring_size,
        workers=settings.webhook_worker_count,
        queue_size=settings.webhook_queue_size,
        debug_rate_limit_per_minute=settings.webhook_debug_rate_limit_per_minute,
    )


@lru_cache
def get_meta_receiver() -> WebhookReceiver:
    return _build_receiver("meta")


@lru_cache
def get_dialog360_receiver() -> WebhookReceiver:
    return _build_receiver("360dialog")


def _send_factory(channel: TenantChannel, template: MessageTemplate) -> SendFunction:
    return build_send_function(
        channel,
        template_name=template.name,
        language_code=template.language,
        timeout_seconds=settings.provider_timeout_seconds,
        meta_api_base=settings.meta_graph_api_base,
        meta_api_version=settings.meta_graph_api_version,
        d360_api_base=settings.d360_api_base,
    )


@lru_cache
def get_campaign_service() -> CampaignService:
    return CampaignService(
        channels=get_channel_directory(),
        templates=TemplateLookup(supabase),
        credits=SupabaseCreditLedger(supabase),
        duplicates=DuplicateDetector(supabase, window_seconds=settings.duplicate_window_seconds),
        dispatcher=BulkDispatcher(
            get_campaign_log_store(),
            retry_base_delay_seconds=settings.bulk_retry_base_delay_seconds,
            retry_max_delay_seconds=settings.bulk_retry_max_delay_seconds,
            ledger_write_attempts=settings.ledger_write_attempts,
        ),
        send_factory=_send_factory,
        jobs=get_job_registry(),
        job_queue=BackgroundTaskQueue("bulk-jobs", workers=settings.job_worker_count, capacity=settings.job_queue_size),
        notifications=get_notification_hub(),
        job_batch_size=settings.job_batch_size,
        job_batch_pause_seconds=settings.job_batch_pause_seconds,
    )
