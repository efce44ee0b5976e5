from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from src.auth import TenantContext, get_tenant_context
from src.config import settings
from src.models.campaigns import (
    BulkJobResponse,
    BulkJobStatusResponse,
    BulkSendRequest,
    BulkSendResponse,
    CampaignLogListResponse,
    RecipientResultItem,
)
from src.observability import incr_metric, log_event
from src.services.background import QueueFullError
from src.services.campaign_logs import CampaignLogStorageError, CampaignLogStore
from src.services.campaigns import DUPLICATE_BLOCKED, CampaignService
from src.services.channels import ChannelNotConfiguredError
from src.services.container import get_campaign_log_store, get_campaign_service, get_job_registry
from src.services.credits import CreditLedgerError, InsufficientCreditError
from src.services.dispatcher import DispatchValidationError, RecipientOutcome
from src.services.duplicates import DuplicateStoreError
from src.services.jobs import BulkJobRegistry
from src.services.templates import TemplateNotFoundError


router = APIRouter(prefix="/api/campaigns", tags=["campaigns"])


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _result_item(outcome: RecipientOutcome) -> RecipientResultItem:
    if outcome.ok:
        item_status = "sent"
    elif outcome.error_code == DUPLICATE_BLOCKED:
        item_status = "duplicate_blocked"
    else:
        item_status = "failed"
    return RecipientResultItem(
        index=outcome.index,
        recipient=outcome.recipient,
        status=item_status,
        message_id=outcome.message_id,
        error_code=outcome.error_code,
        error_message=outcome.error_message,
        attempts=outcome.attempts,
    )


@router.post("/send", response_model=BulkSendResponse | BulkJobResponse)
def send_campaign(
    data: BulkSendRequest,
    request: Request,
    response: Response,
    tenant: TenantContext = Depends(get_tenant_context),
    service: CampaignService = Depends(get_campaign_service),
):
    """Send a template to up to 10,000 recipients; large lists run as a background job."""
    req_id = _request_id(request)
    try:
        prepared = service.prepare(tenant.tenant_id, data, request_id=req_id)
    except DispatchValidationError as exc:
        incr_metric("campaigns.rejected", reason="validation")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"type": "validation_error", "message": str(exc), "errors": exc.errors},
        ) from exc
    except TemplateNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ChannelNotConfiguredError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except InsufficientCreditError as exc:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "type": "insufficient_credit",
                "message": str(exc),
                "required": exc.required,
                "available": exc.available,
            },
        ) from exc
    except (CreditLedgerError, DuplicateStoreError) as exc:
        log_event(
            "campaign_prepare_failed",
            level=logging.ERROR,
            request_id=req_id,
            tenant_id=tenant.tenant_id,
            error=str(exc),
        )
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if prepared.total > settings.sync_dispatch_max_recipients:
        try:
            job = service.submit_job(prepared)
        except QueueFullError as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Bulk job queue is full, retry later",
            ) from exc
        response.status_code = status.HTTP_202_ACCEPTED
        return BulkJobResponse(
            job_id=job.job_id,
            campaign_name=job.campaign_name,
            status=job.status,
            total=job.total,
        )

    result = service.execute(prepared)
    return BulkSendResponse(
        campaign_name=result.campaign_name,
        total=result.total,
        succeeded=result.succeeded,
        failed=result.failed,
        duplicates=result.duplicates,
        credits_deducted=result.credits_deducted,
        billing_error=result.billing_error,
        results=[_result_item(outcome) for outcome in result.results],
    )


@router.get("/jobs/{job_id}", response_model=BulkJobStatusResponse)
async def get_campaign_job(
    job_id: str,
    tenant: TenantContext = Depends(get_tenant_context),
    jobs: BulkJobRegistry = Depends(get_job_registry),
):
    job = jobs.get(tenant.tenant_id, job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return BulkJobStatusResponse(
        job_id=job.job_id,
        campaign_name=job.campaign_name,
        status=job.status,
        total=job.total,
        processed=job.processed,
        succeeded=job.succeeded,
        failed=job.failed,
        duplicates=job.duplicates,
        credits_deducted=job.credits_deducted,
        error=job.error,
        billing_error=job.billing_error,
        created_at=job.created_at,
        updated_at=job.updated_at,
        results=[_result_item(outcome) for outcome in job.results],
    )


@router.get("/{campaign_name}/logs", response_model=CampaignLogListResponse)
def list_campaign_logs(
    campaign_name: str,
    limit: int = Query(default=500, ge=1, le=5000),
    tenant: TenantContext = Depends(get_tenant_context),
    store: CampaignLogStore = Depends(get_campaign_log_store),
):
    try:
        items = store.list_for_campaign(tenant.tenant_id, campaign_name, limit=limit)
    except CampaignLogStorageError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return CampaignLogListResponse(campaign_name=campaign_name, count=len(items), items=items)
