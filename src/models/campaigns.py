from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from src.models.campaign_logs import CampaignLogEntry


BulkJobStatus = Literal["queued", "running", "completed", "failed"]


class RecipientVariables(BaseModel):
    recipient: str
    variables: dict[str, str] = Field(default_factory=dict)


class BulkSendRequest(BaseModel):
    template_name: str = Field(min_length=1)
    language_code: str | None = None
    provider: Literal["meta", "360dialog"] | None = None
    campaign_name: str | None = None
    recipients: list[str] = Field(default_factory=list)
    variables: dict[str, str] = Field(default_factory=dict)
    recipient_variables: list[RecipientVariables] = Field(default_factory=list)
    header_text: str | None = None
    header_media: str | None = None
    button_urls: list[str] | None = None
    concurrency: int = 10
    max_attempts: int = 4

    model_config = {
        "json_schema_extra": {
            "example": {
                "template_name": "order_update",
                "language_code": "en_US",
                "campaign_name": "October order updates",
                "recipients": ["919876543210", "+1 (415) 555-0100"],
                "variables": {"1": "Asha", "2": "#4512"},
                "concurrency": 10,
                "max_attempts": 4,
            }
        }
    }


class RecipientResultItem(BaseModel):
    index: int
    recipient: str
    status: Literal["sent", "failed", "duplicate_blocked"]
    message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    attempts: int = 0


class BulkSendResponse(BaseModel):
    mode: Literal["sync"] = "sync"
    campaign_name: str
    total: int
    succeeded: int
    failed: int
    duplicates: int
    credits_deducted: float
    billing_error: str | None = None
    results: list[RecipientResultItem]


class BulkJobResponse(BaseModel):
    mode: Literal["job"] = "job"
    job_id: str
    campaign_name: str
    status: BulkJobStatus
    total: int


class BulkJobStatusResponse(BaseModel):
    job_id: str
    campaign_name: str
    status: BulkJobStatus
    total: int
    processed: int
    succeeded: int
    failed: int
    duplicates: int
    credits_deducted: float
    error: str | None = None
    billing_error: str | None = None
    created_at: datetime
    updated_at: datetime
    results: list[RecipientResultItem] = Field(default_factory=list)


class CampaignLogListResponse(BaseModel):
    campaign_name: str
    count: int
    items: list[CampaignLogEntry]
