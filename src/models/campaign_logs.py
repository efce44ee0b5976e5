from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from src.domain.normalization import CanonicalStatus


WEBHOOK_ONLY_CAMPAIGN = "webhook_only"
UNKNOWN_TEMPLATE = "unknown"


class CampaignLogEntry(BaseModel):
    id: str
    tenant_id: str
    campaign_name: str
    template_name: str
    language_code: str | None = None
    provider: str | None = None
    provider_channel_ref: str | None = None
    recipient_number: str
    message_id: str | None = None
    status: CanonicalStatus
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    read_at: datetime | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SendMeta(BaseModel):
    """Dispatch-owned fields written alongside a send outcome."""

    campaign_name: str
    template_name: str
    language_code: str | None = None
    provider: str | None = None
    provider_channel_ref: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
