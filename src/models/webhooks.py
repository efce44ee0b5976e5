from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from src.domain.normalization import CanonicalStatus, ProviderSlug


class CanonicalStatusEvent(BaseModel):
    provider: ProviderSlug
    provider_message_id: str
    status: CanonicalStatus
    timestamp: datetime
    recipient: str | None = None
    error_detail: str | None = None
    channel_ref: str | None = None


class WebhookDebugItem(BaseModel):
    received_at: datetime
    provider: ProviderSlug
    summary: str
    request_id: str | None = None
    payload: dict[str, Any] | None = None


class WebhookDebugResponse(BaseModel):
    provider: ProviderSlug
    capacity: int
    count: int
    items: list[WebhookDebugItem] = Field(default_factory=list)
