from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class ChannelNotConfiguredError(Exception):
    """The tenant has no active sending channel."""


@dataclass
class TenantChannel:
    """Credentials and routing for one tenant's WhatsApp sending channel."""
    id: str
    tenant_id: str
    provider: str  # "meta" or "360dialog"
    channel_ref: str | None = None
    phone_number_id: str | None = None
    access_token: str | None = None
    api_key: str | None = None
    app_secret: str | None = None
    waba_id: str | None = None


_CHANNEL_FIELDS = "id, tenant_id, provider, channel_ref, phone_number_id, access_token, api_key, app_secret, waba_id"


def _to_channel(row: dict[str, Any]) -> TenantChannel:
    return TenantChannel(
        id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        provider=row["provider"],
        channel_ref=row.get("channel_ref"),
        phone_number_id=row.get("phone_number_id"),
        access_token=row.get("access_token"),
        api_key=row.get("api_key"),
        app_secret=row.get("app_secret"),
        waba_id=row.get("waba_id"),
    )


class ChannelDirectory:
    """Looks up tenant channels in the `tenant_channels` table."""

    table_name = "tenant_channels"

    def __init__(self, client: Any) -> None:
        self.client = client

    def get_active_channel(self, tenant_id: str, provider: str | None = None) -> TenantChannel:
        query = (
            self.client.table(self.table_name)
            .select(_CHANNEL_FIELDS)
            .eq("tenant_id", tenant_id)
            .eq("is_active", True)
        )
        if provider:
            query = query.eq("provider", provider)
        result = query.execute()
        if not result.data:
            raise ChannelNotConfiguredError(f"No active WhatsApp channel configured for tenant {tenant_id}")
        return _to_channel(result.data[0])

    def find_by_reference(self, provider: str, reference: str | None) -> TenantChannel | None:
        """Match a webhook's phone number id (or gateway channel id) to a tenant channel."""
        if not reference:
            return None
        for column in ("phone_number_id", "channel_ref"):
            result = (
                self.client.table(self.table_name)
                .select(_CHANNEL_FIELDS)
                .eq("provider", provider)
                .eq(column, reference)
                .eq("is_active", True)
                .execute()
            )
            if result.data:
                return _to_channel(result.data[0])
        return None
