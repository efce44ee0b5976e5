from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from src.domain.provider_errors import ProviderSendError
from src.providers.dialog360 import client as dialog360_client
from src.providers.meta import client as meta_client


@dataclass
class ProviderAck:
    message_id: str
    raw: Any = None


SendFunction = Callable[[str, list[dict[str, Any]]], ProviderAck]


def build_send_function(
    channel: Any,
    *,
    template_name: str,
    language_code: str,
    timeout_seconds: float = 30.0,
    meta_api_base: str | None = None,
    meta_api_version: str | None = None,
    d360_api_base: str | None = None,
) -> SendFunction:
    """Return a provider-neutral `send(recipient, components)` for a tenant channel."""
    if channel.provider == "meta":
        def _send_meta(recipient: str, components: list[dict[str, Any]]) -> ProviderAck:
            result = meta_client.send_template_message(
                channel.access_token or "",
                channel.channel_ref or channel.phone_number_id or "",
                recipient=recipient,
                template_name=template_name,
                language_code=language_code,
                components=components,
                api_version=meta_api_version,
                base_url=meta_api_base,
                timeout_seconds=timeout_seconds,
            )
            return ProviderAck(message_id=result["message_id"], raw=result.get("raw"))

        return _send_meta

    if channel.provider == "360dialog":
        def _send_dialog360(recipient: str, components: list[dict[str, Any]]) -> ProviderAck:
            result = dialog360_client.send_template_message(
                channel.api_key or "",
                recipient=recipient,
                template_name=template_name,
                language_code=language_code,
                components=components,
                base_url=d360_api_base,
                timeout_seconds=timeout_seconds,
            )
            return ProviderAck(message_id=result["message_id"], raw=result.get("raw"))

        return _send_dialog360

    raise ProviderSendError(f"Unsupported WhatsApp provider: {channel.provider}", code="INVALID_CREDENTIAL")
