from __future__ import annotations

import json
from typing import Any

import httpx

from src.domain.provider_errors import ProviderSendError, looks_like_template_mismatch, parse_retry_after
from src.providers.meta.client import build_template_payload


D360_API_BASE = "https://waba-v2.360dialog.io"
_EP_MESSAGES = "/messages"


class Dialog360ProviderError(ProviderSendError):
    """Provider-level exception for 360dialog send failures."""

    provider = "360dialog"


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:500]


def _raise_for_failure(response: httpx.Response) -> None:
    status_code = response.status_code
    body = _response_body(response)
    message = f"360dialog API returned HTTP {status_code}"

    if status_code in {401, 403}:
        raise Dialog360ProviderError(message, code="INVALID_CREDENTIAL", status_code=status_code, details=body)
    if status_code == 400:
        code = "TEMPLATE_PARAM_MISMATCH" if looks_like_template_mismatch(json.dumps(body, default=str)) else "BAD_REQUEST"
        raise Dialog360ProviderError(message, code=code, status_code=status_code, details=body)
    if status_code == 429:
        raise Dialog360ProviderError(
            message,
            code="RATE_LIMITED",
            status_code=status_code,
            retry_after_seconds=parse_retry_after(response.headers.get("Retry-After")),
            details=body,
        )
    if status_code >= 500:
        raise Dialog360ProviderError(message, code="RETRYABLE", status_code=status_code, details=body)
    raise Dialog360ProviderError(message, code="BAD_REQUEST", status_code=status_code, details=body)


def _post_json(
    *,
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any],
    timeout_seconds: float,
) -> httpx.Response:
    with httpx.Client(timeout=timeout_seconds) as client:
        return client.post(url, headers=headers, json=payload)


def send_template_message(
    api_key: str,
    *,
    recipient: str,
    template_name: str,
    language_code: str,
    components: list[dict[str, Any]] | None = None,
    base_url: str | None = None,
    timeout_seconds: float = 30.0,
) -> dict[str, Any]:
    if not api_key or not api_key.strip():
        raise Dialog360ProviderError("Missing 360dialog API key", code="INVALID_CREDENTIAL")

    url = f"{(base_url or D360_API_BASE).rstrip('/')}{_EP_MESSAGES}"
    headers = {
        "D360-API-KEY": api_key,
        "Content-Type": "application/json",
    }
    payload = build_template_payload(
        recipient=recipient,
        template_name=template_name,
        language_code=language_code,
        components=components,
    )
    try:
        response = _post_json(url=url, headers=headers, payload=payload, timeout_seconds=timeout_seconds)
    except httpx.HTTPError as exc:
        raise Dialog360ProviderError(f"360dialog connectivity error: {exc}", code="RETRYABLE") from exc

    if response.status_code >= 400:
        _raise_for_failure(response)

    try:
        data = response.json()
    except ValueError as exc:
        raise Dialog360ProviderError("360dialog returned non-JSON response", status_code=response.status_code) from exc

    messages = data.get("messages") if isinstance(data, dict) else None
    if not messages or not isinstance(messages[0], dict) or not messages[0].get("id"):
        raise Dialog360ProviderError(
            "Unexpected response format from 360dialog API", status_code=response.status_code, details=data
        )
    return {"message_id": str(messages[0]["id"]), "raw": data}
