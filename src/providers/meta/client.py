from __future__ import annotations

import json
from typing import Any

import httpx

from src.domain.provider_errors import ProviderSendError, looks_like_template_mismatch, parse_retry_after


META_GRAPH_API_BASE = "https://graph.facebook.com"
META_GRAPH_API_VERSION = "v22.0"

_RATE_LIMIT_ERROR_CODES = {4, 80007, 130429, 131048, 131056}
_TEMPLATE_ERROR_CODES = {131008, 132000, 132001, 132012}
_AUTH_ERROR_CODES = {190}


class MetaProviderError(ProviderSendError):
    """Provider-level exception for Graph API send failures."""

    provider = "meta"


def build_template_payload(
    *,
    recipient: str,
    template_name: str,
    language_code: str,
    components: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    return {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": recipient,
        "type": "template",
        "template": {
            "name": template_name,
            "language": {"code": language_code},
            "components": components or [],
        },
    }


def _graph_error(body: Any) -> dict[str, Any]:
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"]
    return {}


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:500]


def _raise_for_failure(response: httpx.Response) -> None:
    status_code = response.status_code
    body = _response_body(response)
    error = _graph_error(body)
    error_code = error.get("code")
    message = error.get("message") or f"Graph API returned HTTP {status_code}"
    retry_after = parse_retry_after(response.headers.get("Retry-After"))

    if status_code == 429 or error_code in _RATE_LIMIT_ERROR_CODES:
        raise MetaProviderError(
            message, code="RATE_LIMITED", status_code=status_code, retry_after_seconds=retry_after, details=body
        )
    if status_code >= 500:
        raise MetaProviderError(message, code="RETRYABLE", status_code=status_code, details=body)
    if status_code in {401, 403} or error_code in _AUTH_ERROR_CODES:
        raise MetaProviderError(message, code="INVALID_CREDENTIAL", status_code=status_code, details=body)
    if error_code in _TEMPLATE_ERROR_CODES or looks_like_template_mismatch(json.dumps(body, default=str)):
        raise MetaProviderError(message, code="TEMPLATE_PARAM_MISMATCH", status_code=status_code, details=body)
    raise MetaProviderError(message, code="BAD_REQUEST", status_code=status_code, details=body)


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
    access_token: str,
    phone_number_id: str,
    *,
    recipient: str,
    template_name: str,
    language_code: str,
    components: list[dict[str, Any]] | None = None,
    api_version: str | None = None,
    base_url: str | None = None,
    timeout_seconds: float = 30.0,
) -> dict[str, Any]:
    if not access_token:
        raise MetaProviderError("Missing Graph API access token", code="INVALID_CREDENTIAL")
    if not phone_number_id:
        raise MetaProviderError("Missing phone number id", code="INVALID_CREDENTIAL")

    url = (
        f"{(base_url or META_GRAPH_API_BASE).rstrip('/')}/"
        f"{api_version or META_GRAPH_API_VERSION}/{phone_number_id}/messages"
    )
    headers = {
        "Authorization": f"Bearer {access_token}",
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
        raise MetaProviderError(f"Graph API connectivity error: {exc}", code="RETRYABLE") from exc

    if response.status_code >= 400:
        _raise_for_failure(response)

    try:
        data = response.json()
    except ValueError as exc:
        raise MetaProviderError("Graph API returned non-JSON response", status_code=response.status_code) from exc

    messages = data.get("messages") if isinstance(data, dict) else None
    if not messages or not isinstance(messages[0], dict) or not messages[0].get("id"):
        raise MetaProviderError(
            "Unexpected Graph API send response", status_code=response.status_code, details=data
        )
    return {"message_id": str(messages[0]["id"]), "raw": data}
