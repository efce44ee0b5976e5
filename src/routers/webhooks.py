from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse

from src.config import settings
from src.domain.webhook_payloads import extract_channel_ref
from src.models.webhooks import WebhookDebugResponse
from src.observability import incr_metric, log_event
from src.services.background import QueueFullError
from src.services.channels import ChannelDirectory
from src.services.container import get_channel_directory, get_dialog360_receiver, get_meta_receiver
from src.services.webhook_receiver import WebhookReceiver


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _client_key(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _parse_json(raw_body: bytes) -> dict[str, Any] | None:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def _signature_matches(raw_body: bytes, signature_header: str, secret: str) -> bool:
    computed = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    provided = signature_header.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]
    return hmac.compare_digest(computed, provided.lower())


def _candidate_app_secrets(tenant_secret: str | None) -> list[tuple[str, str]]:
    candidates = [
        ("tenant", tenant_secret),
        ("global", settings.meta_app_secret),
        ("global_2", settings.meta_app_secret_2),
    ]
    return [(source, secret) for source, secret in candidates if secret]


def _verify_meta_signature_or_raise(
    *,
    raw_body: bytes,
    signature_header: str | None,
    tenant_secret: str | None,
    request_id: str | None,
) -> str:
    if settings.meta_skip_signature_verify and settings.environment == "development":
        log_event("meta_webhook_signature_skipped", level=logging.WARNING, request_id=request_id)
        return "skipped"
    if not signature_header:
        incr_metric("webhook.signature.rejected", provider="meta", reason="missing")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing webhook signature")
    candidates = _candidate_app_secrets(tenant_secret)
    if not candidates:
        incr_metric("webhook.signature.rejected", provider="meta", reason="no_secret")
        log_event("meta_webhook_no_app_secret", level=logging.ERROR, request_id=request_id)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")
    for source, secret in candidates:
        if _signature_matches(raw_body, signature_header, secret):
            return source
    incr_metric("webhook.signature.rejected", provider="meta", reason="mismatch")
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")


def _verify_basic_auth_or_raise(authorization: str | None) -> None:
    user = settings.d360_webhook_basic_user
    password = settings.d360_webhook_basic_pass
    if not user or not password:
        return
    unauthorized = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": 'Basic realm="360dialog-webhook"'},
    )
    if not authorization or not authorization.lower().startswith("basic "):
        incr_metric("webhook.auth.rejected", provider="360dialog", reason="missing")
        raise unauthorized
    try:
        decoded = base64.b64decode(authorization.split(" ", 1)[1].strip()).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        incr_metric("webhook.auth.rejected", provider="360dialog", reason="malformed")
        raise unauthorized from None
    provided_user, _, provided_pass = decoded.partition(":")
    user_ok = hmac.compare_digest(provided_user, user)
    pass_ok = hmac.compare_digest(provided_pass, password)
    if not (user_ok and pass_ok):
        incr_metric("webhook.auth.rejected", provider="360dialog", reason="mismatch")
        raise unauthorized


def _accept_or_raise(receiver: WebhookReceiver, payload: dict[str, Any], request_id: str | None) -> None:
    try:
        receiver.accept(payload, request_id=request_id)
    except QueueFullError as exc:
        incr_metric("webhook.events.rejected", provider=receiver.provider, reason="queue_full")
        log_event(
            "webhook_queue_full",
            level=logging.ERROR,
            request_id=request_id,
            provider=receiver.provider,
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook queue is full, retry later",
        ) from exc


@router.get("/meta")
async def verify_meta_webhook(
    hub_mode: str | None = Query(None, alias="hub.mode"),
    hub_verify_token: str | None = Query(None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(None, alias="hub.challenge"),
):
    expected = settings.meta_verify_token
    if (
        hub_mode == "subscribe"
        and expected
        and hub_verify_token
        and hmac.compare_digest(hub_verify_token, expected)
        and hub_challenge is not None
    ):
        log_event("meta_webhook_verified")
        return PlainTextResponse(hub_challenge)
    incr_metric("webhook.verification.rejected", provider="meta")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Webhook verification failed")


@router.post("/meta")
async def ingest_meta_webhook(
    request: Request,
    receiver: WebhookReceiver = Depends(get_meta_receiver),
    channels: ChannelDirectory = Depends(get_channel_directory),
):
    req_id = _request_id(request)
    raw_body = await request.body()
    incr_metric("webhook.events.received", provider="meta")
    payload = _parse_json(raw_body)

    tenant_secret = None
    channel_ref = extract_channel_ref(payload) if payload else None
    if channel_ref:
        channel = channels.find_by_reference("meta", channel_ref)
        tenant_secret = channel.app_secret if channel else None

    secret_source = _verify_meta_signature_or_raise(
        raw_body=raw_body,
        signature_header=request.headers.get("X-Hub-Signature-256"),
        tenant_secret=tenant_secret,
        request_id=req_id,
    )

    if payload is None:
        incr_metric("webhook.events.ignored", provider="meta", reason="invalid_json")
        log_event("webhook_invalid_json", level=logging.WARNING, request_id=req_id, provider="meta")
        receiver.record(None, request_id=req_id, note="invalid JSON")
        return {"received": True, "status": "ignored"}

    _accept_or_raise(receiver, payload, req_id)
    log_event(
        "webhook_received",
        request_id=req_id,
        provider="meta",
        channel_ref=channel_ref,
        secret_source=secret_source,
    )
    return {"received": True}


@router.get("/360dialog")
async def verify_dialog360_webhook(
    hub_mode: str | None = Query(None, alias="hub.mode"),
    hub_challenge: str | None = Query(None, alias="hub.challenge"),
):
    if hub_mode == "subscribe" and hub_challenge is not None:
        return PlainTextResponse(hub_challenge)
    return PlainTextResponse("360dialog webhook operational")


@router.post("/360dialog")
async def ingest_dialog360_webhook(
    request: Request,
    authorization: str | None = Header(None),
    receiver: WebhookReceiver = Depends(get_dialog360_receiver),
):
    req_id = _request_id(request)
    incr_metric("webhook.events.received", provider="360dialog")
    _verify_basic_auth_or_raise(authorization)

    raw_body = await request.body()
    payload = _parse_json(raw_body)
    if payload is None:
        incr_metric("webhook.events.ignored", provider="360dialog", reason="invalid_json")
        log_event("webhook_invalid_json", level=logging.WARNING, request_id=req_id, provider="360dialog")
        receiver.record(None, request_id=req_id, note="invalid JSON")
        return JSONResponse({"status": "ignored"})

    _accept_or_raise(receiver, payload, req_id)
    log_event("webhook_received", request_id=req_id, provider="360dialog")
    return JSONResponse({"status": "accepted"})


@router.get("/{provider}/debug/recent", response_model=WebhookDebugResponse)
async def list_recent_webhooks(
    provider: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    authorization: str | None = Header(None),
    meta_receiver: WebhookReceiver = Depends(get_meta_receiver),
    dialog360_receiver: WebhookReceiver = Depends(get_dialog360_receiver),
):
    if provider == "meta":
        receiver = meta_receiver
    elif provider == "360dialog":
        receiver = dialog360_receiver
    else:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown provider")

    expected = settings.webhook_debug_token
    token = authorization[7:].strip() if authorization and authorization.lower().startswith("bearer ") else None
    if not expected or not token or not hmac.compare_digest(token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid debug token")
    if not receiver.debug_rate_limiter.allow(_client_key(request)):
        incr_metric("webhook.debug.rate_limited", provider=provider)
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Too many requests")

    items = receiver.recent.recent(limit)
    return WebhookDebugResponse(
        provider=provider,
        capacity=receiver.recent.capacity,
        count=len(items),
        items=items,
    )
