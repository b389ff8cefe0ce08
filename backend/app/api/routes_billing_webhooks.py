from __future__ import annotations

import hashlib
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.billing import service as billing_service
from app.domain.billing.errors import MissingFieldError
from app.domain.billing.events import parse_envelope
from app.domain.billing.notifications import BillingNotifier
from app.infra import stripe_client as stripe_infra
from app.infra.db import get_db_session
from app.infra.email import resolve_app_email_adapter
from app.infra.metrics import metrics
from app.settings import settings

router = APIRouter()
logger = logging.getLogger(__name__)

TRANSIENT_DETAIL = "Transient billing event error - will retry"


def _stripe_client(request: Request):
    if getattr(request.app.state, "stripe_client", None):
        return request.app.state.stripe_client
    services = getattr(request.app.state, "services", None)
    if services and getattr(services, "stripe_client", None):
        return services.stripe_client
    return stripe_infra.resolve_client(request.app.state)


def _notifier(request: Request) -> BillingNotifier:
    services = getattr(request.app.state, "services", None)
    adapter = resolve_app_email_adapter(request)
    notifier = getattr(services, "notifier", None) if services else None
    if notifier is not None and notifier.email_adapter is adapter:
        return notifier
    return BillingNotifier(adapter)


def signature_fingerprint(signature: str | None) -> str | None:
    """Timestamp plus a short digest; enough to correlate attempts without logging the HMAC."""
    if not signature:
        return None
    timestamp = None
    for part in signature.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
            break
    digest = hashlib.sha256(signature.encode()).hexdigest()[:12]
    return f"t={timestamp or '?'};sha256={digest}"


def _log_invalid_signature(request: Request, signature: str | None, exc: Exception) -> None:
    client_ip = request.client.host if request.client else None
    logger.warning(
        "billing_webhook_signature_invalid",
        extra={
            "extra": {
                "client_ip": client_ip,
                "user_agent": request.headers.get("User-Agent"),
                "signature_fingerprint": signature_fingerprint(signature),
                "stripe_signature": signature,
                "reason": type(exc).__name__,
            }
        },
    )


async def _billing_webhook_handler(http_request: Request, session: AsyncSession) -> dict[str, Any]:
    payload = await http_request.body()
    signature = http_request.headers.get("Stripe-Signature")
    if not settings.stripe_webhook_secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Billing webhook disabled")

    outcome = "error"
    try:
        stripe_client = _stripe_client(http_request)
        try:
            raw_event = await stripe_infra.call_stripe_client_method(
                stripe_client, "verify_webhook", payload=payload, signature=signature
            )
        except Exception as exc:  # noqa: BLE001
            metrics.record_webhook_error("invalid_signature")
            _log_invalid_signature(http_request, signature, exc)
            outcome = "invalid_signature"
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid Stripe webhook") from exc

        try:
            event = parse_envelope(raw_event)
        except MissingFieldError as exc:
            metrics.record_webhook_error("missing_event_id")
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing event id or type") from exc

        result = await billing_service.ingest_event(
            session,
            event,
            stripe_client=stripe_client,
            notifier=_notifier(http_request),
        )
        outcome = result.outcome.value
        if result.should_retry:
            metrics.record_webhook_error("transient")
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=TRANSIENT_DETAIL)
        return result.response_body()
    finally:
        metrics.record_stripe_webhook(outcome)


@router.post("/v1/billing/stripe/webhook", status_code=status.HTTP_200_OK)
async def billing_stripe_webhook(
    http_request: Request, session: AsyncSession = Depends(get_db_session)
) -> dict[str, Any]:
    return await _billing_webhook_handler(http_request, session)


@router.post("/api/webhooks/stripe", status_code=status.HTTP_200_OK)
async def legacy_billing_stripe_webhook(
    http_request: Request, session: AsyncSession = Depends(get_db_session)
) -> dict[str, Any]:
    return await _billing_webhook_handler(http_request, session)
