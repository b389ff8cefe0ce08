"""Ingestion pipeline for verified Stripe billing events.

Order of operations per delivery:

1. lock-free duplicate check, closed before any network call;
2. subscription enrichment from Stripe for checkout sessions;
3. durable claim of the event record (committed on its own);
4. ``FOR UPDATE SKIP LOCKED`` on the record inside one transaction that also
   runs the handler and marks the record processed;
5. post-commit callbacks, whose failures never change the outcome.

Failures are classified into transient (provider retries) and permanent
(acknowledged, error stored on the record).
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.billing import ledger
from app.domain.billing.errors import ErrorKind, classify_error
from app.domain.billing.events import BillingEvent, SubscriptionDetails, parse_subscription, safe_get
from app.domain.billing.handlers import HandlerContext, PostCommitCallback
from app.domain.billing.ledger import LockOutcome
from app.domain.billing.notifications import BillingNotifier
from app.domain.billing.router import dispatch
from app.infra.logging import update_log_context
from app.infra.metrics import metrics
from app.infra.stripe_client import call_stripe_client_method

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ENRICHED_EVENT_TYPES = frozenset({"checkout.session.completed"})


class IngestionOutcome(str, enum.Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    CONCURRENT = "concurrent"
    PERMANENT_FAILURE = "permanent_failure"
    TRANSIENT_FAILURE = "transient_failure"


@dataclass(frozen=True)
class IngestionResult:
    outcome: IngestionOutcome
    retried: bool = False
    error_kind: ErrorKind | None = None
    persist_failed: bool = False

    @property
    def should_retry(self) -> bool:
        return self.outcome is IngestionOutcome.TRANSIENT_FAILURE

    def response_body(self) -> dict[str, Any]:
        if self.outcome is IngestionOutcome.DUPLICATE:
            return {"received": True, "duplicate": True}
        if self.outcome is IngestionOutcome.CONCURRENT:
            return {"received": True, "concurrent": True}
        if self.outcome is IngestionOutcome.PERMANENT_FAILURE:
            kind = self.error_kind.value if self.error_kind else ErrorKind.UNEXPECTED.value
            return {"received": True, "error": "Permanent error - not retrying", "kind": kind}
        return {"received": True, "retried": self.retried}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def prefetch_subscription(event: BillingEvent, stripe_client: Any) -> SubscriptionDetails | None:
    """Load the subscription a checkout session refers to, outside any transaction."""
    if event.event_type not in ENRICHED_EVENT_TYPES:
        return None
    raw = safe_get(event.data_object, "subscription")
    if not raw:
        return None
    if isinstance(raw, str):
        fetched = await call_stripe_client_method(stripe_client, "retrieve_subscription", raw)
        return parse_subscription(fetched)
    return parse_subscription(raw)


async def run_post_commit(callback: PostCommitCallback, event: BillingEvent) -> bool:
    try:
        await callback()
    except Exception as exc:  # noqa: BLE001
        logger.exception(
            "billing_post_commit_failed",
            extra={
                "extra": {
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "reason": type(exc).__name__,
                }
            },
        )
        metrics.record_billing_notification(event.event_type, "post_commit_failed")
        return False
    return True


async def _handle_failure(session: AsyncSession, event: BillingEvent, exc: Exception) -> IngestionResult:
    kind = classify_error(exc)
    log_extra = {
        "event_id": event.event_id,
        "event_type": event.event_type,
        "kind": kind.value,
        "transient": kind.transient,
        "reason": type(exc).__name__,
    }
    if kind is ErrorKind.UNEXPECTED:
        logger.exception("billing_event_failed", extra={"extra": log_extra})
    else:
        logger.warning("billing_event_failed", extra={"extra": log_extra})
    metrics.record_billing_event(event.event_type, "transient_error" if kind.transient else "permanent_error")

    try:
        await session.rollback()
        await ledger.record_failure(session, event, f"{kind.value}: {exc}")
        await session.commit()
    except Exception as persist_exc:  # noqa: BLE001
        logger.exception(
            "billing_event_error_persist_failed",
            extra={"extra": {"event_id": event.event_id, "reason": type(persist_exc).__name__}},
        )
        return IngestionResult(IngestionOutcome.TRANSIENT_FAILURE, error_kind=kind, persist_failed=True)

    if kind.transient:
        return IngestionResult(IngestionOutcome.TRANSIENT_FAILURE, error_kind=kind)
    return IngestionResult(IngestionOutcome.PERMANENT_FAILURE, error_kind=kind)


async def ingest_event(
    session: AsyncSession,
    event: BillingEvent,
    *,
    stripe_client: Any,
    notifier: BillingNotifier,
    clock: Callable[[], datetime] = _utcnow,
) -> IngestionResult:
    update_log_context(event_id=event.event_id, event_type=event.event_type)
    with tracer.start_as_current_span("billing.ingest_event") as span:
        span.set_attribute("billing.event_id", event.event_id)
        span.set_attribute("billing.event_type", event.event_type)
        result = await _ingest(session, event, stripe_client=stripe_client, notifier=notifier, clock=clock)
        span.set_attribute("billing.outcome", result.outcome.value)
        return result


async def _ingest(
    session: AsyncSession,
    event: BillingEvent,
    *,
    stripe_client: Any,
    notifier: BillingNotifier,
    clock: Callable[[], datetime],
) -> IngestionResult:
    callback: PostCommitCallback | None = None
    try:
        already_processed = await ledger.is_processed(session, event.event_id)
        await session.commit()
        if already_processed:
            logger.info("billing_event_duplicate", extra={"extra": {"event_id": event.event_id}})
            metrics.record_billing_event(event.event_type, "duplicate")
            return IngestionResult(IngestionOutcome.DUPLICATE)

        subscription_details = await prefetch_subscription(event, stripe_client)

        inserted = await ledger.claim_event(session, event)
        await session.commit()
        retried = not inserted

        async with session.begin():
            lock_outcome, record = await ledger.lock_for_processing(session, event.event_id)
            if lock_outcome is LockOutcome.OWNED:
                ctx = HandlerContext(
                    session=session,
                    event=event,
                    event_record=record,
                    notifier=notifier,
                    now=clock(),
                    subscription_details=subscription_details,
                )
                callback = await dispatch(ctx)
                ledger.mark_processed(record, now=ctx.now)
    except Exception as exc:  # noqa: BLE001
        return await _handle_failure(session, event, exc)

    if lock_outcome is LockOutcome.CONCURRENT:
        logger.info("billing_event_concurrent", extra={"extra": {"event_id": event.event_id}})
        metrics.record_billing_event(event.event_type, "concurrent")
        return IngestionResult(IngestionOutcome.CONCURRENT, retried=retried)
    if lock_outcome is LockOutcome.DUPLICATE:
        logger.info("billing_event_duplicate", extra={"extra": {"event_id": event.event_id}})
        metrics.record_billing_event(event.event_type, "duplicate")
        return IngestionResult(IngestionOutcome.DUPLICATE, retried=retried)

    logger.info(
        "billing_event_processed",
        extra={"extra": {"event_id": event.event_id, "event_type": event.event_type, "retried": retried}},
    )
    if callback is not None:
        await run_post_commit(callback, event)
    return IngestionResult(IngestionOutcome.PROCESSED, retried=retried)
