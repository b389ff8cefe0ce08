"""State handlers for each supported Stripe billing event.

Handlers run inside the ingestion transaction while the event record is locked.
They raise ``TransientProcessingError`` when the event arrived before the rows
it depends on, and ``PermanentProcessingError`` when the payload can never be
applied. A handler may return a callback that runs only after commit.
"""

from __future__ import annotations

import logging
import math
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.billing import events as billing_events
from app.domain.billing.currency import normalize_currency
from app.domain.billing.db_models import (
    BillingCycle,
    Invoice,
    InvoiceStatus,
    PaymentMethod,
    PlanTier,
    Subscription,
    SubscriptionEvent,
    SubscriptionStatus,
)
from app.domain.billing.errors import (
    MissingFieldError,
    PermanentProcessingError,
    TransientProcessingError,
)
from app.domain.billing.ledger import link_event
from app.domain.billing.notifications import (
    BILLING_DATE_FALLBACK,
    DEFAULT_TRIAL_DAYS,
    TRIAL_END_FALLBACK,
    BillingNotifier,
    InvoiceUpcomingNotice,
    TrialEndingNotice,
    format_notice_date,
)
from app.domain.saas.db_models import Organization
from app.domain.saas.service import get_admin_emails
from app.infra.db import dialect_name

logger = logging.getLogger(__name__)

PostCommitCallback = Callable[[], Awaitable[None]]

MAX_DB_INTEGER = 2_147_483_647
CUSTOMER_ID_RE = re.compile(r"^cus_")
KNOWN_BILLING_REASONS = frozenset(
    {
        "subscription_create",
        "subscription_cycle",
        "subscription_update",
        "subscription",
        "manual",
        "upcoming",
        "subscription_threshold",
        "automatic_pending_invoice_item_invoice",
    }
)
MAX_BILLING_REASON_LENGTH = 100
SECONDS_PER_DAY = 86400


@dataclass
class HandlerContext:
    session: AsyncSession
    event: billing_events.BillingEvent
    event_record: SubscriptionEvent
    notifier: BillingNotifier
    now: datetime
    subscription_details: billing_events.SubscriptionDetails | None = None


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes for timezone-aware columns.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _guard_amount(amount: int, field: str) -> int:
    if amount > MAX_DB_INTEGER:
        raise PermanentProcessingError(f"{field} {amount} exceeds the maximum storable amount")
    return amount


def _parse_org_id(raw: str | None) -> uuid.UUID:
    if not raw:
        raise MissingFieldError("Missing organization_id metadata", field="metadata.organization_id")
    try:
        return uuid.UUID(str(raw))
    except ValueError as exc:
        raise PermanentProcessingError(f"Invalid organization_id {raw!r}") from exc


def _parse_choice(enum_cls, raw: str | None, field: str) -> str:  # noqa: ANN001
    if not raw:
        raise MissingFieldError(f"Missing {field} metadata", field=f"metadata.{field}")
    try:
        return enum_cls(raw.strip().lower()).value
    except ValueError as exc:
        raise PermanentProcessingError(f"Invalid {field} {raw!r}") from exc


def _parse_status(raw: str) -> str:
    try:
        return SubscriptionStatus(raw).value
    except ValueError as exc:
        raise PermanentProcessingError(f"Unsupported subscription status {raw!r}") from exc


def _require_price(details: billing_events.SubscriptionDetails) -> str:
    if not details.price_id:
        raise MissingFieldError(
            f"Subscription {details.subscription_id} has no price", field="items.data[0].price.id"
        )
    return details.price_id


async def _require_org(session: AsyncSession, org_id: uuid.UUID) -> Organization:
    org = await session.get(Organization, org_id)
    if org is None:
        raise PermanentProcessingError(f"Organization {org_id} does not exist")
    return org


def _upsert(
    session: AsyncSession,
    model,  # noqa: ANN001
    values: dict[str, Any],
    *,
    conflict_column: str,
    update_columns: Iterable[str],
    extra_updates: dict[str, Any] | None = None,
):
    insert = sqlite.insert if dialect_name(session) == "sqlite" else postgresql.insert
    stmt = insert(model.__table__).values(**values)
    set_ = {column: getattr(stmt.excluded, column) for column in update_columns}
    set_["updated_at"] = sa.func.now()
    set_.update(extra_updates or {})
    return stmt.on_conflict_do_update(index_elements=[conflict_column], set_=set_)


async def _subscription_by_stripe_id(session: AsyncSession, stripe_subscription_id: str) -> Subscription | None:
    return await session.scalar(
        sa.select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
    )


async def _subscription_by_customer(session: AsyncSession, customer_id: str) -> Subscription | None:
    return await session.scalar(
        sa.select(Subscription)
        .where(Subscription.stripe_customer_id == customer_id)
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .limit(1)
    )


def _skip(ctx: HandlerContext, reason: str, **fields: Any) -> None:
    logger.info(
        "billing_event_skipped",
        extra={"extra": {"event_id": ctx.event.event_id, "event_type": ctx.event.event_type, "reason": reason, **fields}},
    )


async def handle_checkout_completed(
    ctx: HandlerContext, payload: billing_events.CheckoutSessionCompleted
) -> PostCommitCallback | None:
    if not payload.subscription_id:
        raise MissingFieldError("Checkout session has no subscription", field="subscription")
    if not payload.customer_id:
        raise MissingFieldError("Checkout session has no customer", field="customer")
    if not CUSTOMER_ID_RE.match(payload.customer_id):
        raise PermanentProcessingError(f"Invalid Stripe customer id {payload.customer_id!r}")

    org_id = _parse_org_id(payload.metadata.get("organization_id"))
    plan_tier = _parse_choice(PlanTier, payload.metadata.get("plan_tier"), "plan_tier")
    billing_cycle = _parse_choice(BillingCycle, payload.metadata.get("billing_cycle"), "billing_cycle")
    await _require_org(ctx.session, org_id)

    details = ctx.subscription_details or payload.expanded_subscription
    if details is None:
        raise MissingFieldError(
            f"Subscription {payload.subscription_id} details unavailable", field="subscription"
        )
    price_id = _require_price(details)
    amount_cents = _guard_amount(details.amount_cents, "amount_cents")

    stmt = _upsert(
        ctx.session,
        Subscription,
        {
            "org_id": org_id,
            "stripe_customer_id": payload.customer_id,
            "stripe_subscription_id": details.subscription_id,
            "stripe_price_id": price_id,
            "plan_tier": plan_tier,
            "billing_cycle": billing_cycle,
            "status": _parse_status(details.status),
            "current_period_start": details.current_period_start,
            "current_period_end": details.current_period_end,
            "cancel_at_period_end": details.cancel_at_period_end,
            "trial_start": details.trial_start,
            "trial_end": details.trial_end,
            "amount_cents": amount_cents,
            "currency": normalize_currency(details.currency),
        },
        conflict_column="stripe_subscription_id",
        update_columns=("status", "current_period_start", "current_period_end"),
    )
    await ctx.session.execute(stmt)
    subscription_pk = await ctx.session.scalar(
        sa.select(Subscription.id).where(Subscription.stripe_subscription_id == details.subscription_id)
    )
    link_event(ctx.event_record, org_id=org_id, subscription_id=subscription_pk)
    return None


async def handle_subscription_changed(
    ctx: HandlerContext, payload: billing_events.SubscriptionChanged
) -> PostCommitCallback | None:
    details = payload.subscription
    price_id = _require_price(details)
    amount_cents = _guard_amount(details.amount_cents, "amount_cents")
    status = _parse_status(details.status)
    currency = normalize_currency(details.currency)
    metadata = details.metadata

    if all(metadata.get(key) for key in ("organization_id", "plan_tier", "billing_cycle")):
        org_id = _parse_org_id(metadata["organization_id"])
        plan_tier = _parse_choice(PlanTier, metadata["plan_tier"], "plan_tier")
        billing_cycle = _parse_choice(BillingCycle, metadata["billing_cycle"], "billing_cycle")
        if not details.customer_id:
            raise MissingFieldError("Subscription has no customer", field="customer")
        await _require_org(ctx.session, org_id)
        values = {
            "org_id": org_id,
            "stripe_customer_id": details.customer_id,
            "stripe_subscription_id": details.subscription_id,
            "stripe_price_id": price_id,
            "plan_tier": plan_tier,
            "billing_cycle": billing_cycle,
            "status": status,
            "current_period_start": details.current_period_start,
            "current_period_end": details.current_period_end,
            "cancel_at_period_end": details.cancel_at_period_end,
            "canceled_at": details.canceled_at,
            "trial_start": details.trial_start,
            "trial_end": details.trial_end,
            "amount_cents": amount_cents,
            "currency": currency,
        }
        stmt = _upsert(
            ctx.session,
            Subscription,
            values,
            conflict_column="stripe_subscription_id",
            update_columns=[key for key in values if key != "stripe_subscription_id"],
        )
        await ctx.session.execute(stmt)
        subscription = await _subscription_by_stripe_id(ctx.session, details.subscription_id)
        link_event(ctx.event_record, org_id=org_id, subscription_id=subscription.id if subscription else None)
        return None

    subscription = await _subscription_by_stripe_id(ctx.session, details.subscription_id)
    if subscription is None:
        raise TransientProcessingError(
            f"Subscription {details.subscription_id} not found; checkout not processed yet"
        )
    subscription.stripe_price_id = price_id
    subscription.amount_cents = amount_cents
    subscription.currency = currency
    subscription.status = status
    subscription.current_period_start = details.current_period_start
    subscription.current_period_end = details.current_period_end
    subscription.cancel_at_period_end = details.cancel_at_period_end
    subscription.canceled_at = details.canceled_at
    link_event(ctx.event_record, org_id=subscription.org_id, subscription_id=subscription.id)
    return None


async def handle_subscription_deleted(
    ctx: HandlerContext, payload: billing_events.SubscriptionDeleted
) -> PostCommitCallback | None:
    subscription = await _subscription_by_stripe_id(ctx.session, payload.subscription_id)
    if subscription is None:
        raise TransientProcessingError(f"Subscription {payload.subscription_id} not found for deletion")
    subscription.status = SubscriptionStatus.CANCELED.value
    subscription.canceled_at = payload.canceled_at or ctx.now
    link_event(ctx.event_record, org_id=subscription.org_id, subscription_id=subscription.id)
    return None


def normalize_billing_reason(reason: str | None) -> str:
    if not reason:
        return "unknown"
    if reason in KNOWN_BILLING_REASONS:
        return reason
    logger.warning("billing_reason_unrecognized", extra={"extra": {"billing_reason": reason[:MAX_BILLING_REASON_LENGTH]}})
    return reason[:MAX_BILLING_REASON_LENGTH]


async def _invoice_subscription(ctx: HandlerContext, payload: billing_events.InvoicePayment) -> Subscription:
    if not payload.subscription_id:
        raise TransientProcessingError(f"Invoice {payload.invoice_id} has no subscription yet")
    subscription = await _subscription_by_stripe_id(ctx.session, payload.subscription_id)
    if subscription is None:
        raise TransientProcessingError(
            f"Subscription {payload.subscription_id} not found for invoice {payload.invoice_id}"
        )
    return subscription


def _invoice_values(
    ctx: HandlerContext,
    payload: billing_events.InvoicePayment,
    subscription: Subscription,
    *,
    status: InvoiceStatus,
    paid_at: datetime | None,
) -> dict[str, Any]:
    return {
        "org_id": subscription.org_id,
        "subscription_id": subscription.id,
        "stripe_invoice_id": payload.invoice_id,
        "amount_cents": _guard_amount(payload.amount_due, "amount_due"),
        "amount_paid_cents": _guard_amount(payload.amount_paid, "amount_paid"),
        "currency": normalize_currency(payload.currency or subscription.currency),
        "status": status.value,
        "invoice_pdf_url": payload.invoice_pdf,
        "hosted_invoice_url": payload.hosted_invoice_url,
        "billing_reason": normalize_billing_reason(payload.billing_reason),
        "period_start": payload.period_start or ctx.now,
        "period_end": payload.period_end or ctx.now,
        "paid_at": paid_at,
    }


async def handle_invoice_payment_succeeded(
    ctx: HandlerContext, payload: billing_events.InvoicePayment
) -> PostCommitCallback | None:
    subscription = await _invoice_subscription(ctx, payload)
    values = _invoice_values(ctx, payload, subscription, status=InvoiceStatus.PAID, paid_at=ctx.now)
    if subscription.status == SubscriptionStatus.PAST_DUE.value:
        subscription.status = SubscriptionStatus.ACTIVE.value
    stmt = _upsert(
        ctx.session,
        Invoice,
        values,
        conflict_column="stripe_invoice_id",
        update_columns=(
            "status",
            "amount_paid_cents",
            "paid_at",
            "invoice_pdf_url",
            "hosted_invoice_url",
        ),
    )
    await ctx.session.execute(stmt)
    link_event(ctx.event_record, org_id=subscription.org_id, subscription_id=subscription.id)
    return None


async def handle_invoice_payment_failed(
    ctx: HandlerContext, payload: billing_events.InvoicePayment
) -> PostCommitCallback | None:
    subscription = await _invoice_subscription(ctx, payload)
    values = _invoice_values(ctx, payload, subscription, status=InvoiceStatus.OPEN, paid_at=None)
    subscription.status = SubscriptionStatus.PAST_DUE.value
    stmt = _upsert(
        ctx.session,
        Invoice,
        values,
        conflict_column="stripe_invoice_id",
        update_columns=("status", "amount_paid_cents"),
    )
    await ctx.session.execute(stmt)
    link_event(ctx.event_record, org_id=subscription.org_id, subscription_id=subscription.id)
    return None


async def handle_customer_updated(
    ctx: HandlerContext, payload: billing_events.CustomerUpdated
) -> PostCommitCallback | None:
    subscription = await _subscription_by_customer(ctx.session, payload.customer_id)
    if subscription is None:
        _skip(ctx, "no_subscription_for_customer")
        return None
    org = await ctx.session.get(Organization, subscription.org_id)
    if org is None:
        _skip(ctx, "organization_missing")
        return None

    changed: list[str] = []
    name = (payload.name or "").strip()
    if name and name != org.name:
        org.name = name
        changed.append("name")
    email = (payload.email or "").strip()
    if email and email != org.billing_email:
        org.billing_email = email
        changed.append("billing_email")
    if changed:
        logger.info(
            "billing_org_updated",
            extra={"extra": {"org_id": str(org.org_id), "fields": changed}},
        )
    link_event(ctx.event_record, org_id=org.org_id)
    return None


def org_row_lock(org_id: uuid.UUID) -> sa.Select:
    """Locks the organization row; default payment method changes for one org run one at a time."""
    return sa.select(Organization.org_id).where(Organization.org_id == org_id).with_for_update()


async def handle_payment_method_attached(
    ctx: HandlerContext, payload: billing_events.PaymentMethodAttached
) -> PostCommitCallback | None:
    if not payload.customer_id:
        raise MissingFieldError(
            f"Payment method {payload.payment_method_id} has no customer", field="customer"
        )
    subscription = await _subscription_by_customer(ctx.session, payload.customer_id)
    if subscription is None:
        raise TransientProcessingError(f"No subscription yet for customer {payload.customer_id}")
    org_id = subscription.org_id

    await ctx.session.execute(org_row_lock(org_id))
    other_active = await ctx.session.scalar(
        sa.select(sa.func.count())
        .select_from(PaymentMethod)
        .where(
            PaymentMethod.org_id == org_id,
            PaymentMethod.deleted_at.is_(None),
            PaymentMethod.stripe_payment_method_id != payload.payment_method_id,
        )
    )
    should_be_default = not other_active

    stmt = _upsert(
        ctx.session,
        PaymentMethod,
        {
            "org_id": org_id,
            "stripe_payment_method_id": payload.payment_method_id,
            "type": payload.type,
            "card_brand": payload.card_brand,
            "card_last4": payload.card_last4,
            "card_exp_month": payload.card_exp_month,
            "card_exp_year": payload.card_exp_year,
            "is_default": should_be_default,
        },
        conflict_column="stripe_payment_method_id",
        update_columns=("org_id", "type", "card_brand", "card_last4", "card_exp_month", "card_exp_year"),
        extra_updates={
            "deleted_at": None,
            "is_default": sa.or_(PaymentMethod.__table__.c.is_default, sa.literal(should_be_default)),
        },
    )
    await ctx.session.execute(stmt)
    link_event(ctx.event_record, org_id=org_id)
    return None


async def handle_payment_method_detached(
    ctx: HandlerContext, payload: billing_events.PaymentMethodDetached
) -> PostCommitCallback | None:
    org_id = await ctx.session.scalar(
        sa.select(PaymentMethod.org_id).where(PaymentMethod.stripe_payment_method_id == payload.payment_method_id)
    )
    if org_id is not None:
        await ctx.session.execute(org_row_lock(org_id))
    method = await ctx.session.scalar(
        sa.select(PaymentMethod).where(
            PaymentMethod.stripe_payment_method_id == payload.payment_method_id,
            PaymentMethod.deleted_at.is_(None),
        )
    )
    if method is None:
        _skip(ctx, "payment_method_not_active")
        return None

    was_default = method.is_default
    method.deleted_at = ctx.now
    method.is_default = False
    await ctx.session.flush()

    if was_default:
        replacement = await ctx.session.scalar(
            sa.select(PaymentMethod)
            .where(
                PaymentMethod.org_id == method.org_id,
                PaymentMethod.deleted_at.is_(None),
                PaymentMethod.id != method.id,
            )
            .order_by(PaymentMethod.created_at.desc(), PaymentMethod.id.desc())
            .limit(1)
        )
        if replacement is not None:
            replacement.is_default = True
    link_event(ctx.event_record, org_id=method.org_id)
    return None


def days_until(moment: datetime | None, now: datetime) -> int:
    if moment is None:
        return DEFAULT_TRIAL_DAYS
    return math.ceil((_aware(moment) - now).total_seconds() / SECONDS_PER_DAY)


async def handle_trial_will_end(
    ctx: HandlerContext, payload: billing_events.TrialWillEnd
) -> PostCommitCallback | None:
    subscription = await _subscription_by_stripe_id(ctx.session, payload.subscription_id)
    if subscription is None:
        _skip(ctx, "subscription_missing")
        return None
    org = await ctx.session.get(Organization, subscription.org_id)
    if org is None:
        _skip(ctx, "organization_missing")
        return None

    trial_end = _aware(payload.trial_end or subscription.trial_end)
    notice = TrialEndingNotice(
        organization_name=org.name,
        plan_tier=subscription.plan_tier,
        trial_end_date=format_notice_date(trial_end, TRIAL_END_FALLBACK),
        days_remaining=max(1, days_until(trial_end, ctx.now)),
    )
    link_event(ctx.event_record, org_id=org.org_id, subscription_id=subscription.id)

    session, notifier, org_id = ctx.session, ctx.notifier, org.org_id

    async def send_trial_ending() -> None:
        recipients = await get_admin_emails(session, org_id)
        await notifier.send_trial_ending(recipients, notice)

    return send_trial_ending


async def handle_invoice_upcoming(
    ctx: HandlerContext, payload: billing_events.InvoiceUpcoming
) -> PostCommitCallback | None:
    if not payload.subscription_id:
        _skip(ctx, "missing_subscription_id")
        return None
    subscription = await _subscription_by_stripe_id(ctx.session, payload.subscription_id)
    if subscription is None:
        _skip(ctx, "subscription_missing")
        return None
    org = await ctx.session.get(Organization, subscription.org_id)
    if org is None:
        _skip(ctx, "organization_missing")
        return None
    link_event(ctx.event_record, org_id=org.org_id, subscription_id=subscription.id)

    if payload.amount_due is not None:
        amount_cents = payload.amount_due
    elif payload.total is not None:
        amount_cents = payload.total
    else:
        amount_cents = subscription.amount_cents
    billing_period = "year" if subscription.billing_cycle == BillingCycle.ANNUAL.value else "month"
    notice = InvoiceUpcomingNotice(
        organization_name=org.name,
        plan_tier=subscription.plan_tier,
        amount_cents=amount_cents,
        currency=normalize_currency(payload.currency or subscription.currency),
        billing_date=format_notice_date(
            payload.next_payment_attempt or payload.due_date, BILLING_DATE_FALLBACK
        ),
        billing_period=billing_period,
        collection_method=payload.collection_method,
    )

    session, notifier, org_id = ctx.session, ctx.notifier, org.org_id

    async def send_invoice_upcoming() -> None:
        recipients = await get_admin_emails(session, org_id)
        await notifier.send_invoice_upcoming(recipients, notice)

    return send_invoice_upcoming
