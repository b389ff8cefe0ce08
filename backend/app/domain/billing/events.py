"""Typed views over Stripe webhook payloads.

Each supported event type is parsed into its own frozen dataclass so handlers
only see the fields relevant to them. Stripe SDK objects are converted to plain
builtins once, on entry to ``parse_envelope`` and ``parse_subscription``; every
other helper reads dicts only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

import stripe

from app.domain.billing.errors import MissingFieldError


def safe_get(source: object, key: str, default: Any | None = None) -> Any:
    if isinstance(source, Mapping):
        return source.get(key, default)
    return default


def to_plain(value: Any) -> Any:
    """Recursively convert Stripe objects into JSON-serializable builtins."""
    if isinstance(value, stripe.StripeObject):
        # Recent SDKs no longer subclass dict; older ones return a shallow copy here.
        value = value.to_dict()
    if isinstance(value, Mapping):
        return {str(key): to_plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(item) for item in value]
    return value


def from_timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


def _object_id(value: Any) -> str | None:
    """Stripe references are either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    identifier = safe_get(value, "id")
    return str(identifier) if identifier else None


def _metadata(source: Any) -> dict[str, str]:
    raw = safe_get(source, "metadata") or {}
    if not isinstance(raw, Mapping):
        return {}
    return {str(key): str(value) for key, value in raw.items() if value is not None}


def _optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    return int(value)


@dataclass(frozen=True)
class LineItem:
    price_id: str | None
    unit_amount: int
    quantity: int

    @property
    def total(self) -> int:
        return self.unit_amount * self.quantity


@dataclass(frozen=True)
class SubscriptionDetails:
    subscription_id: str
    customer_id: str | None
    status: str
    items: tuple[LineItem, ...]
    currency: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    canceled_at: datetime | None
    trial_start: datetime | None
    trial_end: datetime | None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def price_id(self) -> str | None:
        return self.items[0].price_id if self.items else None

    @property
    def amount_cents(self) -> int:
        """Total across every line item; seat-based plans bill unit price times quantity."""
        return sum(item.total for item in self.items)


def parse_subscription(obj: Any) -> SubscriptionDetails:
    obj = to_plain(obj)
    subscription_id = _object_id(obj)
    if not subscription_id:
        raise MissingFieldError("Subscription payload missing id", field="id")
    items_container = safe_get(obj, "items") or {}
    raw_items = safe_get(items_container, "data") or []
    items: list[LineItem] = []
    for raw_item in raw_items:
        price = safe_get(raw_item, "price") or {}
        quantity = safe_get(raw_item, "quantity")
        items.append(
            LineItem(
                price_id=_object_id(price),
                unit_amount=int(safe_get(price, "unit_amount") or 0),
                quantity=int(quantity) if quantity is not None else 1,
            )
        )
    # Newer API versions moved billing periods onto subscription items.
    first_item = raw_items[0] if raw_items else {}
    period_start = safe_get(obj, "current_period_start") or safe_get(first_item, "current_period_start")
    period_end = safe_get(obj, "current_period_end") or safe_get(first_item, "current_period_end")
    return SubscriptionDetails(
        subscription_id=subscription_id,
        customer_id=_object_id(safe_get(obj, "customer")),
        status=str(safe_get(obj, "status") or "incomplete").lower(),
        items=tuple(items),
        currency=safe_get(obj, "currency"),
        current_period_start=from_timestamp(period_start),
        current_period_end=from_timestamp(period_end),
        cancel_at_period_end=bool(safe_get(obj, "cancel_at_period_end") or False),
        canceled_at=from_timestamp(safe_get(obj, "canceled_at")),
        trial_start=from_timestamp(safe_get(obj, "trial_start")),
        trial_end=from_timestamp(safe_get(obj, "trial_end")),
        metadata=_metadata(obj),
    )


@dataclass(frozen=True)
class CheckoutSessionCompleted:
    session_id: str
    customer_id: str | None
    subscription_id: str | None
    expanded_subscription: SubscriptionDetails | None
    metadata: dict[str, str]


@dataclass(frozen=True)
class SubscriptionChanged:
    subscription: SubscriptionDetails


@dataclass(frozen=True)
class SubscriptionDeleted:
    subscription_id: str
    canceled_at: datetime | None


@dataclass(frozen=True)
class TrialWillEnd:
    subscription_id: str
    trial_end: datetime | None


@dataclass(frozen=True)
class InvoicePayment:
    invoice_id: str
    subscription_id: str | None
    amount_due: int
    amount_paid: int
    currency: str | None
    billing_reason: str | None
    invoice_pdf: str | None
    hosted_invoice_url: str | None
    period_start: datetime | None
    period_end: datetime | None


@dataclass(frozen=True)
class InvoiceUpcoming:
    subscription_id: str | None
    amount_due: int | None
    total: int | None
    currency: str | None
    next_payment_attempt: datetime | None
    due_date: datetime | None
    collection_method: str | None


@dataclass(frozen=True)
class CustomerUpdated:
    customer_id: str
    name: str | None
    email: str | None


@dataclass(frozen=True)
class PaymentMethodAttached:
    payment_method_id: str
    customer_id: str | None
    type: str
    card_brand: str | None
    card_last4: str | None
    card_exp_month: int | None
    card_exp_year: int | None


@dataclass(frozen=True)
class PaymentMethodDetached:
    payment_method_id: str


def _required_id(obj: Any, label: str) -> str:
    identifier = _object_id(obj)
    if not identifier:
        raise MissingFieldError(f"{label} payload missing id", field="id")
    return identifier


def parse_checkout_session(obj: Any) -> CheckoutSessionCompleted:
    raw_subscription = safe_get(obj, "subscription")
    expanded = None
    if raw_subscription is not None and not isinstance(raw_subscription, str):
        expanded = parse_subscription(raw_subscription)
    return CheckoutSessionCompleted(
        session_id=_required_id(obj, "Checkout session"),
        customer_id=_object_id(safe_get(obj, "customer")),
        subscription_id=_object_id(raw_subscription),
        expanded_subscription=expanded,
        metadata=_metadata(obj),
    )


def parse_subscription_changed(obj: Any) -> SubscriptionChanged:
    return SubscriptionChanged(subscription=parse_subscription(obj))


def parse_subscription_deleted(obj: Any) -> SubscriptionDeleted:
    return SubscriptionDeleted(
        subscription_id=_required_id(obj, "Subscription"),
        canceled_at=from_timestamp(safe_get(obj, "canceled_at")),
    )


def parse_trial_will_end(obj: Any) -> TrialWillEnd:
    return TrialWillEnd(
        subscription_id=_required_id(obj, "Subscription"),
        trial_end=from_timestamp(safe_get(obj, "trial_end")),
    )


def _invoice_subscription_id(obj: Any) -> str | None:
    subscription_id = _object_id(safe_get(obj, "subscription"))
    if subscription_id:
        return subscription_id
    # 2025+ API versions nest the reference under parent.subscription_details.
    parent = safe_get(obj, "parent") or {}
    details = safe_get(parent, "subscription_details") or {}
    return _object_id(safe_get(details, "subscription"))


def parse_invoice_payment(obj: Any) -> InvoicePayment:
    return InvoicePayment(
        invoice_id=_required_id(obj, "Invoice"),
        subscription_id=_invoice_subscription_id(obj),
        amount_due=int(safe_get(obj, "amount_due") or 0),
        amount_paid=int(safe_get(obj, "amount_paid") or 0),
        currency=safe_get(obj, "currency"),
        billing_reason=safe_get(obj, "billing_reason"),
        invoice_pdf=safe_get(obj, "invoice_pdf"),
        hosted_invoice_url=safe_get(obj, "hosted_invoice_url"),
        period_start=from_timestamp(safe_get(obj, "period_start")),
        period_end=from_timestamp(safe_get(obj, "period_end")),
    )


def parse_invoice_upcoming(obj: Any) -> InvoiceUpcoming:
    return InvoiceUpcoming(
        subscription_id=_invoice_subscription_id(obj),
        amount_due=_optional_int(safe_get(obj, "amount_due")),
        total=_optional_int(safe_get(obj, "total")),
        currency=safe_get(obj, "currency"),
        next_payment_attempt=from_timestamp(safe_get(obj, "next_payment_attempt")),
        due_date=from_timestamp(safe_get(obj, "due_date")),
        collection_method=safe_get(obj, "collection_method"),
    )


def parse_customer_updated(obj: Any) -> CustomerUpdated:
    return CustomerUpdated(
        customer_id=_required_id(obj, "Customer"),
        name=safe_get(obj, "name"),
        email=safe_get(obj, "email"),
    )


def parse_payment_method_attached(obj: Any) -> PaymentMethodAttached:
    card = safe_get(obj, "card") or {}
    return PaymentMethodAttached(
        payment_method_id=_required_id(obj, "Payment method"),
        customer_id=_object_id(safe_get(obj, "customer")),
        type=str(safe_get(obj, "type") or "card"),
        card_brand=safe_get(card, "brand"),
        card_last4=safe_get(card, "last4"),
        card_exp_month=_optional_int(safe_get(card, "exp_month")),
        card_exp_year=_optional_int(safe_get(card, "exp_year")),
    )


def parse_payment_method_detached(obj: Any) -> PaymentMethodDetached:
    return PaymentMethodDetached(payment_method_id=_required_id(obj, "Payment method"))


PAYLOAD_PARSERS: dict[str, Callable[[Any], Any]] = {
    "checkout.session.completed": parse_checkout_session,
    "customer.subscription.created": parse_subscription_changed,
    "customer.subscription.updated": parse_subscription_changed,
    "customer.subscription.deleted": parse_subscription_deleted,
    "customer.subscription.trial_will_end": parse_trial_will_end,
    "invoice.payment_succeeded": parse_invoice_payment,
    "invoice.payment_failed": parse_invoice_payment,
    "invoice.upcoming": parse_invoice_upcoming,
    "customer.updated": parse_customer_updated,
    "payment_method.attached": parse_payment_method_attached,
    "payment_method.detached": parse_payment_method_detached,
}


@dataclass(frozen=True)
class BillingEvent:
    """Verified webhook envelope; ``data_object`` is parsed lazily per type."""

    event_id: str
    event_type: str
    created_at: datetime | None
    livemode: bool
    data_object: Any
    snapshot: dict[str, Any]

    def parse_payload(self) -> Any:
        parser = PAYLOAD_PARSERS.get(self.event_type)
        if parser is None:
            return None
        return parser(self.data_object)


def parse_envelope(event: Any) -> BillingEvent:
    event = to_plain(event)
    event_id = safe_get(event, "id")
    event_type = safe_get(event, "type")
    if not event_id or not event_type:
        raise MissingFieldError("Stripe event missing id or type", field="id")
    data = safe_get(event, "data") or {}
    return BillingEvent(
        event_id=str(event_id),
        event_type=str(event_type),
        created_at=from_timestamp(safe_get(event, "created")),
        livemode=bool(safe_get(event, "livemode") or False),
        data_object=safe_get(data, "object") or {},
        snapshot=event,
    )
