import json
from datetime import datetime, timezone

import pytest
import stripe

from app.domain.billing.errors import MissingFieldError
from app.domain.billing.events import (
    CheckoutSessionCompleted,
    InvoicePayment,
    from_timestamp,
    parse_envelope,
    parse_subscription,
    to_plain,
)


def test_subscription_amount_sums_every_line_item():
    details = parse_subscription(
        {
            "id": "sub_1",
            "status": "active",
            "items": {
                "data": [
                    {"price": {"id": "price_seat", "unit_amount": 1000}, "quantity": 2},
                    {"price": {"id": "price_addon", "unit_amount": 500}},
                ]
            },
        }
    )

    assert details.amount_cents == 2500
    assert details.price_id == "price_seat"
    assert details.items[1].quantity == 1


def test_subscription_without_items_has_no_price():
    details = parse_subscription({"id": "sub_empty"})

    assert details.amount_cents == 0
    assert details.price_id is None
    assert details.status == "incomplete"


def test_subscription_periods_fall_back_to_first_item():
    details = parse_subscription(
        {
            "id": "sub_1",
            "status": "active",
            "items": {
                "data": [
                    {
                        "price": {"id": "price_1", "unit_amount": 100},
                        "current_period_start": 1735689600,
                        "current_period_end": 1738368000,
                    }
                ]
            },
        }
    )

    assert details.current_period_start == datetime(2025, 1, 1, tzinfo=timezone.utc)
    assert details.current_period_end == datetime(2025, 2, 1, tzinfo=timezone.utc)


def test_subscription_parses_stripe_objects():
    obj = stripe.Subscription.construct_from(
        {
            "id": "sub_obj",
            "object": "subscription",
            "customer": {"id": "cus_expanded", "object": "customer"},
            "status": "trialing",
            "metadata": {"plan_tier": "pro"},
            "items": {"object": "list", "data": [{"price": {"id": "price_1", "unit_amount": 900}}]},
        },
        "sk_test_dummy",
    )

    details = parse_subscription(obj)

    assert details.customer_id == "cus_expanded"
    assert details.metadata == {"plan_tier": "pro"}
    assert details.amount_cents == 900
    assert details.items[0].price_id == "price_1"


def test_envelope_from_stripe_event_keeps_metadata_and_snapshot():
    metadata = {"organization_id": "00000000-0000-0000-0000-000000000001", "plan_tier": "pro", "billing_cycle": "monthly"}
    event = stripe.Event.construct_from(
        {
            "id": "evt_sdk",
            "object": "event",
            "type": "checkout.session.completed",
            "created": 1700000000,
            "livemode": False,
            "data": {
                "object": {
                    "id": "cs_sdk",
                    "object": "checkout.session",
                    "customer": "cus_sdk",
                    "subscription": "sub_sdk",
                    "metadata": metadata,
                }
            },
        },
        "sk_test_dummy",
    )

    billing_event = parse_envelope(event)
    payload = billing_event.parse_payload()

    assert payload.metadata == metadata
    assert payload.subscription_id == "sub_sdk"
    assert type(billing_event.data_object) is dict
    assert billing_event.snapshot["data"]["object"]["metadata"] == metadata
    assert json.loads(json.dumps(billing_event.snapshot)) == billing_event.snapshot


def test_to_plain_unwraps_nested_stripe_objects():
    obj = stripe.StripeObject.construct_from({"a": {"b": [{"c": 1}]}}, "sk_test_dummy")

    assert to_plain(obj) == {"a": {"b": [{"c": 1}]}}


def test_subscription_without_id_is_missing_field():
    with pytest.raises(MissingFieldError):
        parse_subscription({"status": "active"})


def test_envelope_requires_id_and_type():
    with pytest.raises(MissingFieldError):
        parse_envelope({"type": "invoice.paid", "data": {"object": {}}})
    with pytest.raises(MissingFieldError):
        parse_envelope({"id": "evt_1", "data": {"object": {}}})


def test_envelope_snapshot_is_plain_json():
    event = parse_envelope(
        {
            "id": "evt_1",
            "type": "checkout.session.completed",
            "created": 1735689600,
            "livemode": True,
            "data": {"object": {"id": "cs_1", "subscription": "sub_1", "customer": "cus_1"}},
        }
    )

    assert event.created_at == datetime(2025, 1, 1, tzinfo=timezone.utc)
    assert event.livemode is True
    assert event.snapshot["data"]["object"]["id"] == "cs_1"

    payload = event.parse_payload()
    assert isinstance(payload, CheckoutSessionCompleted)
    assert payload.subscription_id == "sub_1"
    assert payload.expanded_subscription is None


def test_unknown_event_type_has_no_payload():
    event = parse_envelope({"id": "evt_1", "type": "charge.refunded", "data": {"object": {"id": "ch_1"}}})

    assert event.parse_payload() is None


def test_invoice_subscription_falls_back_to_parent_details():
    event = parse_envelope(
        {
            "id": "evt_inv",
            "type": "invoice.payment_succeeded",
            "data": {
                "object": {
                    "id": "in_1",
                    "amount_due": 2500,
                    "amount_paid": 2500,
                    "currency": "usd",
                    "parent": {"subscription_details": {"subscription": "sub_parent"}},
                }
            },
        }
    )

    payload = event.parse_payload()

    assert isinstance(payload, InvoicePayment)
    assert payload.subscription_id == "sub_parent"
    assert payload.amount_due == 2500


def test_from_timestamp_ignores_non_numeric_values():
    assert from_timestamp(None) is None
    assert from_timestamp("soon") is None
    assert from_timestamp(True) is None


def test_to_plain_converts_nested_mappings():
    assert to_plain({"a": ({"b": 1},)}) == {"a": [{"b": 1}]}
