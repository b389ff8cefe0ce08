from datetime import datetime, timedelta, timezone

import pytest
import sqlalchemy as sa

from app.domain.billing import handlers as billing_handlers
from app.domain.billing.db_models import Subscription, SubscriptionEvent
from app.domain.billing.notifications import (
    BILLING_DATE_FALLBACK,
    BillingNotifier,
    InvoiceUpcomingNotice,
    TrialEndingNotice,
    format_notice_date,
    render_invoice_upcoming,
    render_trial_ending,
)
from app.infra.email import NOTICE_KIND_HEADER, NoopEmailAdapter
from tests.conftest import DEFAULT_ORG_ID, FakeStripeClient, make_event, post_event, seed_org_admins


async def _seed_subscription(session, *, billing_cycle="monthly", currency="USD", trial_end=None) -> Subscription:
    subscription = Subscription(
        org_id=DEFAULT_ORG_ID,
        stripe_customer_id="cus_notice",
        stripe_subscription_id="sub_notice",
        stripe_price_id="price_pro",
        plan_tier="pro",
        billing_cycle=billing_cycle,
        status="trialing",
        amount_cents=4900,
        currency=currency,
        trial_end=trial_end,
    )
    session.add(subscription)
    await session.commit()
    return subscription


def test_format_notice_date_has_no_zero_padding():
    assert format_notice_date(datetime(2025, 1, 6, tzinfo=timezone.utc), "soon") == "Monday, January 6, 2025"
    assert format_notice_date(None, "soon") == "soon"


def test_trial_notice_subject_pluralizes_days():
    single = TrialEndingNotice("Acme", "pro", "Monday, January 6, 2025", days_remaining=1)
    several = TrialEndingNotice("Acme", "pro", "Monday, January 6, 2025", days_remaining=3)

    assert render_trial_ending(single)[0] == "Your Pro trial ends in 1 day"
    subject, body = render_trial_ending(several)
    assert subject == "Your Pro trial ends in 3 days"
    assert "Priority support" in body


def test_invoice_notice_formats_zero_decimal_amounts():
    notice = InvoiceUpcomingNotice(
        organization_name="Acme",
        plan_tier="pro",
        amount_cents=1000,
        currency="jpy",
        billing_date=BILLING_DATE_FALLBACK,
        billing_period="month",
        collection_method="send_invoice",
    )

    subject, body = render_invoice_upcoming(notice)

    assert subject == "Upcoming invoice for Acme: 1000 JPY"
    assert "per month" in body
    assert "An invoice will be emailed to you" in body


@pytest.mark.anyio
async def test_notifier_skips_without_recipients():
    adapter = NoopEmailAdapter()
    notifier = BillingNotifier(adapter)

    delivered = await notifier.send_trial_ending([], TrialEndingNotice("Acme", "pro", "soon", 3))

    assert delivered == 0
    assert adapter.captured == []


@pytest.mark.anyio
async def test_notifier_continues_after_failed_recipient():
    class FlakyAdapter:
        def __init__(self):
            self.sent = []

        async def send_email(self, recipient, subject, body, *, headers=None):
            if recipient.startswith("broken"):
                raise ConnectionError("smtp down")
            self.sent.append((recipient, headers))
            return True

    adapter = FlakyAdapter()
    notifier = BillingNotifier(adapter)

    delivered = await notifier.send_trial_ending(
        ["broken@example.com", "ok@example.com"], TrialEndingNotice("Acme", "pro", "soon", 2)
    )

    assert delivered == 1
    assert adapter.sent == [("ok@example.com", {NOTICE_KIND_HEADER: "trial_ending"})]


@pytest.mark.anyio
async def test_trial_will_end_emails_each_admin_once(async_session_maker, client, email_adapter):
    trial_end = datetime.now(timezone.utc) + timedelta(days=2, hours=1)
    async with async_session_maker() as session:
        await _seed_subscription(session, trial_end=trial_end)
        await seed_org_admins(session, emails=("owner@example.com", "admin@example.com"))

    event = make_event(
        "evt_trial",
        "customer.subscription.trial_will_end",
        {"id": "sub_notice", "trial_end": int(trial_end.timestamp())},
    )
    stripe_client = FakeStripeClient()

    first = post_event(client, stripe_client, event)
    second = post_event(client, stripe_client, event)

    assert first.json() == {"received": True, "retried": False}
    assert second.json() == {"received": True, "duplicate": True}
    assert sorted(mail.recipient for mail in email_adapter.captured) == ["admin@example.com", "owner@example.com"]
    mail = email_adapter.captured[0]
    assert mail.headers == {NOTICE_KIND_HEADER: "trial_ending"}
    assert mail.subject == "Your Pro trial ends in 3 days"
    assert format_notice_date(trial_end, "") in mail.body


@pytest.mark.anyio
async def test_trial_will_end_for_unknown_subscription_is_skipped(async_session_maker, client, email_adapter):
    response = post_event(
        client,
        FakeStripeClient(),
        make_event("evt_trial_unknown", "customer.subscription.trial_will_end", {"id": "sub_missing"}),
    )

    assert response.status_code == 200
    assert email_adapter.captured == []
    async with async_session_maker() as session:
        record = await session.scalar(
            sa.select(SubscriptionEvent).where(SubscriptionEvent.stripe_event_id == "evt_trial_unknown")
        )
    assert record.processed_at is not None


@pytest.mark.anyio
async def test_invoice_upcoming_uses_amount_due_and_annual_period(async_session_maker, client, email_adapter):
    async with async_session_maker() as session:
        await _seed_subscription(session, billing_cycle="annual")
        await seed_org_admins(session)

    invoice = {
        "subscription": "sub_notice",
        "amount_due": 58800,
        "currency": "usd",
        "next_payment_attempt": int(datetime(2025, 3, 3, 12, tzinfo=timezone.utc).timestamp()),
        "collection_method": "charge_automatically",
    }
    response = post_event(client, FakeStripeClient(), make_event("evt_upcoming", "invoice.upcoming", invoice))

    assert response.status_code == 200
    [mail] = email_adapter.captured
    assert mail.recipient == "owner@example.com"
    assert mail.subject == "Upcoming invoice for Default Org: 588.00 USD"
    assert "per year" in mail.body
    assert "Billing date: Monday, March 3, 2025" in mail.body
    assert mail.headers == {NOTICE_KIND_HEADER: "invoice_upcoming"}


@pytest.mark.anyio
async def test_invoice_upcoming_falls_back_to_subscription_amount(async_session_maker, client, email_adapter):
    async with async_session_maker() as session:
        await _seed_subscription(session)
        await seed_org_admins(session)

    response = post_event(
        client,
        FakeStripeClient(),
        make_event("evt_upcoming_plain", "invoice.upcoming", {"subscription": "sub_notice"}),
    )

    assert response.status_code == 200
    [mail] = email_adapter.captured
    assert "49.00 USD" in mail.subject
    assert f"Billing date: {BILLING_DATE_FALLBACK}" in mail.body


@pytest.mark.anyio
async def test_notification_failure_does_not_change_outcome(async_session_maker, client, email_adapter, monkeypatch):
    async with async_session_maker() as session:
        await _seed_subscription(session)
        await seed_org_admins(session)

    async def broken_admin_lookup(session, org_id):  # noqa: ANN001
        raise RuntimeError("directory unavailable")

    monkeypatch.setattr(billing_handlers, "get_admin_emails", broken_admin_lookup)

    response = post_event(
        client,
        FakeStripeClient(),
        make_event("evt_trial_broken", "customer.subscription.trial_will_end", {"id": "sub_notice"}),
    )

    assert response.status_code == 200
    assert response.json() == {"received": True, "retried": False}
    assert email_adapter.captured == []
    async with async_session_maker() as session:
        record = await session.scalar(
            sa.select(SubscriptionEvent).where(SubscriptionEvent.stripe_event_id == "evt_trial_broken")
        )
    assert record.processed_at is not None
    assert record.processing_error is None
