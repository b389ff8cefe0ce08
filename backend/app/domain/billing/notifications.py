import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from app.domain.billing.currency import format_amount, normalize_currency
from app.infra.email import NOTICE_KIND_HEADER
from app.infra.metrics import metrics
from app.settings import settings

logger = logging.getLogger(__name__)

NOTICE_TRIAL_ENDING = "trial_ending"
NOTICE_INVOICE_UPCOMING = "invoice_upcoming"

FEATURES_AT_RISK = (
    "Unlimited sites and content",
    "Priority support",
    "Advanced collaboration features",
    "Custom branding options",
)
DEFAULT_TRIAL_DAYS = 3
TRIAL_END_FALLBACK = "in 3 days"
BILLING_DATE_FALLBACK = "in approximately 7 days"


def format_notice_date(value: datetime | None, fallback: str) -> str:
    """``Monday, January 1, 2025`` style date, without a zero-padded day."""
    if value is None:
        return fallback
    return f"{value:%A, %B} {value.day}, {value.year}"


@dataclass(frozen=True)
class TrialEndingNotice:
    organization_name: str
    plan_tier: str
    trial_end_date: str
    days_remaining: int
    features_at_risk: tuple[str, ...] = FEATURES_AT_RISK


@dataclass(frozen=True)
class InvoiceUpcomingNotice:
    organization_name: str
    plan_tier: str
    amount_cents: int
    currency: str
    billing_date: str
    billing_period: str
    collection_method: str | None = None

    @property
    def formatted_amount(self) -> str:
        return f"{format_amount(self.amount_cents, self.currency)} {normalize_currency(self.currency)}"


def render_trial_ending(notice: TrialEndingNotice) -> tuple[str, str]:
    days = max(1, notice.days_remaining)
    subject = f"Your {notice.plan_tier.title()} trial ends in {days} day{'s' if days != 1 else ''}"
    features = "\n".join(f"  - {feature}" for feature in notice.features_at_risk)
    body = (
        f"Hi {notice.organization_name} team,\n\n"
        f"Your {notice.plan_tier} trial ends {notice.trial_end_date}.\n"
        "Add a payment method to keep these features:\n"
        f"{features}\n\n"
        f"Manage billing: {settings.billing_dashboard_url}\n"
    )
    return subject, body


def render_invoice_upcoming(notice: InvoiceUpcomingNotice) -> tuple[str, str]:
    subject = f"Upcoming invoice for {notice.organization_name}: {notice.formatted_amount}"
    lines = [
        f"Hi {notice.organization_name} team,",
        "",
        f"Your {notice.plan_tier} plan renews for {notice.formatted_amount} per {notice.billing_period}.",
        f"Billing date: {notice.billing_date}",
    ]
    if notice.collection_method == "send_invoice":
        lines.append("An invoice will be emailed to you for payment.")
    elif notice.collection_method:
        lines.append("Your default payment method will be charged automatically.")
    lines.extend(["", f"Manage billing: {settings.billing_dashboard_url}", ""])
    return subject, "\n".join(lines)


class BillingNotifier:
    """Delivers billing notices to organization admins through the email adapter."""

    def __init__(self, email_adapter) -> None:  # noqa: ANN001
        self.email_adapter = email_adapter

    async def send_trial_ending(self, recipients: Iterable[str], notice: TrialEndingNotice) -> int:
        subject, body = render_trial_ending(notice)
        return await self._deliver(NOTICE_TRIAL_ENDING, recipients, subject, body)

    async def send_invoice_upcoming(self, recipients: Iterable[str], notice: InvoiceUpcomingNotice) -> int:
        subject, body = render_invoice_upcoming(notice)
        return await self._deliver(NOTICE_INVOICE_UPCOMING, recipients, subject, body)

    async def _deliver(self, kind: str, recipients: Iterable[str], subject: str, body: str) -> int:
        recipients = [recipient for recipient in recipients if recipient]
        if not recipients:
            logger.info("billing_notice_no_recipients", extra={"extra": {"kind": kind}})
            metrics.record_billing_notification(kind, "skipped")
            return 0
        if self.email_adapter is None:
            logger.warning("billing_notice_adapter_missing", extra={"extra": {"kind": kind}})
            metrics.record_billing_notification(kind, "skipped", len(recipients))
            return 0

        delivered = 0
        failed = 0
        for recipient in recipients:
            try:
                sent = await self.email_adapter.send_email(
                    recipient, subject, body, headers={NOTICE_KIND_HEADER: kind}
                )
            except Exception as exc:  # noqa: BLE001
                failed += 1
                logger.warning(
                    "billing_notice_send_failed",
                    extra={"extra": {"kind": kind, "recipient": recipient, "reason": type(exc).__name__}},
                )
                continue
            if sent:
                delivered += 1
        metrics.record_billing_notification(kind, "sent", delivered)
        metrics.record_billing_notification(kind, "failed", failed)
        metrics.record_billing_notification(kind, "skipped", len(recipients) - delivered - failed)
        logger.info(
            "billing_notice_delivered",
            extra={"extra": {"kind": kind, "delivered": delivered, "failed": failed}},
        )
        return delivered
