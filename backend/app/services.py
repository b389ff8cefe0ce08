from __future__ import annotations

from dataclasses import dataclass

from app.domain.billing.notifications import BillingNotifier
from app.infra.email import EmailAdapter, NoopEmailAdapter, resolve_email_adapter
from app.infra.metrics import Metrics, configure_metrics
from app.infra.stripe_client import StripeClient


@dataclass
class AppServices:
    """Long-lived collaborators built once per app and kept on ``app.state.services``."""

    email_adapter: EmailAdapter | NoopEmailAdapter
    stripe_client: StripeClient
    metrics: Metrics
    notifier: BillingNotifier


def build_app_services(app_settings, *, metrics: Metrics | None = None) -> AppServices:  # noqa: ANN001
    email_adapter = resolve_email_adapter(app_settings)
    stripe_client = StripeClient(
        secret_key=app_settings.stripe_secret_key,
        webhook_secret=app_settings.stripe_webhook_secret,
    )
    return AppServices(
        email_adapter=email_adapter,
        stripe_client=stripe_client,
        metrics=metrics or configure_metrics(app_settings.metrics_enabled),
        notifier=BillingNotifier(email_adapter),
    )
