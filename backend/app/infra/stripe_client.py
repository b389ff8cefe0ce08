from __future__ import annotations

import inspect
from typing import Any

import anyio
import stripe

from app.infra.stripe_resilience import stripe_circuit
from app.settings import settings


class StripeClient:
    """Thin wrapper over the Stripe SDK used by billing ingestion.

    Credentials left as ``None`` fall back to the global settings. Network calls
    run in a worker thread behind ``stripe_circuit``; webhook verification is a
    local HMAC check and never touches the circuit.
    """

    def __init__(
        self,
        *,
        secret_key: str | None,
        webhook_secret: str | None,
        stripe_sdk: Any = stripe,
    ) -> None:
        self.stripe = stripe_sdk
        self.secret_key = secret_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret

    def verify_webhook(self, payload: bytes, signature: str | None) -> Any:
        """Return the verified event for the raw request body.

        Raises ``ValueError`` when configuration or header is missing and
        ``stripe.SignatureVerificationError`` when the HMAC or timestamp is off.
        """
        if not self.webhook_secret:
            raise ValueError("Stripe webhook secret not configured")
        if not signature:
            raise ValueError("Missing Stripe-Signature header")
        return self.stripe.Webhook.construct_event(
            payload=payload,
            sig_header=signature,
            secret=self.webhook_secret,
        )

    async def retrieve_subscription(self, subscription_id: str) -> Any:
        if not self.secret_key:
            raise ValueError("Stripe secret key not configured")

        def _retrieve() -> Any:
            return self.stripe.Subscription.retrieve(subscription_id, api_key=self.secret_key)

        return await stripe_circuit.call(lambda: anyio.to_thread.run_sync(_retrieve))


def resolve_client(app_state: Any) -> StripeClient:
    """Return the Stripe client for an app (or its ``state``), creating one on first use."""
    state = getattr(app_state, "state", app_state)
    services = getattr(state, "services", None)
    if getattr(services, "stripe_client", None) is not None:
        return services.stripe_client

    app_settings = getattr(state, "app_settings", None) or settings
    client = getattr(state, "stripe_client", None)
    if client is None:
        client = StripeClient(
            secret_key=app_settings.stripe_secret_key,
            webhook_secret=app_settings.stripe_webhook_secret,
        )
        state.stripe_client = client
    elif isinstance(client, StripeClient):
        client.secret_key = client.secret_key or app_settings.stripe_secret_key or settings.stripe_secret_key
        client.webhook_secret = (
            client.webhook_secret or app_settings.stripe_webhook_secret or settings.stripe_webhook_secret
        )
    return client


async def call_stripe_client_method(client: Any, method_name: str, /, *args, **kwargs) -> Any:
    """Call ``method_name`` on a real client or a test double, awaiting if it is async."""
    method = getattr(client, method_name, None)
    if method is None:
        raise AttributeError(f"Stripe client missing method {method_name}")
    result = method(*args, **kwargs)
    return await result if inspect.isawaitable(result) else result
