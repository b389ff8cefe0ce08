import logging
from typing import Any, Awaitable, Callable

from app.domain.billing import handlers
from app.domain.billing.handlers import HandlerContext, PostCommitCallback
from app.infra.metrics import metrics

logger = logging.getLogger(__name__)

EventHandler = Callable[[HandlerContext, Any], Awaitable[PostCommitCallback | None]]

EVENT_HANDLERS: dict[str, EventHandler] = {
    "checkout.session.completed": handlers.handle_checkout_completed,
    "customer.subscription.created": handlers.handle_subscription_changed,
    "customer.subscription.updated": handlers.handle_subscription_changed,
    "customer.subscription.deleted": handlers.handle_subscription_deleted,
    "customer.subscription.trial_will_end": handlers.handle_trial_will_end,
    "invoice.payment_succeeded": handlers.handle_invoice_payment_succeeded,
    "invoice.payment_failed": handlers.handle_invoice_payment_failed,
    "invoice.upcoming": handlers.handle_invoice_upcoming,
    "customer.updated": handlers.handle_customer_updated,
    "payment_method.attached": handlers.handle_payment_method_attached,
    "payment_method.detached": handlers.handle_payment_method_detached,
}


async def dispatch(ctx: HandlerContext) -> PostCommitCallback | None:
    """Route a locked event to its handler; unknown types are acknowledged as no-ops."""
    event_type = ctx.event.event_type
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info(
            "billing_event_unhandled",
            extra={"extra": {"event_id": ctx.event.event_id, "event_type": event_type}},
        )
        metrics.record_billing_event(event_type, "unhandled")
        return None

    payload = ctx.event.parse_payload()
    callback = await handler(ctx, payload)
    metrics.record_billing_event(event_type, "processed")
    return callback
