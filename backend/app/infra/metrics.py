import logging

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

PLAIN_TEXT = "text/plain; version=0.0.4"
LATENCY_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10)
CIRCUIT_STATE_VALUES = {"closed": 0.0, "half_open": 0.5, "open": 1.0}


class Metrics:
    """Prometheus collectors for the billing service.

    Every collector lives in a private registry so reconfiguring (tests, app
    factory re-entry) never collides with the process-global default registry.
    When disabled every ``record_*`` call is a no-op.
    """

    def __init__(self, enabled: bool = False) -> None:
        self.configure(enabled)

    def configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        self.stripe_webhook_events = self._counter(
            "stripe_webhook_events_total", "Stripe webhook deliveries by final outcome.", ["outcome"]
        )
        self.webhook_errors = self._counter(
            "webhook_errors_total", "Rejected or failed webhook deliveries by error type.", ["type"]
        )
        self.billing_events = self._counter(
            "billing_events_total", "Billing events by event type and handling outcome.", ["event_type", "outcome"]
        )
        self.billing_notifications = self._counter(
            "billing_notifications_total", "Billing notice emails by kind and delivery status.", ["kind", "status"]
        )
        self.email_adapter_outcomes = self._counter(
            "email_adapter_outcomes_total", "Email adapter send attempts by status.", ["status"]
        )
        self.http_5xx = self._counter("http_5xx_total", "Responses with status >= 500.", ["method", "path"])
        self.http_latency = (
            Histogram(
                "http_request_latency_seconds",
                "Request latency by route template.",
                ["method", "path", "status_class"],
                buckets=LATENCY_BUCKETS,
                registry=self.registry,
            )
            if enabled
            else None
        )
        self.circuit_state = (
            Gauge(
                "circuit_state",
                "Circuit breaker state (0 closed, 0.5 half-open, 1 open).",
                ["circuit"],
                registry=self.registry,
            )
            if enabled
            else None
        )

    def _counter(self, name: str, documentation: str, labels: list[str]) -> Counter | None:
        if not self.enabled:
            return None
        return Counter(name, documentation, labels, registry=self.registry)

    @staticmethod
    def _inc(counter: Counter | None, amount: float = 1, **labels: str) -> None:
        if counter is None or amount <= 0:
            return
        counter.labels(**{key: value or "unknown" for key, value in labels.items()}).inc(amount)

    def record_stripe_webhook(self, outcome: str) -> None:
        self._inc(self.stripe_webhook_events, outcome=outcome)

    def record_webhook_error(self, error_type: str) -> None:
        self._inc(self.webhook_errors, type=error_type)

    def record_billing_event(self, event_type: str, outcome: str) -> None:
        self._inc(self.billing_events, event_type=event_type, outcome=outcome)

    def record_billing_notification(self, kind: str, status: str, count: int = 1) -> None:
        self._inc(self.billing_notifications, count, kind=kind, status=status)

    def record_email_adapter(self, status: str) -> None:
        self._inc(self.email_adapter_outcomes, status=status)

    def record_http_5xx(self, method: str, path: str) -> None:
        self._inc(self.http_5xx, method=method, path=path)

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        if self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        self.http_latency.labels(method=method, path=path, status_class=status_class).observe(
            max(0.0, float(duration_seconds))
        )

    def record_circuit_state(self, circuit: str, state: str) -> None:
        if self.circuit_state is None:
            return
        self.circuit_state.labels(circuit=circuit).set(CIRCUIT_STATE_VALUES.get(state, -1.0))

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", PLAIN_TEXT
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", PLAIN_TEXT


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics.configure(enabled)
    return metrics
