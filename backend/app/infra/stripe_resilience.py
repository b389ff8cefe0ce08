import stripe

from app.settings import settings
from app.shared.circuit_breaker import CircuitBreaker

# Errors Stripe returns for a malformed or unauthorized request say nothing about
# Stripe's availability, so they pass through without tripping the circuit.
STRIPE_CALLER_ERRORS: tuple[type[BaseException], ...] = (
    stripe.InvalidRequestError,
    stripe.AuthenticationError,
    stripe.PermissionError,
    stripe.CardError,
    stripe.IdempotencyError,
)


def build_stripe_circuit(app_settings=settings) -> CircuitBreaker:  # noqa: ANN001
    return CircuitBreaker(
        name="stripe",
        failure_threshold=app_settings.stripe_circuit_failure_threshold,
        recovery_time=app_settings.stripe_circuit_recovery_seconds,
        window_seconds=app_settings.stripe_circuit_window_seconds,
        half_open_max_calls=app_settings.stripe_circuit_half_open_max_calls,
        timeout_seconds=app_settings.stripe_request_timeout_seconds,
        ignored_exceptions=STRIPE_CALLER_ERRORS,
    )


stripe_circuit = build_stripe_circuit()
