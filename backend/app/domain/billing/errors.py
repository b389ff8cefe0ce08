from __future__ import annotations

from enum import Enum

import stripe
from sqlalchemy import exc as sa_exc

from app.shared.circuit_breaker import CircuitBreakerOpenError


class ErrorKind(str, Enum):
    CONNECTION = "connection"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    PROVIDER_ERROR = "provider_error"
    OUT_OF_ORDER = "out_of_order"
    VALIDATION = "validation"
    MISSING_FIELD = "missing_field"
    CONSTRAINT_VIOLATION = "constraint_violation"
    UNEXPECTED = "unexpected"

    @property
    def transient(self) -> bool:
        return self in TRANSIENT_KINDS


TRANSIENT_KINDS = frozenset(
    {
        ErrorKind.CONNECTION,
        ErrorKind.TIMEOUT,
        ErrorKind.RATE_LIMITED,
        ErrorKind.PROVIDER_ERROR,
        ErrorKind.OUT_OF_ORDER,
    }
)


class BillingProcessingError(Exception):
    """Failure raised by a billing handler, tagged with the kind set at the failure site."""

    default_kind = ErrorKind.UNEXPECTED

    def __init__(self, message: str, *, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind

    @property
    def transient(self) -> bool:
        return self.kind.transient


class TransientProcessingError(BillingProcessingError):
    default_kind = ErrorKind.OUT_OF_ORDER

    def __init__(self, message: str, *, kind: ErrorKind | None = None) -> None:
        super().__init__(message, kind=kind)
        if not self.kind.transient:
            raise ValueError(f"{self.kind.value} is not a transient error kind")


class PermanentProcessingError(BillingProcessingError):
    default_kind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, kind: ErrorKind | None = None) -> None:
        super().__init__(message, kind=kind)
        if self.kind.transient:
            raise ValueError(f"{self.kind.value} is not a permanent error kind")


class MissingFieldError(PermanentProcessingError):
    default_kind = ErrorKind.MISSING_FIELD

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


def _classify_stripe_error(exc: stripe.StripeError) -> ErrorKind:
    if isinstance(exc, stripe.APIConnectionError):
        return ErrorKind.CONNECTION
    if isinstance(exc, stripe.RateLimitError):
        return ErrorKind.RATE_LIMITED
    status_code = getattr(exc, "http_status", None)
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if isinstance(exc, stripe.APIError) or (status_code is not None and status_code >= 500):
        return ErrorKind.PROVIDER_ERROR
    return ErrorKind.VALIDATION


def _classify_database_error(exc: sa_exc.SQLAlchemyError) -> ErrorKind:
    if isinstance(exc, sa_exc.TimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, sa_exc.IntegrityError):
        return ErrorKind.CONSTRAINT_VIOLATION
    if isinstance(exc, sa_exc.DBAPIError) and exc.connection_invalidated:
        return ErrorKind.CONNECTION
    if isinstance(exc, (sa_exc.OperationalError, sa_exc.DisconnectionError)):
        return ErrorKind.CONNECTION
    return ErrorKind.UNEXPECTED


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, BillingProcessingError):
        return exc.kind
    if isinstance(exc, CircuitBreakerOpenError):
        return ErrorKind.PROVIDER_ERROR
    if isinstance(exc, stripe.StripeError):
        return _classify_stripe_error(exc)
    if isinstance(exc, sa_exc.SQLAlchemyError):
        return _classify_database_error(exc)
    if isinstance(exc, TimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, (ConnectionError, OSError)):
        return ErrorKind.CONNECTION
    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return ErrorKind.VALIDATION
    return ErrorKind.UNEXPECTED


def is_transient(exc: BaseException) -> bool:
    return classify_error(exc).transient
