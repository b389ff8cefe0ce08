import pytest
import stripe
from sqlalchemy import exc as sa_exc

from app.domain.billing.errors import (
    ErrorKind,
    MissingFieldError,
    PermanentProcessingError,
    TransientProcessingError,
    classify_error,
    is_transient,
)
from app.shared.circuit_breaker import CircuitBreakerOpenError


@pytest.mark.parametrize(
    ("exc", "kind"),
    [
        (TransientProcessingError("subscription missing"), ErrorKind.OUT_OF_ORDER),
        (PermanentProcessingError("bad tier"), ErrorKind.VALIDATION),
        (MissingFieldError("no customer", field="customer"), ErrorKind.MISSING_FIELD),
        (CircuitBreakerOpenError("stripe"), ErrorKind.PROVIDER_ERROR),
        (stripe.APIConnectionError("reset"), ErrorKind.CONNECTION),
        (stripe.RateLimitError("slow down"), ErrorKind.RATE_LIMITED),
        (stripe.APIError("stripe 500"), ErrorKind.PROVIDER_ERROR),
        (stripe.InvalidRequestError("No such subscription", param="id"), ErrorKind.VALIDATION),
        (sa_exc.OperationalError("SELECT 1", {}, Exception("server closed")), ErrorKind.CONNECTION),
        (sa_exc.IntegrityError("INSERT", {}, Exception("check failed")), ErrorKind.CONSTRAINT_VIOLATION),
        (sa_exc.TimeoutError("pool exhausted"), ErrorKind.TIMEOUT),
        (TimeoutError(), ErrorKind.TIMEOUT),
        (ConnectionResetError(), ErrorKind.CONNECTION),
        (KeyError("metadata"), ErrorKind.VALIDATION),
        (ZeroDivisionError(), ErrorKind.UNEXPECTED),
    ],
)
def test_classify_error(exc, kind):
    assert classify_error(exc) is kind


def test_transient_kinds_are_retried():
    assert is_transient(TransientProcessingError("later"))
    assert is_transient(TimeoutError())
    assert not is_transient(MissingFieldError("missing"))
    assert not is_transient(sa_exc.IntegrityError("INSERT", {}, Exception("dup")))


def test_kind_must_match_error_family():
    with pytest.raises(ValueError):
        TransientProcessingError("nope", kind=ErrorKind.VALIDATION)
    with pytest.raises(ValueError):
        PermanentProcessingError("nope", kind=ErrorKind.TIMEOUT)

    error = TransientProcessingError("stripe busy", kind=ErrorKind.RATE_LIMITED)
    assert error.transient
    assert error.kind is ErrorKind.RATE_LIMITED
