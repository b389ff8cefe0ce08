"""JSON logging with redaction of billing secrets and personal data.

Log calls pass structured fields as ``extra={"extra": {...}}``; the formatter
flattens them into the JSON line next to the request/event context stored in
``LOG_CONTEXT``. Values under sensitive keys are replaced wholesale, and every
string is scrubbed for emails, Stripe keys and webhook signatures.
"""

import contextvars
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any

REDACTION_PATTERNS: tuple[tuple[re.Pattern[str], Any], ...] = (
    (re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"), "[REDACTED_EMAIL]"),
    (re.compile(r"\b(?:sk|rk)_(?:live|test)_[A-Za-z0-9]+|\bwhsec_[A-Za-z0-9]+"), "[REDACTED_SECRET]"),
    (re.compile(r"\bv[01]=[0-9a-fA-F]{16,}"), "[REDACTED_SIGNATURE]"),
    (
        re.compile(r"(?P<key>token|access_token|auth|signature|sig)=(?P<value>[^&\s]+)", re.IGNORECASE),
        lambda match: f"{match.group('key')}=[REDACTED_TOKEN]",
    ),
    (re.compile(r"(?i)\bauthorization\s*[:=]\s*(?:(?:bearer|basic)\s+)?\S+"), "authorization=[REDACTED_TOKEN]"),
    (re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-]+"), "Bearer [REDACTED_TOKEN]"),
)

PII_KEYS = frozenset({"email", "billing_email", "recipient", "recipients"})
SENSITIVE_KEYS = PII_KEYS | frozenset(
    {
        "authorization",
        "token",
        "api_key",
        "secret",
        "stripe_secret_key",
        "stripe_webhook_secret",
        "signature",
        "stripe_signature",
        "sig",
    }
)

LOG_CONTEXT: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar("log_context", default={})
_RESERVED_RECORD_ATTRS = frozenset(logging.LogRecord(None, 0, "", 0, "", (), None).__dict__) | {"message"}


def redact_pii(value: str) -> str:
    for pattern, replacement in REDACTION_PATTERNS:
        value = pattern.sub(replacement, value)
    return value


def sanitize(value: Any, key: str | None = None) -> Any:
    if key is not None and key.lower() in SENSITIVE_KEYS:
        return "[REDACTED]"
    if isinstance(value, str):
        return redact_pii(value)
    if isinstance(value, dict):
        return {item_key: sanitize(item, item_key) for item_key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [sanitize(item) for item in value]
    return value


def update_log_context(**fields: Any) -> dict[str, Any]:
    merged = {**LOG_CONTEXT.get(), **{key: value for key, value in fields.items() if value is not None}}
    LOG_CONTEXT.set(merged)
    return merged


def clear_log_context() -> None:
    LOG_CONTEXT.set({})


def _structured_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_RECORD_ATTRS and not key.startswith("_")
    }
    nested = fields.pop("extra", None)
    if isinstance(nested, dict):
        fields.update(nested)
    return fields


class RedactingJsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_pii(record.getMessage()),
        }
        payload.update(sanitize(LOG_CONTEXT.get()))
        payload.update(sanitize(_structured_fields(record)))
        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_type"] = record.exc_info[0].__name__
            payload["exc"] = redact_pii(self.formatException(record.exc_info))
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: int = logging.INFO) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(RedactingJsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
