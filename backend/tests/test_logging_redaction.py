import json
import logging

import pytest

from app.infra.logging import clear_log_context, configure_logging, redact_pii, update_log_context
from app.main import app


def _last_json_line(capsys, marker: str) -> dict:
    captured = capsys.readouterr()
    lines = (captured.out + captured.err).strip().splitlines()
    line = next(line for line in reversed(lines) if marker in line)
    return json.loads(line)


def _remove_route(path: str) -> None:
    app.router.routes = [route for route in app.router.routes if getattr(route, "path", None) != path]


def test_logging_redacts_stripe_secrets_and_signatures(capsys):
    configure_logging()
    logger = logging.getLogger("billing-redaction-test")

    logger.warning(
        "billing_webhook_signature_invalid",
        extra={
            "extra": {
                "stripe_signature": "t=1700000000,v1=" + "ab" * 32,
                "note": "retry with sk_live_abc123DEF and whsec_zzz999",
                "header": "t=1,v1=" + "cd" * 32,
                "billing_email": "billing@acme.test",
            }
        },
    )

    payload = _last_json_line(capsys, "billing_webhook_signature_invalid")
    assert payload["stripe_signature"] == "[REDACTED]"
    assert payload["billing_email"] == "[REDACTED]"
    assert "sk_live_abc123DEF" not in payload["note"]
    assert "whsec_zzz999" not in payload["note"]
    assert "cd" * 32 not in payload["header"]


def test_redact_pii_masks_emails_and_bearer_tokens():
    redacted = redact_pii("owner@example.com sent Authorization: Bearer abc.def")

    assert "owner@example.com" not in redacted
    assert "abc.def" not in redacted


@pytest.mark.parametrize(
    "line",
    [
        "Authorization: Bearer sk-abc.def",
        "authorization=Basic dXNlcjpwYXNz",
        "retrying with bearer sk-abc.def",
    ],
)
def test_redact_pii_removes_credentials_after_scheme(line):
    redacted = redact_pii(line)

    assert "sk-abc.def" not in redacted
    assert "dXNlcjpwYXNz" not in redacted
    assert "REDACTED_TOKEN" in redacted


def test_log_context_is_included(capsys):
    configure_logging()
    update_log_context(event_id="evt_ctx", event_type="invoice.upcoming")
    try:
        logging.getLogger("billing-context-test").info("billing_event_processed")
    finally:
        clear_log_context()

    payload = _last_json_line(capsys, "billing_event_processed")
    assert payload["event_id"] == "evt_ctx"
    assert payload["event_type"] == "invoice.upcoming"


def test_request_id_present_in_logs_and_response(client_no_raise, capsys):
    configure_logging()

    async def boom():  # pragma: no cover - executed via HTTP
        raise RuntimeError("boom")

    route_path = "/boom-log"
    app.router.add_api_route(route_path, boom, methods=["GET"])

    response = client_no_raise.get(route_path, headers={"X-Request-ID": "req-123"})

    assert response.status_code == 500
    assert response.json()["request_id"] == "req-123"
    log_payload = _last_json_line(capsys, "unhandled_exception")
    assert log_payload.get("request_id") == "req-123"
    _remove_route(route_path)
