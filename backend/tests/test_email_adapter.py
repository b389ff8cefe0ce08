import json

import httpx
import pytest

from app.infra.email import NOTICE_KIND_HEADER, EmailAdapter, NoopEmailAdapter, resolve_email_adapter
from app.settings import settings


@pytest.mark.anyio
async def test_email_adapter_off_does_not_send(monkeypatch):
    monkeypatch.setattr(settings, "email_mode", "off")

    sent = await EmailAdapter().send_email("owner@example.com", "Subject", "Body")

    assert sent is False


@pytest.mark.anyio
async def test_sendgrid_payload_carries_notice_category(monkeypatch):
    monkeypatch.setattr(settings, "email_mode", "sendgrid")
    monkeypatch.setattr(settings, "sendgrid_api_key", "SG.test")
    monkeypatch.setattr(settings, "email_from", "billing@cms.test")
    monkeypatch.setattr(settings, "email_from_name", "CMS Billing")
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(202)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        adapter = EmailAdapter(http_client=http_client)
        sent = await adapter.send_email(
            "owner@example.com", "Trial ending", "Body", headers={NOTICE_KIND_HEADER: "trial_ending"}
        )

    assert sent is True
    [request] = requests
    assert request.headers["Authorization"] == "Bearer SG.test"
    payload = json.loads(request.content)
    assert payload["personalizations"] == [{"to": [{"email": "owner@example.com"}]}]
    assert payload["from"] == {"email": "billing@cms.test", "name": "CMS Billing"}
    assert payload["headers"] == {NOTICE_KIND_HEADER: "trial_ending"}
    assert payload["categories"] == ["billing", "trial_ending"]


@pytest.mark.anyio
async def test_sendgrid_retries_server_errors(monkeypatch):
    monkeypatch.setattr(settings, "email_mode", "sendgrid")
    monkeypatch.setattr(settings, "sendgrid_api_key", "SG.test")
    monkeypatch.setattr(settings, "email_from", "billing@cms.test")
    monkeypatch.setattr(settings, "email_http_backoff_seconds", 0.0)
    statuses = iter([503, 202])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        sent = await EmailAdapter(http_client=http_client).send_email("owner@example.com", "Subject", "Body")

    assert sent is True


@pytest.mark.anyio
async def test_sendgrid_client_error_raises(monkeypatch):
    monkeypatch.setattr(settings, "email_mode", "sendgrid")
    monkeypatch.setattr(settings, "sendgrid_api_key", "SG.test")
    monkeypatch.setattr(settings, "email_from", "billing@cms.test")

    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(400))) as http_client:
        with pytest.raises(RuntimeError, match="sendgrid_status_400"):
            await EmailAdapter(http_client=http_client).send_email("owner@example.com", "Subject", "Body")


@pytest.mark.anyio
async def test_noop_adapter_captures_messages():
    adapter = NoopEmailAdapter()

    sent = await adapter.send_email("owner@example.com", "Subject", "Body", headers={NOTICE_KIND_HEADER: "x"})

    assert sent is False
    assert adapter.captured[0].recipient == "owner@example.com"
    assert adapter.captured[0].headers == {NOTICE_KIND_HEADER: "x"}


def test_resolve_email_adapter_uses_noop_when_off():
    assert isinstance(resolve_email_adapter(settings), NoopEmailAdapter)
