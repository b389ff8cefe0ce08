from app.settings import settings
from tests.conftest import FakeStripeClient, make_event, post_event


def test_metrics_endpoint_requires_token_in_prod(client, monkeypatch):
    monkeypatch.setattr(settings, "app_env", "prod")
    monkeypatch.setattr(settings, "metrics_token", "secret-token")

    unauthorized = client.get("/metrics")
    assert unauthorized.status_code == 401

    wrong = client.get("/metrics", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401

    authorized = client.get("/metrics", headers={"Authorization": "Bearer secret-token"})
    assert authorized.status_code == 200


def test_metrics_query_token_is_not_accepted(client, monkeypatch):
    monkeypatch.setattr(settings, "app_env", "prod")
    monkeypatch.setattr(settings, "metrics_token", "secret-token")

    assert client.get("/metrics?token=secret-token").status_code == 401


def test_webhook_outcomes_are_exported(client, monkeypatch):
    monkeypatch.setattr(settings, "app_env", "dev")

    post_event(client, FakeStripeClient(), make_event("evt_metrics", "charge.refunded", {"id": "ch_1"}))
    bad_client = FakeStripeClient()
    bad_client.verify_webhook = lambda payload, signature: (_ for _ in ()).throw(ValueError("bad"))
    post_event(client, bad_client, make_event("evt_forged", "charge.refunded", {}))

    body = client.get("/metrics").text

    assert 'stripe_webhook_events_total{outcome="processed"}' in body
    assert 'stripe_webhook_events_total{outcome="invalid_signature"}' in body
    assert 'webhook_errors_total{type="invalid_signature"}' in body
    assert 'billing_events_total{event_type="charge.refunded",outcome="unhandled"}' in body
    assert 'http_request_latency_seconds_count{method="POST",path="/v1/billing/stripe/webhook"' in body
