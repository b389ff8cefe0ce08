from app.settings import settings


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert client.head("/healthz").status_code == 200


def test_readyz_ok_with_database_and_webhook_secret(client):
    response = client.get("/readyz")

    assert response.status_code == 200
    payload = response.json()
    assert payload["ok"] is True
    db = next(check for check in payload["checks"] if check["name"] == "db")
    assert db["ok"] is True
    billing = next(check for check in payload["checks"] if check["name"] == "billing")
    assert billing["detail"] == {"webhook_configured": True, "stripe_circuit": "closed"}


def test_readyz_fails_without_webhook_secret(client, monkeypatch):
    monkeypatch.setattr(settings, "stripe_webhook_secret", None)

    response = client.get("/readyz")

    assert response.status_code == 503
    billing = next(check for check in response.json()["checks"] if check["name"] == "billing")
    assert billing["ok"] is False
    assert billing["detail"]["webhook_configured"] is False


def test_readyz_fails_when_database_unreachable(client):
    class BrokenSession:
        async def __aenter__(self):
            raise ConnectionRefusedError("db down")

        async def __aexit__(self, *exc_info):
            return False

    original = client.app.state.db_session_factory
    client.app.state.db_session_factory = BrokenSession
    try:
        response = client.get("/readyz")
    finally:
        client.app.state.db_session_factory = original

    assert response.status_code == 503
    db = next(check for check in response.json()["checks"] if check["name"] == "db")
    assert db["detail"] == {"message": "database check failed", "error": "ConnectionRefusedError"}
