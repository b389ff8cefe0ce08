import asyncio
import os
import uuid
from contextlib import contextmanager
from pathlib import Path

os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("TESTING", "true")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("EMAIL_MODE", "off")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool, StaticPool  # noqa: E402

from app.domain.saas.db_models import Membership, MembershipRole, User  # noqa: E402
from app.domain.saas.service import ensure_default_org  # noqa: E402
from app.infra.db import Base, get_db_session  # noqa: E402
from app.infra.email import NoopEmailAdapter  # noqa: E402
from app.main import app  # noqa: E402
from app.settings import settings  # noqa: E402

DEFAULT_ORG_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
STRIPE_SIGNATURE = "t=1700000000,v1=" + "ab" * 32
TEST_DB = Path("test.db")
# Point at a Postgres database to exercise row locks; SQLite ignores FOR UPDATE.
TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///./{TEST_DB}"


@pytest.fixture
def anyio_backend():
    return "asyncio"


async def _seed_default_org(engine) -> None:
    async with async_sessionmaker(engine, expire_on_commit=False)() as session:
        await ensure_default_org(session)
        await session.commit()


@pytest.fixture(scope="session")
def test_engine():
    if TEST_DATABASE_URL.startswith("sqlite"):
        TEST_DB.unlink(missing_ok=True)
        engine = create_async_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False, "timeout": 30},
            poolclass=StaticPool,
        )
    else:
        # Fixtures and tests run on different event loops, so connections are never reused.
        engine = create_async_engine(TEST_DATABASE_URL, poolclass=NullPool)

    async def create_schema() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        await _seed_default_org(engine)

    asyncio.run(create_schema())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def wipe() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())
        await _seed_default_org(test_engine)

    asyncio.run(wipe())
    yield


@pytest.fixture(autouse=True)
def billing_test_settings(monkeypatch):
    monkeypatch.setattr(settings, "stripe_webhook_secret", "whsec_test")
    monkeypatch.setattr(settings, "stripe_secret_key", "sk_test_dummy")
    monkeypatch.setattr(settings, "email_mode", "off")


@pytest.fixture(autouse=True)
def restore_app_state():
    """Tests swap in fake Stripe clients and email adapters; put the app's own back afterwards."""
    saved = {name: getattr(app.state, name, None) for name in ("stripe_client", "email_adapter")}
    yield
    for name, value in saved.items():
        setattr(app.state, name, value)


@pytest.fixture()
def email_adapter():
    adapter = NoopEmailAdapter()
    app.state.email_adapter = adapter
    return adapter


@contextmanager
def _bound_to_test_db(session_maker, **client_options):
    async def session_override():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = session_override
    previous_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = session_maker
    try:
        with TestClient(app, **client_options) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()
        app.state.db_session_factory = previous_factory


@pytest.fixture()
def client(async_session_maker):
    with _bound_to_test_db(async_session_maker) as test_client:
        yield test_client


@pytest.fixture()
def client_no_raise(async_session_maker):
    """Unhandled errors come back as 500 responses instead of propagating into the test."""
    with _bound_to_test_db(async_session_maker, raise_server_exceptions=False) as test_client:
        yield test_client


async def seed_org_admins(session, org_id=DEFAULT_ORG_ID, *, emails=("owner@example.com",)):
    """First address becomes the owner, the rest admins; returns the addresses."""
    for position, email in enumerate(emails):
        user = User(email=email)
        session.add(user)
        await session.flush()
        role = MembershipRole.OWNER if position == 0 else MembershipRole.ADMIN
        session.add(Membership(org_id=org_id, user_id=user.user_id, role=role, is_active=True))
    await session.commit()
    return list(emails)


def make_event(event_id: str, event_type: str, obj: dict, *, created: int = 1700000000) -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "livemode": False,
        "data": {"object": obj},
    }


class FakeStripeClient:
    """Skips signature checks and serves subscriptions from a dict, recording each lookup."""

    def __init__(self, event: dict | None = None, subscriptions: dict | None = None) -> None:
        self.event = event
        self.subscriptions = dict(subscriptions or {})
        self.retrieved: list[str] = []

    def verify_webhook(self, payload, signature):
        if self.event is None:
            raise ValueError("no event queued")
        return self.event

    async def retrieve_subscription(self, subscription_id: str):
        self.retrieved.append(subscription_id)
        return self.subscriptions[subscription_id]


def post_event(client, stripe_client: FakeStripeClient, event: dict, path: str = "/v1/billing/stripe/webhook"):
    stripe_client.event = event
    app.state.stripe_client = stripe_client
    return client.post(path, content=b"{}", headers={"Stripe-Signature": STRIPE_SIGNATURE})
