from __future__ import annotations

import uuid

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.saas.db_models import BILLING_ADMIN_ROLES, Membership, Organization, User
from app.infra.db import dialect_name
from app.settings import settings

DEFAULT_ORG_NAME = "Default Org"


def _insert_if_absent(session: AsyncSession, values: dict) -> sa.Insert:
    table = Organization.__table__
    if dialect_name(session) == "sqlite":
        return sqlite.insert(table).values(**values).prefix_with("OR IGNORE")
    return postgresql.insert(table).values(**values).on_conflict_do_nothing(index_elements=["org_id"])


async def ensure_default_org(session: AsyncSession) -> Organization:
    """Create the configured default organization once; safe to call from concurrent workers."""
    org_id = settings.default_org_id
    existing = await session.get(Organization, org_id)
    if existing is not None:
        return existing

    await session.execute(_insert_if_absent(session, {"org_id": org_id, "name": DEFAULT_ORG_NAME}))
    created = await session.get(Organization, org_id)
    if created is None:
        raise RuntimeError("default_org_missing")
    return created


async def get_admin_emails(session: AsyncSession, org_id: uuid.UUID) -> list[str]:
    """Billing notice recipients: active owners and admins of ``org_id``, sorted."""
    rows = await session.scalars(
        sa.select(User.email)
        .join(Membership, Membership.user_id == User.user_id)
        .where(Membership.org_id == org_id)
        .where(Membership.role.in_(BILLING_ADMIN_ROLES))
        .where(Membership.is_active.is_(True), User.is_active.is_(True))
        .order_by(User.email)
    )
    return [email for email in rows if email]
