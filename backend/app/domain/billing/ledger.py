from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.billing.db_models import SubscriptionEvent
from app.domain.billing.events import BillingEvent
from app.infra.db import dialect_name

MAX_ERROR_LENGTH = 4000


class LockOutcome(str, enum.Enum):
    OWNED = "owned"
    DUPLICATE = "duplicate"
    CONCURRENT = "concurrent"


def _insert_for(session: AsyncSession):
    return sqlite.insert if dialect_name(session) == "sqlite" else postgresql.insert


async def is_processed(session: AsyncSession, stripe_event_id: str) -> bool:
    """Lock-free fast path for redeliveries of already applied events."""
    processed_at = await session.scalar(
        sa.select(SubscriptionEvent.processed_at).where(SubscriptionEvent.stripe_event_id == stripe_event_id)
    )
    return processed_at is not None


async def claim_event(session: AsyncSession, event: BillingEvent) -> bool:
    """Insert the event record unless one already exists.

    Returns ``True`` when this call created the row; ``False`` means an earlier
    delivery claimed it and this one is a retry.
    """
    insert = _insert_for(session)
    stmt = (
        insert(SubscriptionEvent.__table__)
        .values(
            stripe_event_id=event.event_id,
            event_type=event.event_type,
            data=event.snapshot,
            processed_at=None,
        )
        .on_conflict_do_nothing(index_elements=["stripe_event_id"])
    )
    result = await session.execute(stmt)
    return bool(result.rowcount)


async def lock_for_processing(
    session: AsyncSession, stripe_event_id: str
) -> tuple[LockOutcome, SubscriptionEvent | None]:
    """Take the row lock for an event, skipping rows another worker holds.

    Must run inside an open transaction. SQLite has no row locks, so there the
    statement degrades to a plain select and writers are serialized by the
    database file lock instead.
    """
    stmt = (
        sa.select(SubscriptionEvent)
        .where(SubscriptionEvent.stripe_event_id == stripe_event_id)
        .with_for_update(skip_locked=True)
    )
    record = await session.scalar(stmt)
    if record is None:
        return LockOutcome.CONCURRENT, None
    if record.processed_at is not None:
        return LockOutcome.DUPLICATE, record
    return LockOutcome.OWNED, record


def mark_processed(record: SubscriptionEvent, *, now: datetime | None = None) -> None:
    record.processed_at = now or datetime.now(timezone.utc)
    record.processing_error = None


def link_event(
    record: SubscriptionEvent,
    *,
    org_id: uuid.UUID | None = None,
    subscription_id: int | None = None,
) -> None:
    if org_id is not None:
        record.org_id = org_id
    if subscription_id is not None:
        record.subscription_id = subscription_id


async def record_failure(session: AsyncSession, event: BillingEvent, error: str) -> None:
    """Persist ``error`` on the event record, creating it when the claim never landed."""
    message = error[:MAX_ERROR_LENGTH]
    insert = _insert_for(session)
    stmt = insert(SubscriptionEvent.__table__).values(
        stripe_event_id=event.event_id,
        event_type=event.event_type,
        data=event.snapshot,
        processed_at=None,
        processing_error=message,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["stripe_event_id"],
        set_={"processing_error": stmt.excluded.processing_error},
    )
    await session.execute(stmt)
