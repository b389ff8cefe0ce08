from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.infra.db import Base, JSON_TYPE, UUID_TYPE


class PlanTier(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"
    PAUSED = "paused"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"


def _check_in(column: str, enum_cls: type[Enum], name: str) -> sa.CheckConstraint:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return sa.CheckConstraint(f"{column} IN ({values})", name=name)


class SubscriptionEvent(Base):
    """Ledger row per Stripe event id; ``processed_at`` is set only once fully applied."""

    __tablename__ = "subscription_events"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    stripe_event_id: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(sa.String(128), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON_TYPE, nullable=False, default=dict)
    processed_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    processing_error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    org_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID_TYPE, sa.ForeignKey("organizations.org_id", ondelete="SET NULL"), nullable=True
    )
    subscription_id: Mapped[int | None] = mapped_column(
        sa.ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )

    __table_args__ = (
        sa.UniqueConstraint("stripe_event_id", name="uq_subscription_events_stripe_event_id"),
        sa.Index("ix_subscription_events_org_id", "org_id"),
        sa.Index("ix_subscription_events_unprocessed", "processed_at"),
    )


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    org_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE, sa.ForeignKey("organizations.org_id", ondelete="CASCADE"), nullable=False
    )
    stripe_customer_id: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    stripe_subscription_id: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    stripe_price_id: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    plan_tier: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    billing_cycle: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    status: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    current_period_start: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True))
    current_period_end: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True))
    cancel_at_period_end: Mapped[bool] = mapped_column(
        sa.Boolean, nullable=False, default=False, server_default=sa.false()
    )
    canceled_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True))
    trial_start: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True))
    trial_end: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True))
    amount_cents: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(sa.String(3), nullable=False, default="USD")
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )

    invoices: Mapped[list["Invoice"]] = relationship("Invoice", back_populates="subscription")

    __table_args__ = (
        sa.UniqueConstraint("stripe_subscription_id", name="uq_subscriptions_stripe_subscription_id"),
        sa.Index("ix_subscriptions_org_id", "org_id"),
        sa.Index("ix_subscriptions_stripe_customer_id", "stripe_customer_id"),
        _check_in("plan_tier", PlanTier, "ck_subscriptions_plan_tier"),
        _check_in("billing_cycle", BillingCycle, "ck_subscriptions_billing_cycle"),
        _check_in("status", SubscriptionStatus, "ck_subscriptions_status"),
    )


class Invoice(Base):
    __tablename__ = "billing_invoices"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    org_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE, sa.ForeignKey("organizations.org_id", ondelete="CASCADE"), nullable=False
    )
    subscription_id: Mapped[int | None] = mapped_column(
        sa.ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True
    )
    stripe_invoice_id: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    amount_cents: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    amount_paid_cents: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(sa.String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    invoice_pdf_url: Mapped[str | None] = mapped_column(sa.Text())
    hosted_invoice_url: Mapped[str | None] = mapped_column(sa.Text())
    billing_reason: Mapped[str | None] = mapped_column(sa.String(100))
    period_start: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )

    subscription: Mapped[Subscription | None] = relationship("Subscription", back_populates="invoices")

    __table_args__ = (
        sa.UniqueConstraint("stripe_invoice_id", name="uq_billing_invoices_stripe_invoice_id"),
        sa.Index("ix_billing_invoices_org_id", "org_id"),
        _check_in("status", InvoiceStatus, "ck_billing_invoices_status"),
    )


class PaymentMethod(Base):
    __tablename__ = "payment_methods"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    org_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE, sa.ForeignKey("organizations.org_id", ondelete="CASCADE"), nullable=False
    )
    stripe_payment_method_id: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    type: Mapped[str] = mapped_column(sa.String(50), nullable=False)
    card_brand: Mapped[str | None] = mapped_column(sa.String(50))
    card_last4: Mapped[str | None] = mapped_column(sa.String(4))
    card_exp_month: Mapped[int | None] = mapped_column(sa.Integer)
    card_exp_year: Mapped[int | None] = mapped_column(sa.Integer)
    is_default: Mapped[bool] = mapped_column(
        sa.Boolean, nullable=False, default=False, server_default=sa.false()
    )
    deleted_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )

    __table_args__ = (
        sa.UniqueConstraint(
            "stripe_payment_method_id", name="uq_payment_methods_stripe_payment_method_id"
        ),
        sa.Index("ix_payment_methods_org_active", "org_id", "deleted_at"),
    )
