"""billing core tables

Revision ID: 0001_billing_core
Revises:
Create Date: 2025-06-01 00:00:00
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_billing_core"
down_revision = None
branch_labels = None
depends_on = None

UUID_TYPE = sa.Uuid(as_uuid=True)
JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

PLAN_TIERS = ("free", "starter", "pro", "enterprise")
BILLING_CYCLES = ("monthly", "annual")
SUBSCRIPTION_STATUSES = (
    "trialing",
    "active",
    "past_due",
    "canceled",
    "incomplete",
    "incomplete_expired",
    "unpaid",
    "paused",
)
INVOICE_STATUSES = ("draft", "open", "paid", "void", "uncollectible")


def _in(column: str, values: tuple[str, ...]) -> str:
    return f"{column} IN ({', '.join(repr(value) for value in values)})"


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("org_id", UUID_TYPE, primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("billing_email", sa.String(length=255)),
        *_timestamps(),
    )
    op.create_table(
        "users",
        sa.Column("user_id", UUID_TYPE, primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_table(
        "memberships",
        sa.Column("membership_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("org_id", UUID_TYPE, sa.ForeignKey("organizations.org_id", ondelete="CASCADE")),
        sa.Column("user_id", UUID_TYPE, sa.ForeignKey("users.user_id", ondelete="CASCADE")),
        sa.Column(
            "role",
            sa.Enum("OWNER", "ADMIN", "EDITOR", "AUTHOR", "VIEWER", name="membershiprole"),
            nullable=False,
        ),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("org_id", "user_id", name="uq_memberships_org_user"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "org_id", UUID_TYPE, sa.ForeignKey("organizations.org_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=False),
        sa.Column("stripe_subscription_id", sa.String(length=255), nullable=False),
        sa.Column("stripe_price_id", sa.String(length=255), nullable=False),
        sa.Column("plan_tier", sa.String(length=32), nullable=False),
        sa.Column("billing_cycle", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True)),
        sa.Column("current_period_end", sa.DateTime(timezone=True)),
        sa.Column("cancel_at_period_end", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("canceled_at", sa.DateTime(timezone=True)),
        sa.Column("trial_start", sa.DateTime(timezone=True)),
        sa.Column("trial_end", sa.DateTime(timezone=True)),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("stripe_subscription_id", name="uq_subscriptions_stripe_subscription_id"),
        sa.CheckConstraint(_in("plan_tier", PLAN_TIERS), name="ck_subscriptions_plan_tier"),
        sa.CheckConstraint(_in("billing_cycle", BILLING_CYCLES), name="ck_subscriptions_billing_cycle"),
        sa.CheckConstraint(_in("status", SUBSCRIPTION_STATUSES), name="ck_subscriptions_status"),
    )
    op.create_index("ix_subscriptions_org_id", "subscriptions", ["org_id"])
    op.create_index("ix_subscriptions_stripe_customer_id", "subscriptions", ["stripe_customer_id"])

    op.create_table(
        "subscription_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("stripe_event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=128), nullable=False),
        sa.Column("data", JSON_TYPE, nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("processing_error", sa.Text()),
        sa.Column("org_id", UUID_TYPE, sa.ForeignKey("organizations.org_id", ondelete="SET NULL")),
        sa.Column("subscription_id", sa.Integer(), sa.ForeignKey("subscriptions.id", ondelete="SET NULL")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("stripe_event_id", name="uq_subscription_events_stripe_event_id"),
    )
    op.create_index("ix_subscription_events_org_id", "subscription_events", ["org_id"])
    op.create_index("ix_subscription_events_unprocessed", "subscription_events", ["processed_at"])

    op.create_table(
        "billing_invoices",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "org_id", UUID_TYPE, sa.ForeignKey("organizations.org_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("subscription_id", sa.Integer(), sa.ForeignKey("subscriptions.id", ondelete="SET NULL")),
        sa.Column("stripe_invoice_id", sa.String(length=255), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("amount_paid_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("invoice_pdf_url", sa.Text()),
        sa.Column("hosted_invoice_url", sa.Text()),
        sa.Column("billing_reason", sa.String(length=100)),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.UniqueConstraint("stripe_invoice_id", name="uq_billing_invoices_stripe_invoice_id"),
        sa.CheckConstraint(_in("status", INVOICE_STATUSES), name="ck_billing_invoices_status"),
    )
    op.create_index("ix_billing_invoices_org_id", "billing_invoices", ["org_id"])

    op.create_table(
        "payment_methods",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "org_id", UUID_TYPE, sa.ForeignKey("organizations.org_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("stripe_payment_method_id", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=50), nullable=False),
        sa.Column("card_brand", sa.String(length=50)),
        sa.Column("card_last4", sa.String(length=4)),
        sa.Column("card_exp_month", sa.Integer()),
        sa.Column("card_exp_year", sa.Integer()),
        sa.Column("is_default", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.UniqueConstraint(
            "stripe_payment_method_id", name="uq_payment_methods_stripe_payment_method_id"
        ),
    )
    op.create_index("ix_payment_methods_org_active", "payment_methods", ["org_id", "deleted_at"])


def downgrade() -> None:
    op.drop_index("ix_payment_methods_org_active", table_name="payment_methods")
    op.drop_table("payment_methods")
    op.drop_index("ix_billing_invoices_org_id", table_name="billing_invoices")
    op.drop_table("billing_invoices")
    op.drop_index("ix_subscription_events_unprocessed", table_name="subscription_events")
    op.drop_index("ix_subscription_events_org_id", table_name="subscription_events")
    op.drop_table("subscription_events")
    op.drop_index("ix_subscriptions_stripe_customer_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_org_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("memberships")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
    op.drop_table("organizations")
    sa.Enum(name="membershiprole").drop(op.get_bind(), checkfirst=True)
