"""Initial schema: users, packs, purchases, ledger, classes, bookings, payments.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("role", sa.String(10), nullable=False, server_default="USER"),
        sa.Column("affiliation", sa.String(20), nullable=False, server_default="NONE"),
        *_timestamps(),
        sa.CheckConstraint("role IN ('USER', 'ADMIN')", name="check_user_role"),
        sa.CheckConstraint("affiliation IN ('NONE', 'WELLHUB', 'TOTALPASS')", name="check_user_affiliation"),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "packs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("classes", sa.Integer(), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("validity_days", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("once_per_user", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint("classes > 0", name="check_pack_classes_positive"),
        sa.CheckConstraint("validity_days > 0", name="check_pack_validity_positive"),
    )
    op.create_index("ix_packs_id", "packs", ["id"])

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("provider", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(10), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        # Correlation fields; the UNIQUE ones make provider notifications idempotent
        sa.Column("provider_payment_id", sa.String(64), nullable=True, unique=True),
        sa.Column("preference_id", sa.String(128), nullable=True),
        sa.Column("external_reference", sa.String(255), nullable=True, unique=True),
        sa.Column("payer_email", sa.String(255), nullable=True),
        sa.Column("raw", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('PENDING', 'APPROVED', 'REJECTED', 'CANCELED', 'REFUNDED')",
            name="check_payment_status",
        ),
    )
    op.create_index("ix_payments_id", "payments", ["id"])
    op.create_index("ix_payments_user_id", "payments", ["user_id"])
    op.create_index("ix_payments_preference_id", "payments", ["preference_id"])

    op.create_table(
        "pack_purchases",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("pack_id", sa.Integer(), sa.ForeignKey("packs.id"), nullable=False),
        sa.Column("classes_left", sa.Integer(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        # One purchase per payment: the database-level guard against double credit
        sa.Column("payment_id", sa.Integer(), sa.ForeignKey("payments.id"), nullable=True, unique=True),
        *_timestamps(),
    )
    op.create_index("ix_pack_purchases_id", "pack_purchases", ["id"])
    op.create_index("ix_pack_purchases_user_id", "pack_purchases", ["user_id"])
    # Funding lookup: soonest-expiring unexpired purchase for a user
    op.create_index("ix_pack_purchases_user_expires", "pack_purchases", ["user_id", "expires_at"])

    op.create_table(
        "classes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_min", sa.Integer(), nullable=False, server_default=sa.text("60")),
        sa.Column("capacity", sa.Integer(), nullable=False),
        sa.Column("credit_cost", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("is_canceled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cancel_before_min", sa.Integer(), nullable=True),
        sa.Column("instructor_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("capacity >= 0", name="check_class_capacity_non_negative"),
        sa.CheckConstraint("credit_cost > 0", name="check_class_credit_cost_positive"),
    )
    op.create_index("ix_classes_id", "classes", ["id"])
    op.create_index("ix_classes_date", "classes", ["date"])

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("guest_name", sa.String(255), nullable=True),
        sa.Column("class_id", sa.Integer(), sa.ForeignKey("classes.id"), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("status", sa.String(20), nullable=False, server_default="ACTIVE"),
        sa.Column("pack_purchase_id", sa.Integer(), sa.ForeignKey("pack_purchases.id"), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_token", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("attended", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint("quantity > 0", name="check_booking_quantity_positive"),
        sa.CheckConstraint("status IN ('ACTIVE', 'CANCELED')", name="check_booking_status"),
    )
    op.create_index("ix_bookings_id", "bookings", ["id"])
    op.create_index("ix_bookings_user_id", "bookings", ["user_id"])
    op.create_index("ix_bookings_class_id", "bookings", ["class_id"])
    # Capacity aggregation: SUM(quantity) WHERE class_id = ? AND status = 'ACTIVE'
    op.create_index("ix_bookings_class_status", "bookings", ["class_id", "status"])
    # A user holds at most one ACTIVE booking per class; canceled rows do not count
    op.create_index(
        "uq_bookings_active_user_class",
        "bookings",
        ["user_id", "class_id"],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'"),
        sqlite_where=sa.text("status = 'ACTIVE'"),
    )

    op.create_table(
        "token_ledger",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(30), nullable=False),
        sa.Column("pack_purchase_id", sa.Integer(), sa.ForeignKey("pack_purchases.id"), nullable=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id"), nullable=True),
        sa.Column("note", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("delta <> 0", name="check_ledger_delta_nonzero"),
        sa.CheckConstraint(
            "reason IN ('PURCHASE_CREDIT', 'BOOKING_DEBIT', 'CANCEL_REFUND', "
            "'ADMIN_ADJUST', 'CORPORATE_MONTHLY')",
            name="check_ledger_reason",
        ),
    )
    op.create_index("ix_token_ledger_id", "token_ledger", ["id"])
    op.create_index("ix_token_ledger_pack_purchase_id", "token_ledger", ["pack_purchase_id"])
    op.create_index("ix_token_ledger_booking_id", "token_ledger", ["booking_id"])
    op.create_index("ix_token_ledger_user_created", "token_ledger", ["user_id", "created_at"])

    op.create_table(
        "checkout_links",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(16), nullable=False, unique=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="CREATED"),
        sa.Column("pack_id", sa.Integer(), sa.ForeignKey("packs.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("payment_id", sa.Integer(), sa.ForeignKey("payments.id"), nullable=True, unique=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('CREATED', 'OPEN', 'COMPLETED', 'CANCELED')", name="check_checkout_link_status"
        ),
    )
    op.create_index("ix_checkout_links_id", "checkout_links", ["id"])

    op.create_table(
        "webhook_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("provider", sa.String(30), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False, server_default="unknown"),
        sa.Column("delivery_id", sa.String(128), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("raw_body", sa.Text(), nullable=True),
        sa.Column("signature_valid", sa.Boolean(), nullable=True),
        sa.Column("processed_ok", sa.Boolean(), nullable=True),
        sa.Column("error", sa.String(255), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_webhook_logs_id", "webhook_logs", ["id"])
    op.create_index("ix_webhook_logs_delivery_id", "webhook_logs", ["delivery_id"])


def downgrade() -> None:
    op.drop_table("webhook_logs")
    op.drop_table("checkout_links")
    op.drop_table("token_ledger")
    op.drop_table("bookings")
    op.drop_table("classes")
    op.drop_table("pack_purchases")
    op.drop_table("payments")
    op.drop_table("packs")
    op.drop_table("users")
