"""payment qr tokens

Revision ID: 5c2e8f1a9b3d
Revises:
Create Date: 2026-10-18 09:12:44.318204

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "5c2e8f1a9b3d"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create token, audit, order boundary and outbox tables."""
    op.create_table(
        "customer_order",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("order_number", sa.String(length=50), nullable=False),
        sa.Column("total_amount", sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("payment_status", sa.String(length=20), nullable=False),
        sa.Column("payment_method", sa.String(length=20), nullable=True),
        sa.Column("transaction_id", sa.String(length=100), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("qr_payment_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("qr_confirmed_by_user_id", sa.String(length=100), nullable=True),
        sa.Column("qr_confirmed_by_device_id", sa.String(length=100), nullable=True),
        sa.Column("qr_token_generation", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_number"),
    )

    op.create_table(
        "payment_qr_token",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("token_id", sa.String(length=50), nullable=False),
        sa.Column("order_id", sa.BigInteger(), nullable=False),
        sa.Column("nonce", sa.String(length=100), nullable=False),
        sa.Column("short_code", sa.String(length=8), nullable=False),
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("used_by_user", sa.String(length=100), nullable=True),
        sa.Column("used_by_device", sa.String(length=100), nullable=True),
        sa.Column("used_reason", sa.String(length=20), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token_id"),
        sa.UniqueConstraint("nonce"),
        sa.UniqueConstraint("short_code"),
    )
    op.create_index("ix_payment_qr_token_order_id", "payment_qr_token", ["order_id"])
    op.create_index("ix_payment_qr_token_expires_at", "payment_qr_token", ["expires_at"])
    op.create_index(
        "ix_payment_qr_token_order_valid",
        "payment_qr_token",
        ["order_id", "used", "expires_at"],
    )

    op.create_table(
        "qr_scan_audit_log",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("order_id", sa.BigInteger(), nullable=True),
        sa.Column("token_id", sa.String(length=50), nullable=True),
        sa.Column("short_code", sa.String(length=8), nullable=True),
        sa.Column("action", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("error_code", sa.String(length=30), nullable=True),
        sa.Column("error_message", sa.String(length=500), nullable=True),
        sa.Column("device_id", sa.String(length=100), nullable=False),
        sa.Column("device_type", sa.String(length=50), nullable=True),
        sa.Column("user_id", sa.String(length=100), nullable=True),
        sa.Column("user_role", sa.String(length=20), nullable=True),
        sa.Column("scan_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("user_agent", sa.String(length=500), nullable=True),
        sa.Column("store_id", sa.BigInteger(), nullable=True),
        sa.Column("terminal_id", sa.String(length=50), nullable=True),
        sa.Column("payment_method", sa.String(length=20), nullable=True),
        sa.Column("payment_amount", sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column("transaction_id", sa.String(length=100), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    for column in (
        "order_id",
        "token_id",
        "action",
        "status",
        "device_id",
        "user_id",
        "scan_timestamp",
        "ip_address",
    ):
        op.create_index(f"ix_qr_scan_audit_log_{column}", "qr_scan_audit_log", [column])
    op.create_index(
        "ix_qr_scan_audit_log_store_terminal",
        "qr_scan_audit_log",
        ["store_id", "terminal_id"],
    )

    op.create_table(
        "payment_event_outbox",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("event_type", sa.String(length=50), nullable=False),
        sa.Column("idempotency_key", sa.String(length=100), nullable=False),
        sa.Column("order_id", sa.BigInteger(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("retry_count", sa.SmallInteger(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index("ix_payment_event_outbox_order_id", "payment_event_outbox", ["order_id"])
    op.create_index("ix_payment_event_outbox_status", "payment_event_outbox", ["status"])


def downgrade() -> None:
    """Drop all tables created by this revision."""
    op.drop_table("payment_event_outbox")
    op.drop_table("qr_scan_audit_log")
    op.drop_table("payment_qr_token")
    op.drop_table("customer_order")
