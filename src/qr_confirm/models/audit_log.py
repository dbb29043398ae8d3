# src/qr_confirm/models/audit_log.py
"""Append-only audit trail for payment token actions."""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import BigInteger, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from qr_confirm.db.session import Base
from qr_confirm.db.time import utcnow


class AuditAction(str, Enum):
    """Protocol action recorded by an audit entry."""

    ISSUE = "ISSUE"
    SCAN = "SCAN"
    VALIDATE = "VALIDATE"
    CONFIRM_PAYMENT = "CONFIRM_PAYMENT"
    CANCEL = "CANCEL"
    REGENERATE = "REGENERATE"


class AuditStatus(str, Enum):
    """Outcome recorded by an audit entry."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    INVALID = "INVALID"
    DUPLICATE = "DUPLICATE"
    UNAUTHORIZED = "UNAUTHORIZED"


SECURITY_EVENT_STATUSES = frozenset(
    {
        AuditStatus.FAILED.value,
        AuditStatus.INVALID.value,
        AuditStatus.EXPIRED.value,
        AuditStatus.DUPLICATE.value,
        AuditStatus.UNAUTHORIZED.value,
    }
)


class QRScanAuditLog(Base):
    """One immutable row per issuance, scan, validation or confirmation attempt."""

    __tablename__ = "qr_scan_audit_log"
    __table_args__ = (
        Index("ix_qr_scan_audit_log_store_terminal", "store_id", "terminal_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Null when the token could not be resolved to an order.
    order_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    token_id: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    short_code: Mapped[str | None] = mapped_column(String(8), nullable=True)

    action: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    error_code: Mapped[str | None] = mapped_column(String(30), nullable=True)
    error_message: Mapped[str | None] = mapped_column(String(500), nullable=True)

    device_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    device_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    user_role: Mapped[str | None] = mapped_column(String(20), nullable=True)

    scan_timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Network and location context.
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True, index=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    store_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    terminal_id: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Populated for CONFIRM_PAYMENT actions.
    payment_method: Mapped[str | None] = mapped_column(String(20), nullable=True)
    payment_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    @property
    def is_security_event(self) -> bool:
        return self.status in SECURITY_EVENT_STATUSES
