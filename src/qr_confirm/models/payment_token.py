# src/qr_confirm/models/payment_token.py
"""SQLAlchemy model for issued QR payment tokens."""

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from qr_confirm.db.session import Base

USED_REASON_PAYMENT = "payment"
USED_REASON_SUPERSEDED = "superseded"
USED_REASON_CANCELLED = "cancelled"


class PaymentQRToken(Base):
    """One issuance of a signed payment token for one order.

    There is no status column: a token is valid for use iff
    ``used`` is false and the current time is before ``expires_at``.
    """

    __tablename__ = "payment_qr_token"
    __table_args__ = (
        Index("ix_payment_qr_token_order_valid", "order_id", "used", "expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token_id: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    order_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    nonce: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    short_code: Mapped[str] = mapped_column(String(8), nullable=False, unique=True)
    # SHA-256 hex digest of the full signed token.
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )

    # Flipped exactly once, by a conditional update guarded on used = false.
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    used_by_user: Mapped[str | None] = mapped_column(String(100), nullable=True)
    used_by_device: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # 'payment', 'superseded' or 'cancelled'.
    used_reason: Mapped[str | None] = mapped_column(String(20), nullable=True)
