# src/qr_confirm/models/__init__.py
"""SQLAlchemy models for the QR payment confirmation service."""

from .audit_log import AuditAction, AuditStatus, QRScanAuditLog
from .order import CustomerOrder, OrderStatus, PaymentMethod, PaymentStatus
from .payment_event_outbox import PaymentEventOutbox
from .payment_token import PaymentQRToken

__all__ = [
    "AuditAction", "AuditStatus", "QRScanAuditLog",
    "CustomerOrder", "OrderStatus", "PaymentMethod", "PaymentStatus",
    "PaymentEventOutbox",
    "PaymentQRToken",
]
