# src/qr_confirm/services/__init__.py
"""Business logic services for QR payment confirmation."""

from .audit import AuditRecorder
from .confirmer import PaymentConfirmer
from .issuer import TokenIssuer
from .notifier import EventNotifier, OutboxDispatcher, OutboxWorker
from .rate_limit import RateLimiter
from .validator import TokenValidator

__all__ = [
    "AuditRecorder",
    "EventNotifier",
    "OutboxDispatcher",
    "OutboxWorker",
    "PaymentConfirmer",
    "RateLimiter",
    "TokenIssuer",
    "TokenValidator",
]
