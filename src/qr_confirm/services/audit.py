"""Audit recording for every payment token action.

Writing an audit row must never change the outcome of the protocol action it
describes. Failures are logged and swallowed here; the caller's result is
returned unchanged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from qr_confirm.core.errors import ErrorCode
from qr_confirm.core.security import Actor
from qr_confirm.db.time import Clock, utcnow
from qr_confirm.models.audit_log import AuditAction, AuditStatus, QRScanAuditLog
from qr_confirm.repositories.audit_repo import AuditRepository
from qr_confirm.services.results import DeviceContext

logger = logging.getLogger(__name__)

UNKNOWN_DEVICE = "unknown"
_MAX_ERROR_MESSAGE_LENGTH = 500

_STATUS_BY_CODE: dict[ErrorCode, AuditStatus] = {
    ErrorCode.TOKEN_EXPIRED: AuditStatus.EXPIRED,
    ErrorCode.TOKEN_USED: AuditStatus.DUPLICATE,
    ErrorCode.ORDER_ALREADY_PAID: AuditStatus.DUPLICATE,
    ErrorCode.TOKEN_INVALID: AuditStatus.INVALID,
    ErrorCode.TOKEN_NOT_FOUND: AuditStatus.INVALID,
    ErrorCode.UNAUTHORIZED: AuditStatus.UNAUTHORIZED,
    ErrorCode.VALIDATION_ERROR: AuditStatus.FAILED,
    ErrorCode.RATE_LIMIT_EXCEEDED: AuditStatus.FAILED,
    ErrorCode.INTERNAL_ERROR: AuditStatus.FAILED,
}


def status_for(error_code: ErrorCode | None) -> AuditStatus:
    """Map a returned outcome to the audit status stored for it."""
    if error_code is None:
        return AuditStatus.SUCCESS
    return _STATUS_BY_CODE[error_code]


@dataclass(frozen=True)
class AuditEntry:
    """Everything known about one protocol action at the time it finished."""

    action: AuditAction
    error_code: ErrorCode | None = None
    error_message: str | None = None
    order_id: int | None = None
    token_id: str | None = None
    short_code: str | None = None
    context: DeviceContext | None = None
    actor: Actor | None = None
    processing_time_ms: int | None = None
    payment_method: str | None = None
    payment_amount: Decimal | None = None
    transaction_id: str | None = None
    notes: str | None = None

    @property
    def status(self) -> AuditStatus:
        return status_for(self.error_code)


class AuditRecorder:
    """Append-only writer and security-monitoring reader for the audit trail."""

    def __init__(self, session: Session, *, clock: Clock = utcnow) -> None:
        self.session = session
        self.repo = AuditRepository(session)
        self._clock = clock

    def record(self, entry: AuditEntry) -> QRScanAuditLog | None:
        """Append one row and commit it.

        Returns the stored row, or None when the write failed. Never raises
        for storage errors.
        """
        context = entry.context
        actor = entry.actor
        message = entry.error_message
        if message is not None and len(message) > _MAX_ERROR_MESSAGE_LENGTH:
            message = message[: _MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
        now = self._clock()
        row = QRScanAuditLog(
            order_id=entry.order_id,
            token_id=entry.token_id,
            short_code=entry.short_code,
            action=entry.action.value,
            status=entry.status.value,
            error_code=entry.error_code.value if entry.error_code is not None else None,
            error_message=message,
            device_id=(context.device_id if context and context.device_id else UNKNOWN_DEVICE),
            device_type=context.device_type if context else None,
            terminal_id=context.terminal_id if context else None,
            store_id=context.store_id if context else None,
            ip_address=context.ip_address if context else None,
            user_agent=context.user_agent if context else None,
            user_id=actor.user_id if actor else None,
            user_role=actor.role if actor else None,
            scan_timestamp=now,
            processing_time_ms=entry.processing_time_ms,
            payment_method=entry.payment_method,
            payment_amount=entry.payment_amount,
            transaction_id=entry.transaction_id,
            notes=entry.notes,
            created_at=now,
        )
        security_event, device_id = row.is_security_event, row.device_id
        try:
            self.repo.add(row)
            self.session.commit()
        except SQLAlchemyError:
            logger.error(
                "Failed to write audit entry action=%s status=%s token=%s order=%s",
                entry.action.value,
                entry.status.value,
                entry.token_id,
                entry.order_id,
                exc_info=True,
            )
            self.session.rollback()
            return None
        if security_event:
            logger.warning(
                "Security event action=%s status=%s device=%s order=%s",
                entry.action.value,
                entry.status.value,
                device_id,
                entry.order_id,
            )
        return row

    # --- Read side for security monitoring -------------------------------------------
    def count_security_events(
        self,
        window_seconds: int,
        *,
        device_id: str | None = None,
        ip_address: str | None = None,
        order_id: int | None = None,
    ) -> int:
        """Count security events in the trailing window, optionally by key."""
        since = self._clock() - timedelta(seconds=window_seconds)
        return self.repo.count_security_events(
            since,
            device_id=device_id,
            ip_address=ip_address,
            order_id=order_id,
        )

    def history_for_order(self, order_id: int) -> list[QRScanAuditLog]:
        """Every entry recorded for an order, newest first."""
        return self.repo.history_for_order(order_id)

    def history_for_token(self, token_id: str) -> list[QRScanAuditLog]:
        return self.repo.history_for_token(token_id)

    def security_events(self, start: datetime, end: datetime) -> list[QRScanAuditLog]:
        """Security-relevant entries in ``[start, end)``, newest first."""
        return self.repo.security_events(start, end)

    def stats(self, start: datetime, end: datetime) -> dict[str, object]:
        """Aggregate scan and confirmation statistics for reporting."""
        return {
            "average_scan_ms": self.repo.average_processing_time(AuditAction.SCAN, start, end),
            "average_confirm_ms": self.repo.average_processing_time(
                AuditAction.CONFIRM_PAYMENT, start, end
            ),
            "scans_by_status": self.repo.count_by_status(AuditAction.SCAN, start, end),
            "payment_methods": self.repo.payment_method_distribution(start, end),
        }
