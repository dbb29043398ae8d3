"""Data access helpers for the payment audit trail."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from qr_confirm.models.audit_log import (
    SECURITY_EVENT_STATUSES,
    AuditAction,
    AuditStatus,
    QRScanAuditLog,
)

__all__ = ["AuditRepository"]


class AuditRepository:
    """Append and query audit rows. Rows are never updated."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, row: QRScanAuditLog) -> QRScanAuditLog:
        """Insert one row inside a savepoint."""
        with self.session.begin_nested():
            self.session.add(row)
            self.session.flush()
        return row

    def history_for_order(self, order_id: int) -> list[QRScanAuditLog]:
        return list(
            self.session.execute(
                select(QRScanAuditLog)
                .where(QRScanAuditLog.order_id == order_id)
                .order_by(QRScanAuditLog.scan_timestamp.desc(), QRScanAuditLog.id.desc())
            ).scalars()
        )

    def history_for_token(self, token_id: str) -> list[QRScanAuditLog]:
        return list(
            self.session.execute(
                select(QRScanAuditLog)
                .where(QRScanAuditLog.token_id == token_id)
                .order_by(QRScanAuditLog.scan_timestamp.desc(), QRScanAuditLog.id.desc())
            ).scalars()
        )

    def count_security_events(
        self,
        since: datetime,
        *,
        device_id: str | None = None,
        ip_address: str | None = None,
        order_id: int | None = None,
    ) -> int:
        """Count security-relevant rows since ``since``, optionally narrowed by key."""
        stmt = select(func.count(QRScanAuditLog.id)).where(
            QRScanAuditLog.status.in_(sorted(SECURITY_EVENT_STATUSES)),
            QRScanAuditLog.scan_timestamp >= since,
        )
        if device_id is not None:
            stmt = stmt.where(QRScanAuditLog.device_id == device_id)
        if ip_address is not None:
            stmt = stmt.where(QRScanAuditLog.ip_address == ip_address)
        if order_id is not None:
            stmt = stmt.where(QRScanAuditLog.order_id == order_id)
        return int(self.session.scalar(stmt) or 0)

    def security_events(self, start: datetime, end: datetime) -> list[QRScanAuditLog]:
        return list(
            self.session.execute(
                select(QRScanAuditLog)
                .where(
                    QRScanAuditLog.status.in_(sorted(SECURITY_EVENT_STATUSES)),
                    QRScanAuditLog.scan_timestamp >= start,
                    QRScanAuditLog.scan_timestamp < end,
                )
                .order_by(QRScanAuditLog.scan_timestamp.desc(), QRScanAuditLog.id.desc())
            ).scalars()
        )

    def average_processing_time(
        self, action: AuditAction, start: datetime, end: datetime
    ) -> float | None:
        value = self.session.scalar(
            select(func.avg(QRScanAuditLog.processing_time_ms)).where(
                QRScanAuditLog.action == action.value,
                QRScanAuditLog.status == AuditStatus.SUCCESS.value,
                QRScanAuditLog.scan_timestamp >= start,
                QRScanAuditLog.scan_timestamp < end,
            )
        )
        return float(value) if value is not None else None

    def payment_method_distribution(self, start: datetime, end: datetime) -> dict[str, int]:
        rows = self.session.execute(
            select(QRScanAuditLog.payment_method, func.count(QRScanAuditLog.id))
            .where(
                QRScanAuditLog.action == AuditAction.CONFIRM_PAYMENT.value,
                QRScanAuditLog.status == AuditStatus.SUCCESS.value,
                QRScanAuditLog.scan_timestamp >= start,
                QRScanAuditLog.scan_timestamp < end,
            )
            .group_by(QRScanAuditLog.payment_method)
        ).all()
        return {str(method): int(count) for method, count in rows if method is not None}

    def count_by_status(self, action: AuditAction, start: datetime, end: datetime) -> dict[str, int]:
        rows = self.session.execute(
            select(QRScanAuditLog.status, func.count(QRScanAuditLog.id))
            .where(
                QRScanAuditLog.action == action.value,
                QRScanAuditLog.scan_timestamp >= start,
                QRScanAuditLog.scan_timestamp < end,
            )
            .group_by(QRScanAuditLog.status)
        ).all()
        return {str(status): int(count) for status, count in rows}

    def delete_older_than(self, cutoff: datetime) -> int:
        result = self.session.execute(
            delete(QRScanAuditLog)
            .where(QRScanAuditLog.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)
