"""Storage hygiene for tokens, audit rows and delivered events.

Token validity never depends on this sweep; expired tokens are already
unusable at read time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete
from sqlalchemy.orm import Session

from qr_confirm.models.payment_event_outbox import OUTBOX_STATUS_DELIVERED, PaymentEventOutbox
from qr_confirm.repositories.audit_repo import AuditRepository
from qr_confirm.repositories.token_repo import TokenRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurgeReport:
    tokens: int
    audit_entries: int
    events: int


def purge(
    db: Session,
    *,
    now: datetime,
    token_retention_days: int,
    audit_retention_days: int,
) -> PurgeReport:
    """Delete rows older than their retention window and commit."""
    if token_retention_days < 1 or audit_retention_days < 1:
        raise ValueError("Retention windows must be at least one day")

    token_cutoff = now - timedelta(days=token_retention_days)
    audit_cutoff = now - timedelta(days=audit_retention_days)

    tokens = TokenRepository(db).delete_expired_before(token_cutoff)
    audit_entries = AuditRepository(db).delete_older_than(audit_cutoff)
    result = db.execute(
        delete(PaymentEventOutbox)
        .where(
            PaymentEventOutbox.status == OUTBOX_STATUS_DELIVERED,
            PaymentEventOutbox.created_at < token_cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    report = PurgeReport(tokens=tokens, audit_entries=audit_entries, events=int(result.rowcount or 0))
    logger.info(
        "Retention purge removed %d token(s), %d audit entr(ies), %d event(s)",
        report.tokens,
        report.audit_entries,
        report.events,
    )
    return report
