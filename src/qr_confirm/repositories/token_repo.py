"""Data access for payment token records.

Rows are exposed to the service layer only as immutable :class:`TokenRecord`
snapshots. The single state transition (``used`` false to true) is performed
by conditional UPDATE statements whose affected row count decides the winner
when several callers race; no ORM-level locking is relied upon.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, exists, select, update
from sqlalchemy.orm import Session

from qr_confirm.db.time import as_utc
from qr_confirm.models.payment_token import USED_REASON_PAYMENT, PaymentQRToken

__all__ = ["TokenRecord", "TokenRepository"]


@dataclass(frozen=True)
class TokenRecord:
    """Immutable snapshot of a stored token."""

    token_id: str
    order_id: int
    nonce: str
    short_code: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    used: bool
    used_at: datetime | None = None
    used_by_user: str | None = None
    used_by_device: str | None = None
    used_reason: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_valid_for_use(self, now: datetime) -> bool:
        return not self.used and now < self.expires_at

    def expires_in_seconds(self, now: datetime) -> int:
        return max(0, int((self.expires_at - now).total_seconds()))

    @classmethod
    def from_row(cls, row: PaymentQRToken) -> TokenRecord:
        return cls(
            token_id=row.token_id,
            order_id=int(row.order_id),
            nonce=row.nonce,
            short_code=row.short_code,
            token_hash=row.token_hash,
            issued_at=as_utc(row.issued_at),
            expires_at=as_utc(row.expires_at),
            used=bool(row.used),
            used_at=as_utc(row.used_at) if row.used_at is not None else None,
            used_by_user=row.used_by_user,
            used_by_device=row.used_by_device,
            used_reason=row.used_reason,
        )


class TokenRepository:
    """Thin wrapper around database access for payment tokens."""

    def __init__(self, session: Session) -> None:
        """Initialize the repository with a SQLAlchemy session."""
        self.session = session

    def create(
        self,
        *,
        token_id: str,
        order_id: int,
        nonce: str,
        short_code: str,
        token_hash: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> TokenRecord:
        """Insert a token inside a savepoint and return its snapshot.

        Raises:
            sqlalchemy.exc.IntegrityError: If the token id, nonce or short code
                collides with an existing row. Only the savepoint is rolled back.
        """
        if expires_at <= issued_at:
            raise ValueError("expires_at must be after issued_at")
        row = PaymentQRToken(
            token_id=token_id,
            order_id=order_id,
            nonce=nonce,
            short_code=short_code,
            token_hash=token_hash,
            issued_at=issued_at,
            expires_at=expires_at,
            used=False,
        )
        with self.session.begin_nested():
            self.session.add(row)
            self.session.flush()
        return TokenRecord.from_row(row)

    def get_by_token_id(self, token_id: str) -> TokenRecord | None:
        row = self.session.execute(
            select(PaymentQRToken).where(PaymentQRToken.token_id == token_id)
            .execution_options(populate_existing=True)
        ).scalars().first()
        return TokenRecord.from_row(row) if row is not None else None

    def get_by_short_code(self, short_code: str) -> TokenRecord | None:
        row = self.session.execute(
            select(PaymentQRToken).where(PaymentQRToken.short_code == short_code.upper())
            .execution_options(populate_existing=True)
        ).scalars().first()
        return TokenRecord.from_row(row) if row is not None else None

    def nonce_exists(self, nonce: str) -> bool:
        return bool(self.session.scalar(select(exists().where(PaymentQRToken.nonce == nonce))))

    def short_code_exists(self, short_code: str) -> bool:
        return bool(
            self.session.scalar(select(exists().where(PaymentQRToken.short_code == short_code)))
        )

    def list_valid_for_order(self, order_id: int, now: datetime) -> list[TokenRecord]:
        """Return tokens of an order that are unused and unexpired, newest first."""
        rows = self.session.execute(
            select(PaymentQRToken)
            .where(
                PaymentQRToken.order_id == order_id,
                PaymentQRToken.used.is_(False),
                PaymentQRToken.expires_at > now,
            )
            .order_by(PaymentQRToken.issued_at.desc(), PaymentQRToken.id.desc())
            .execution_options(populate_existing=True)
        ).scalars()
        return [TokenRecord.from_row(row) for row in rows]

    def list_for_order(self, order_id: int) -> list[TokenRecord]:
        rows = self.session.execute(
            select(PaymentQRToken)
            .where(PaymentQRToken.order_id == order_id)
            .order_by(PaymentQRToken.id)
            .execution_options(populate_existing=True)
        ).scalars()
        return [TokenRecord.from_row(row) for row in rows]

    def mark_used(
        self,
        token_id: str,
        *,
        now: datetime,
        user_id: str | None,
        device_id: str | None,
        reason: str = USED_REASON_PAYMENT,
    ) -> bool:
        """Atomically consume a token.

        Executes ``UPDATE ... SET used = true WHERE token_id = :id AND used =
        false AND expires_at > :now``. Returns True only when exactly one row
        changed; False means another caller consumed it first (or it expired).
        """
        result = self.session.execute(
            update(PaymentQRToken)
            .where(
                PaymentQRToken.token_id == token_id,
                PaymentQRToken.used.is_(False),
                PaymentQRToken.expires_at > now,
            )
            .values(
                used=True,
                used_at=now,
                used_by_user=user_id,
                used_by_device=device_id,
                used_reason=reason,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def invalidate_valid_for_order(
        self,
        order_id: int,
        *,
        now: datetime,
        reason: str,
        user_id: str | None = None,
        device_id: str | None = None,
    ) -> int:
        """Mark every currently valid token of an order as used; return the count."""
        result = self.session.execute(
            update(PaymentQRToken)
            .where(
                PaymentQRToken.order_id == order_id,
                PaymentQRToken.used.is_(False),
                PaymentQRToken.expires_at > now,
            )
            .values(
                used=True,
                used_at=now,
                used_by_user=user_id,
                used_by_device=device_id,
                used_reason=reason,
            )
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    def delete_expired_before(self, cutoff: datetime) -> int:
        """Physically delete tokens that expired before ``cutoff``."""
        result = self.session.execute(
            delete(PaymentQRToken)
            .where(PaymentQRToken.expires_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)
