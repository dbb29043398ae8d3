"""Narrow access to orders owned by the order-management service.

This service only reads an order's payment state and records the outcome of a
confirmation. Everything else about orders belongs to the collaborator.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Protocol

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from qr_confirm.db.time import as_utc
from qr_confirm.models.order import CustomerOrder, OrderStatus, PaymentStatus

__all__ = ["OrderGateway", "OrderSnapshot", "SqlOrderGateway"]


@dataclass(frozen=True)
class OrderSnapshot:
    """Read-only view of the order fields relevant to payment confirmation."""

    id: int
    order_number: str
    total_amount: Decimal
    currency: str
    status: str
    payment_status: str
    payment_method: str | None = None
    transaction_id: str | None = None
    paid_at: datetime | None = None
    qr_payment_confirmed_at: datetime | None = None
    qr_confirmed_by_user_id: str | None = None
    qr_confirmed_by_device_id: str | None = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID.value

    def paid(
        self,
        *,
        payment_method: str,
        transaction_id: str | None,
        user_id: str | None,
        device_id: str | None,
        now: datetime,
    ) -> OrderSnapshot:
        """Return this order as :meth:`SqlOrderGateway.mark_paid` leaves it."""
        return replace(
            self,
            payment_status=PaymentStatus.PAID.value,
            payment_method=payment_method,
            transaction_id=transaction_id,
            paid_at=now,
            qr_payment_confirmed_at=now,
            qr_confirmed_by_user_id=user_id,
            qr_confirmed_by_device_id=device_id,
            status=(
                OrderStatus.CONFIRMED.value
                if self.status == OrderStatus.PENDING.value
                else self.status
            ),
        )


class OrderGateway(Protocol):
    """Interface to the order collaborator used by the confirmation core."""

    def get(self, order_id: int) -> OrderSnapshot | None: ...

    def lock_for_token_change(self, order_id: int) -> bool: ...

    def mark_paid(
        self,
        order_id: int,
        *,
        payment_method: str,
        transaction_id: str | None,
        user_id: str | None,
        device_id: str | None,
        now: datetime,
    ) -> bool: ...


def _optional_utc(value: datetime | None) -> datetime | None:
    return as_utc(value) if value is not None else None


class SqlOrderGateway:
    """Order gateway over the shared ``customer_order`` table.

    Sharing the session with the token repository lets the token consumption
    and the order update commit or roll back together.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, order_id: int) -> OrderSnapshot | None:
        row = self.session.execute(
            select(CustomerOrder).where(CustomerOrder.id == order_id)
            .execution_options(populate_existing=True)
        ).scalars().first()
        if row is None:
            return None
        return OrderSnapshot(
            id=row.id,
            order_number=row.order_number,
            total_amount=Decimal(row.total_amount),
            currency=row.currency,
            status=row.status,
            payment_status=row.payment_status,
            payment_method=row.payment_method,
            transaction_id=row.transaction_id,
            paid_at=_optional_utc(row.paid_at),
            qr_payment_confirmed_at=_optional_utc(row.qr_payment_confirmed_at),
            qr_confirmed_by_user_id=row.qr_confirmed_by_user_id,
            qr_confirmed_by_device_id=row.qr_confirmed_by_device_id,
        )

    def mark_paid(
        self,
        order_id: int,
        *,
        payment_method: str,
        transaction_id: str | None,
        user_id: str | None,
        device_id: str | None,
        now: datetime,
    ) -> bool:
        """Flip the order to PAID unless it already is; return True on change.

        A PENDING order also moves to CONFIRMED.
        """
        is_pending = CustomerOrder.status == OrderStatus.PENDING.value
        result = self.session.execute(
            update(CustomerOrder)
            .where(
                CustomerOrder.id == order_id,
                CustomerOrder.payment_status != PaymentStatus.PAID.value,
            )
            .values(
                payment_status=PaymentStatus.PAID.value,
                payment_method=payment_method,
                transaction_id=transaction_id,
                paid_at=now,
                qr_payment_confirmed_at=now,
                qr_confirmed_by_user_id=user_id,
                qr_confirmed_by_device_id=device_id,
                status=case(
                    (is_pending, OrderStatus.CONFIRMED.value),
                    else_=CustomerOrder.status,
                ),
                confirmed_at=case(
                    (is_pending, now),
                    else_=CustomerOrder.confirmed_at,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def lock_for_token_change(self, order_id: int) -> bool:
        """Bump the order's token generation, holding its row lock until commit.

        Issue, regenerate and cancel call this before reading the order's
        tokens, so concurrent token changes for one order run one after
        another. A plain UPDATE locks on every backend, SQLite included.
        Returns False when the order does not exist.
        """
        result = self.session.execute(
            update(CustomerOrder)
            .where(CustomerOrder.id == order_id)
            .values(qr_token_generation=CustomerOrder.qr_token_generation + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
