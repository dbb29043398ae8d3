"""Tests for single-use payment confirmation."""

from collections.abc import Callable
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from qr_confirm.core.errors import ErrorCode
from qr_confirm.core.security import Actor
from qr_confirm.models import CustomerOrder, PaymentEventOutbox, QRScanAuditLog
from qr_confirm.repositories.order_gateway import OrderSnapshot, SqlOrderGateway
from qr_confirm.repositories.token_repo import TokenRepository
from qr_confirm.services.audit import AuditRecorder
from qr_confirm.services.confirmer import PaymentConfirmer
from qr_confirm.services.issuer import TokenIssuer
from qr_confirm.services.notifier import EventNotifier
from qr_confirm.services.results import DeviceContext, TokenIssuance
from qr_confirm.services.validator import TokenValidator
from tests.conftest import T0, FrozenClock


@pytest.fixture()
def issued(issuer: TokenIssuer, order: CustomerOrder, customer: Actor) -> TokenIssuance:
    result = issuer.issue(order.id, actor=customer)
    assert result.issuance is not None
    return result.issuance


def _confirm(
    confirmer: PaymentConfirmer,
    order: CustomerOrder,
    issuance: TokenIssuance,
    actor: Actor,
    device: DeviceContext,
    **kwargs,
):
    kwargs.setdefault("payment_method", "CASH")
    return confirmer.confirm(
        order_id=order.id,
        token_id=issuance.token_id,
        context=device,
        actor=actor,
        **kwargs,
    )


def _confirm_rows(db_session: Session) -> list[QRScanAuditLog]:
    return list(
        db_session.execute(
            select(QRScanAuditLog)
            .where(QRScanAuditLog.action == "CONFIRM_PAYMENT")
            .order_by(QRScanAuditLog.id)
        ).scalars()
    )


def _outbox(db_session: Session) -> list[PaymentEventOutbox]:
    return list(db_session.execute(select(PaymentEventOutbox)).scalars())


def test_cash_confirmation_marks_order_paid(
    confirmer: PaymentConfirmer,
    issued: TokenIssuance,
    order: CustomerOrder,
    cashier: Actor,
    pos_device: DeviceContext,
    clock: FrozenClock,
    db_session: Session,
) -> None:
    clock.advance(90)

    result = _confirm(confirmer, order, issued, cashier, pos_device)

    assert result.success
    assert result.order.payment_status == "PAID"
    assert result.order.payment_method == "CASH"
    assert result.order.status == "CONFIRMED"
    assert result.order.qr_confirmed_by_user_id == "cashier-7"
    assert result.order.qr_confirmed_by_device_id == "POS-01"
    assert result.amount == Decimal("2500.00")

    record = TokenRepository(db_session).get_by_token_id(issued.token_id)
    assert record.used is True
    assert record.used_by_user == "cashier-7"
    assert record.used_reason == "payment"

    rows = _confirm_rows(db_session)
    assert len(rows) == 1
    assert rows[0].status == "SUCCESS"
    assert rows[0].payment_method == "CASH"
    assert rows[0].payment_amount == Decimal("2500.00")


def test_confirmation_writes_one_outbox_event(
    confirmer: PaymentConfirmer,
    issued: TokenIssuance,
    order: CustomerOrder,
    cashier: Actor,
    pos_device: DeviceContext,
    db_session: Session,
) -> None:
    _confirm(confirmer, order, issued, cashier, pos_device, transaction_id="TX-1")

    events = _outbox(db_session)
    assert len(events) == 1
    event = events[0]
    assert event.event_type == "payment.confirmed"
    assert event.idempotency_key == f"payment-confirmed-{order.id}"
    assert event.status == "pending"
    assert event.payload["order_number"] == order.order_number
    assert event.payload["payment_method"] == "CASH"
    assert event.payload["amount"] == "2500.00"
    assert event.payload["transaction_id"] == "TX-1"
    assert event.payload["confirmed_by_device_id"] == "POS-01"


def test_second_confirmation_reports_token_used(
    confirmer: PaymentConfirmer,
    issued: TokenIssuance,
    order: CustomerOrder,
    cashier: Actor,
    pos_device: DeviceContext,
    db_session: Session,
) -> None:
    assert _confirm(confirmer, order, issued, cashier, pos_device).success

    again = _confirm(confirmer, order, issued, cashier, pos_device)

    assert again.error_code is ErrorCode.TOKEN_USED
    assert [row.status for row in _confirm_rows(db_session)] == ["SUCCESS", "DUPLICATE"]
    assert len(_outbox(db_session)) == 1


def test_expired_token_cannot_confirm(
    confirmer: PaymentConfirmer,
    issued: TokenIssuance,
    order: CustomerOrder,
    cashier: Actor,
    pos_device: DeviceContext,
    clock: FrozenClock,
    db_session: Session,
) -> None:
    clock.advance(610)

    result = _confirm(confirmer, order, issued, cashier, pos_device)

    assert result.error_code is ErrorCode.TOKEN_EXPIRED
    db_session.refresh(order)
    assert order.payment_status == "PENDING"
    assert _confirm_rows(db_session)[-1].status == "EXPIRED"


def test_amount_mismatch_leaves_token_usable(
    confirmer: PaymentConfirmer,
    issued: TokenIssuance,
    order: CustomerOrder,
    cashier: Actor,
    pos_device: DeviceContext,
    db_session: Session,
) -> None:
    short = _confirm(
        confirmer, order, issued, cashier, pos_device, amount_received=Decimal("2400.00")
    )

    assert short.error_code is ErrorCode.VALIDATION_ERROR
    assert "Expected: 2500.00" in short.error_message
    record = TokenRepository(db_session).get_by_token_id(issued.token_id)
    assert record.is_valid_for_use(T0)

    within_tolerance = _confirm(
        confirmer, order, issued, cashier, pos_device, amount_received=Decimal("2500.01")
    )
    assert within_tolerance.success
    assert within_tolerance.amount == Decimal("2500.01")


def test_token_of_another_order_is_invalid(
    confirmer: PaymentConfirmer,
    issued: TokenIssuance,
    make_order: Callable[..., CustomerOrder],
    cashier: Actor,
    pos_device: DeviceContext,
    db_session: Session,
) -> None:
    other = make_order()

    result = _confirm(confirmer, other, issued, cashier, pos_device)

    assert result.error_code is ErrorCode.TOKEN_INVALID
    assert TokenRepository(db_session).get_by_token_id(issued.token_id).used is False


def test_unknown_token_is_not_found(
    confirmer: PaymentConfirmer,
    order: CustomerOrder,
    cashier: Actor,
    pos_device: DeviceContext,
) -> None:
    result = confirmer.confirm(
        order_id=order.id,
        token_id="qr_nope",
        payment_method="CARD",
        context=pos_device,
        actor=cashier,
    )

    assert result.error_code is ErrorCode.TOKEN_NOT_FOUND


def test_order_paid_elsewhere_keeps_token(
    confirmer: PaymentConfirmer,
    issued: TokenIssuance,
    order: CustomerOrder,
    cashier: Actor,
    pos_device: DeviceContext,
    db_session: Session,
) -> None:
    order.payment_status = "PAID"
    db_session.commit()

    result = _confirm(confirmer, order, issued, cashier, pos_device)

    assert result.error_code is ErrorCode.ORDER_ALREADY_PAID
    assert TokenRepository(db_session).get_by_token_id(issued.token_id).used is False


def test_unsupported_payment_method(
    confirmer: PaymentConfirmer,
    issued: TokenIssuance,
    order: CustomerOrder,
    cashier: Actor,
    pos_device: DeviceContext,
) -> None:
    result = _confirm(confirmer, order, issued, cashier, pos_device, payment_method="BITCOIN")

    assert result.error_code is ErrorCode.VALIDATION_ERROR


def test_customer_cannot_confirm(
    confirmer: PaymentConfirmer,
    issued: TokenIssuance,
    order: CustomerOrder,
    customer: Actor,
    pos_device: DeviceContext,
    db_session: Session,
) -> None:
    result = _confirm(confirmer, order, issued, customer, pos_device)

    assert result.error_code is ErrorCode.UNAUTHORIZED
    assert _confirm_rows(db_session)[-1].status == "UNAUTHORIZED"
    assert TokenRepository(db_session).get_by_token_id(issued.token_id).used is False


def test_many_scans_then_one_confirmation(
    validator: TokenValidator,
    confirmer: PaymentConfirmer,
    issued: TokenIssuance,
    order: CustomerOrder,
    cashier: Actor,
    pos_device: DeviceContext,
    clock: FrozenClock,
) -> None:
    for _ in range(3):
        assert validator.scan(token=issued.qr_token, context=pos_device, actor=cashier).success
        clock.advance(10)

    assert _confirm(confirmer, order, issued, cashier, pos_device).success
    after = validator.scan(token=issued.qr_token, context=pos_device, actor=cashier)
    assert after.error_code is ErrorCode.TOKEN_USED


class _RivalWinsGateway(SqlOrderGateway):
    """Another terminal consumes the token right after the pre-checks pass."""

    def __init__(self, session: Session, token_id: str, now: datetime) -> None:
        super().__init__(session)
        self.token_id = token_id
        self.now = now

    def get(self, order_id: int) -> OrderSnapshot | None:
        snapshot = super().get(order_id)
        TokenRepository(self.session).mark_used(
            self.token_id, now=self.now, user_id="rival", device_id="POS-02"
        )
        self.session.commit()
        return snapshot


def test_race_lost_after_checks_is_token_used(
    db_session: Session,
    audit: AuditRecorder,
    clock: FrozenClock,
    issued: TokenIssuance,
    order: CustomerOrder,
    cashier: Actor,
    pos_device: DeviceContext,
) -> None:
    confirmer = PaymentConfirmer(
        db_session,
        orders=_RivalWinsGateway(db_session, issued.token_id, clock()),
        audit=audit,
        notifier=EventNotifier(db_session),
        clock=clock,
    )

    result = _confirm(confirmer, order, issued, cashier, pos_device)

    assert result.error_code is ErrorCode.TOKEN_USED
    record = TokenRepository(db_session).get_by_token_id(issued.token_id)
    assert record.used_by_user == "rival"
    db_session.refresh(order)
    assert order.payment_status == "PENDING"
    assert _outbox(db_session) == []


class _PaidMeanwhileGateway(SqlOrderGateway):
    """The order is paid through another channel before the conditional update."""

    def mark_paid(self, order_id: int, **kwargs) -> bool:
        return False


def test_order_update_conflict_restores_token(
    db_session: Session,
    audit: AuditRecorder,
    clock: FrozenClock,
    issued: TokenIssuance,
    order: CustomerOrder,
    cashier: Actor,
    pos_device: DeviceContext,
) -> None:
    confirmer = PaymentConfirmer(
        db_session,
        orders=_PaidMeanwhileGateway(db_session),
        audit=audit,
        notifier=EventNotifier(db_session),
        clock=clock,
    )

    result = _confirm(confirmer, order, issued, cashier, pos_device)

    assert result.error_code is ErrorCode.ORDER_ALREADY_PAID
    assert TokenRepository(db_session).get_by_token_id(issued.token_id).used is False
    assert _outbox(db_session) == []


class _ReadOnceGateway(SqlOrderGateway):
    """The database becomes unreachable for reads after the first one."""

    def __init__(self, session: Session) -> None:
        super().__init__(session)
        self.reads = 0

    def get(self, order_id: int) -> OrderSnapshot | None:
        self.reads += 1
        if self.reads > 1:
            raise OperationalError("SELECT customer_order", {}, Exception("connection lost"))
        return super().get(order_id)


def test_confirmation_result_is_built_without_reading_back(
    db_session: Session,
    audit: AuditRecorder,
    clock: FrozenClock,
    issued: TokenIssuance,
    order: CustomerOrder,
    cashier: Actor,
    pos_device: DeviceContext,
) -> None:
    gateway = _ReadOnceGateway(db_session)
    confirmer = PaymentConfirmer(
        db_session,
        orders=gateway,
        audit=audit,
        notifier=EventNotifier(db_session),
        clock=clock,
    )

    result = _confirm(confirmer, order, issued, cashier, pos_device, transaction_id="TX-77")

    assert result.success is True
    assert gateway.reads == 1
    assert result.order.payment_status == "PAID"
    assert result.order.status == "CONFIRMED"
    assert result.order.payment_method == "CASH"
    assert result.order.transaction_id == "TX-77"
    assert result.order.paid_at == clock()
    assert result.order.qr_confirmed_by_user_id == cashier.user_id
    assert result.order.qr_confirmed_by_device_id == pos_device.device_id

    stored = SqlOrderGateway(db_session).get(order.id)
    assert stored.payment_status == result.order.payment_status
    assert stored.status == result.order.status
    assert stored.qr_confirmed_by_device_id == result.order.qr_confirmed_by_device_id
    assert [row.status for row in _confirm_rows(db_session)] == ["SUCCESS"]
