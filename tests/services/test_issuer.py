"""Tests for issuing, regenerating and cancelling payment tokens."""

from collections.abc import Callable, Iterator
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from qr_confirm.core.errors import ErrorCode, TokenGenerationError
from qr_confirm.core.security import Actor
from qr_confirm.core.tokens import PaymentTokenCodec, hash_token
from qr_confirm.models import CustomerOrder, QRScanAuditLog
from qr_confirm.repositories.order_gateway import SqlOrderGateway
from qr_confirm.repositories.token_repo import TokenRepository
from qr_confirm.services.audit import AuditRecorder
from qr_confirm.services.issuer import (
    SHORT_CODE_ALPHABET,
    TokenIssuer,
    generate_short_code,
)
from tests.conftest import T0, FrozenClock


def _audit_rows(db_session: Session, action: str) -> list[QRScanAuditLog]:
    return list(
        db_session.execute(
            select(QRScanAuditLog).where(QRScanAuditLog.action == action)
        ).scalars()
    )


def test_generate_short_code_format() -> None:
    for _ in range(50):
        code = generate_short_code()
        assert len(code) == 8
        assert code.startswith("QR")
        assert all(ch in SHORT_CODE_ALPHABET for ch in code[2:])


def test_issue_creates_valid_token(
    issuer: TokenIssuer,
    codec: PaymentTokenCodec,
    db_session: Session,
    order: CustomerOrder,
    customer: Actor,
) -> None:
    result = issuer.issue(order.id, actor=customer)

    assert result.success
    issuance = result.issuance
    assert issuance is not None
    assert issuance.order_number == order.order_number
    assert issuance.issued_at == T0
    assert issuance.expires_at == T0 + timedelta(seconds=300)
    assert issuance.expires_in_seconds == 300
    assert issuance.qr_token

    record = TokenRepository(db_session).get_by_token_id(issuance.token_id)
    assert record is not None
    assert record.used is False
    assert record.token_hash == hash_token(issuance.qr_token)

    claims = codec.verify(issuance.qr_token, now=T0)
    assert claims.token_id == issuance.token_id
    assert claims.order_id == order.id
    assert claims.nonce == record.nonce

    rows = _audit_rows(db_session, "ISSUE")
    assert len(rows) == 1
    assert rows[0].status == "SUCCESS"


def test_issue_refuses_second_valid_token(
    issuer: TokenIssuer, order: CustomerOrder, customer: Actor
) -> None:
    assert issuer.issue(order.id, actor=customer).success

    again = issuer.issue(order.id, actor=customer)

    assert not again.success
    assert again.error_code is ErrorCode.VALIDATION_ERROR


def test_issue_allowed_again_after_expiry(
    issuer: TokenIssuer, order: CustomerOrder, customer: Actor, clock: FrozenClock
) -> None:
    assert issuer.issue(order.id, actor=customer).success
    clock.advance(301)

    assert issuer.issue(order.id, actor=customer).success


def test_issue_for_paid_order_is_refused(
    issuer: TokenIssuer, make_order: Callable[..., CustomerOrder], customer: Actor
) -> None:
    paid = make_order(payment_status="PAID")

    result = issuer.issue(paid.id, actor=customer)

    assert result.error_code is ErrorCode.ORDER_ALREADY_PAID


def test_issue_for_unknown_order_is_validation_error(issuer: TokenIssuer, customer: Actor) -> None:
    result = issuer.issue(999_999, actor=customer)

    assert result.error_code is ErrorCode.VALIDATION_ERROR
    assert "999999" in (result.error_message or "")


def test_issue_rejects_unknown_role(issuer: TokenIssuer, order: CustomerOrder) -> None:
    result = issuer.issue(order.id, actor=Actor(user_id="x", role="DRIVER"))

    assert result.error_code is ErrorCode.UNAUTHORIZED


def test_issue_retries_on_short_code_collision(
    db_session: Session,
    codec: PaymentTokenCodec,
    audit: AuditRecorder,
    clock: FrozenClock,
    make_order: Callable[..., CustomerOrder],
) -> None:
    codes: Iterator[str] = iter(["QRSAME22", "QRSAME22", "QRFRESH3"])
    issuer = TokenIssuer(
        db_session,
        codec=codec,
        orders=SqlOrderGateway(db_session),
        audit=audit,
        clock=clock,
        code_factory=lambda: next(codes),
    )
    first_order = make_order()
    second_order = make_order()

    first = issuer.issue(first_order.id)
    second = issuer.issue(second_order.id)

    assert first.issuance.short_code == "QRSAME22"
    assert second.issuance.short_code == "QRFRESH3"


def test_issue_gives_up_after_max_attempts(
    db_session: Session,
    codec: PaymentTokenCodec,
    audit: AuditRecorder,
    clock: FrozenClock,
    make_order: Callable[..., CustomerOrder],
) -> None:
    issuer = TokenIssuer(
        db_session,
        codec=codec,
        orders=SqlOrderGateway(db_session),
        audit=audit,
        clock=clock,
        max_attempts=3,
        code_factory=lambda: "QRSTUCK2",
    )
    assert issuer.issue(make_order().id).success
    blocked = make_order()

    with pytest.raises(TokenGenerationError):
        issuer.issue(blocked.id)

    assert TokenRepository(db_session).list_for_order(blocked.id) == []
    failures = [row for row in _audit_rows(db_session, "ISSUE") if row.order_id == blocked.id]
    assert [row.error_code for row in failures] == ["INTERNAL_ERROR"]


def test_regenerate_supersedes_previous_token(
    issuer: TokenIssuer,
    db_session: Session,
    order: CustomerOrder,
    customer: Actor,
    cashier: Actor,
) -> None:
    first = issuer.issue(order.id, actor=customer).issuance

    regenerated = issuer.regenerate(order.id, actor=cashier)

    assert regenerated.success
    assert regenerated.issuance.token_id != first.token_id
    repo = TokenRepository(db_session)
    old = repo.get_by_token_id(first.token_id)
    assert old.used is True
    assert old.used_reason == "superseded"
    valid = repo.list_valid_for_order(order.id, T0)
    assert [record.token_id for record in valid] == [regenerated.issuance.token_id]
    rows = _audit_rows(db_session, "REGENERATE")
    assert rows[0].notes == "superseded=1"


def test_regenerate_requires_staff_role(
    issuer: TokenIssuer, order: CustomerOrder, customer: Actor
) -> None:
    result = issuer.regenerate(order.id, actor=customer)

    assert result.error_code is ErrorCode.UNAUTHORIZED


def test_cancel_invalidates_all_valid_tokens(
    issuer: TokenIssuer,
    db_session: Session,
    order: CustomerOrder,
    customer: Actor,
    cashier: Actor,
) -> None:
    issuance = issuer.issue(order.id, actor=customer).issuance

    result = issuer.cancel(order.id, actor=cashier)

    assert result.success
    assert result.invalidated == 1
    record = TokenRepository(db_session).get_by_token_id(issuance.token_id)
    assert record.used_reason == "cancelled"
    assert issuer.current_for_order(order.id) is None


def test_token_changes_bump_order_generation(
    issuer: TokenIssuer,
    db_session: Session,
    order: CustomerOrder,
    customer: Actor,
    cashier: Actor,
) -> None:
    def generation() -> int:
        db_session.refresh(order)
        return order.qr_token_generation

    assert generation() == 0
    issuer.issue(order.id, actor=customer)
    assert generation() == 1
    assert not issuer.issue(order.id, actor=customer).success
    assert generation() == 1
    issuer.regenerate(order.id, actor=cashier)
    issuer.cancel(order.id, actor=cashier)
    assert generation() == 3


def test_current_for_order_hides_signed_token(
    issuer: TokenIssuer, order: CustomerOrder, customer: Actor, clock: FrozenClock
) -> None:
    issued = issuer.issue(order.id, actor=customer).issuance
    clock.advance(100)

    current = issuer.current_for_order(order.id)

    assert current is not None
    assert current.token_id == issued.token_id
    assert current.qr_token is None
    assert current.expires_in_seconds == 200
