"""Concurrent issue and regenerate calls for one order against a shared database file."""

import time
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from pathlib import Path
from threading import Barrier

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from qr_confirm.core.errors import ErrorCode
from qr_confirm.core.security import Actor
from qr_confirm.core.tokens import get_token_codec
from qr_confirm.db.session import Base
from qr_confirm.models import CustomerOrder
from qr_confirm.repositories.order_gateway import SqlOrderGateway
from qr_confirm.repositories.token_repo import TokenRecord, TokenRepository
from qr_confirm.services.audit import AuditRecorder
from qr_confirm.services.issuer import TokenIssuer
from qr_confirm.services.results import DeviceContext, IssueResult
from tests.conftest import FrozenClock, install_sqlite_transactions


class _SlowTokenRepository(TokenRepository):
    """Widens the gap between reading the order's tokens and writing new ones."""

    def list_valid_for_order(self, order_id: int, now) -> list[TokenRecord]:
        records = super().list_valid_for_order(order_id, now)
        time.sleep(0.2)
        return records

    def invalidate_valid_for_order(self, order_id: int, **kwargs) -> int:
        count = super().invalidate_valid_for_order(order_id, **kwargs)
        time.sleep(0.2)
        return count


@pytest.fixture()
def file_engine(tmp_path: Path) -> Iterator[Engine]:
    engine = create_engine(
        f"sqlite:///{tmp_path / 'issue.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    install_sqlite_transactions(engine)
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(file_engine: Engine) -> sessionmaker:
    return sessionmaker(bind=file_engine, autoflush=False, expire_on_commit=False)


def _issuer(session: Session, clock: FrozenClock) -> TokenIssuer:
    issuer = TokenIssuer(
        session,
        codec=get_token_codec(),
        orders=SqlOrderGateway(session),
        audit=AuditRecorder(session, clock=clock),
        clock=clock,
    )
    issuer.tokens = _SlowTokenRepository(session)
    return issuer


def _create_order(session_factory: sessionmaker) -> int:
    with session_factory() as setup:
        order = CustomerOrder(
            order_number="ORD-TWIN",
            total_amount=Decimal("2500.00"),
            currency="XOF",
            status="PENDING",
            payment_status="PENDING",
        )
        setup.add(order)
        setup.commit()
        return order.id


def test_parallel_issue_leaves_one_valid_token(session_factory: sessionmaker) -> None:
    clock = FrozenClock()
    order_id = _create_order(session_factory)
    barrier = Barrier(2)

    def attempt(_: int) -> IssueResult:
        with session_factory() as session:
            issuer = _issuer(session, clock)
            barrier.wait()
            return issuer.issue(order_id)

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(attempt, range(2)))

    assert sum(result.success for result in results) == 1
    assert [result.error_code for result in results if not result.success] == [
        ErrorCode.VALIDATION_ERROR
    ]
    with session_factory() as check:
        valid = TokenRepository(check).list_valid_for_order(order_id, clock())
        assert len(valid) == 1
        assert check.get(CustomerOrder, order_id).qr_token_generation == 1


def test_parallel_regenerate_leaves_one_valid_token(session_factory: sessionmaker) -> None:
    clock = FrozenClock()
    order_id = _create_order(session_factory)
    with session_factory() as setup:
        assert _issuer(setup, clock).issue(order_id).success

    barrier = Barrier(2)

    def attempt(terminal: int) -> IssueResult:
        with session_factory() as session:
            issuer = _issuer(session, clock)
            barrier.wait()
            return issuer.regenerate(
                order_id,
                actor=Actor(user_id=f"cashier-{terminal}", role="CASHIER"),
                context=DeviceContext(device_id=f"POS-{terminal:02d}"),
            )

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(attempt, range(2)))

    assert all(result.success for result in results)
    with session_factory() as check:
        tokens = TokenRepository(check)
        valid = tokens.list_valid_for_order(order_id, clock())
        assert len(valid) == 1
        assert valid[0].token_id in {result.issuance.token_id for result in results}
        assert len(tokens.list_for_order(order_id)) == 3
