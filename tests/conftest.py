# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import Callable, Generator, Iterator
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from itertools import count

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("SECRET_KEY", "test-session-secret")
os.environ.setdefault("QR_TOKEN_SECRET", "test-qr-token-secret")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from qr_confirm.api.v1.dependencies import get_clock
from qr_confirm.core.security import Actor, create_access_token
from qr_confirm.core.tokens import PaymentTokenCodec, get_token_codec
from qr_confirm.db.session import Base
from qr_confirm.db.session import get_db as app_get_session
from qr_confirm.main import app as fastapi_app
from qr_confirm.models import CustomerOrder
from qr_confirm.repositories.order_gateway import SqlOrderGateway
from qr_confirm.services.audit import AuditRecorder
from qr_confirm.services.confirmer import PaymentConfirmer
from qr_confirm.services.issuer import TokenIssuer
from qr_confirm.services.notifier import EventNotifier
from qr_confirm.services.rate_limit import RateLimiter
from qr_confirm.services.results import DeviceContext
from qr_confirm.services.validator import TokenValidator

TEST_DB_URL = "sqlite://"
T0 = datetime(2026, 3, 2, 12, 0, 0, tzinfo=UTC)

_ORDER_COUNTER = count(1)


def install_sqlite_transactions(engine: Engine, begin_statement: str = "BEGIN") -> None:
    """Let SQLAlchemy, not pysqlite, emit BEGIN so SAVEPOINTs behave."""

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn) -> None:
        conn.exec_driver_sql(begin_statement)


class FrozenClock:
    """Injectable clock that only moves when a test advances it."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    install_sqlite_transactions(engine)
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Iterator[Session]:
    SessionLocal = sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()

        # Services commit for real; each test still sees a clean database.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture(autouse=True)
def override_session_dependency(app: FastAPI, db_session: Session) -> Iterator[None]:
    def _get_session_override() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[app_get_session] = _get_session_override
    try:
        yield
    finally:
        app.dependency_overrides.pop(app_get_session, None)


@pytest.fixture(autouse=True)
def reset_rate_limiter(app: FastAPI) -> Iterator[None]:
    limiter: RateLimiter | None = app.state.rate_limiter
    if limiter is not None:
        limiter.reset()
    yield
    if limiter is not None:
        limiter.reset()


@pytest.fixture()
def clock(app: FastAPI) -> Iterator[FrozenClock]:
    frozen = FrozenClock()
    app.dependency_overrides[get_clock] = lambda: frozen
    try:
        yield frozen
    finally:
        app.dependency_overrides.pop(get_clock, None)


@pytest.fixture()
def client(app: FastAPI, clock: FrozenClock) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture()
def codec() -> PaymentTokenCodec:
    return get_token_codec()


@pytest.fixture()
def make_order(db_session: Session) -> Callable[..., CustomerOrder]:
    """Return a factory persisting orders owned by the order service."""

    def _make(
        total: str = "2500.00",
        *,
        payment_status: str = "PENDING",
        status: str = "PENDING",
    ) -> CustomerOrder:
        order = CustomerOrder(
            order_number=f"ORD-{next(_ORDER_COUNTER):05d}",
            total_amount=Decimal(total),
            currency="XOF",
            status=status,
            payment_status=payment_status,
        )
        db_session.add(order)
        db_session.commit()
        return order

    return _make


@pytest.fixture()
def order(make_order: Callable[..., CustomerOrder]) -> CustomerOrder:
    return make_order()


@pytest.fixture()
def audit(db_session: Session, clock: FrozenClock) -> AuditRecorder:
    return AuditRecorder(db_session, clock=clock)


@pytest.fixture()
def issuer(
    db_session: Session, codec: PaymentTokenCodec, audit: AuditRecorder, clock: FrozenClock
) -> TokenIssuer:
    return TokenIssuer(
        db_session,
        codec=codec,
        orders=SqlOrderGateway(db_session),
        audit=audit,
        clock=clock,
    )


@pytest.fixture()
def validator(
    db_session: Session, codec: PaymentTokenCodec, audit: AuditRecorder, clock: FrozenClock
) -> TokenValidator:
    return TokenValidator(
        db_session,
        codec=codec,
        orders=SqlOrderGateway(db_session),
        audit=audit,
        clock=clock,
    )


@pytest.fixture()
def confirmer(db_session: Session, audit: AuditRecorder, clock: FrozenClock) -> PaymentConfirmer:
    return PaymentConfirmer(
        db_session,
        orders=SqlOrderGateway(db_session),
        audit=audit,
        notifier=EventNotifier(db_session),
        clock=clock,
    )


@pytest.fixture()
def cashier() -> Actor:
    return Actor(user_id="cashier-7", role="CASHIER")


@pytest.fixture()
def customer() -> Actor:
    return Actor(user_id="customer-42", role="CUSTOMER")


@pytest.fixture()
def pos_device() -> DeviceContext:
    return DeviceContext(
        device_id="POS-01",
        device_type="TABLET",
        terminal_id="T1",
        store_id=3,
        ip_address="10.0.0.8",
        user_agent="pytest",
    )


def auth_headers(role: str, user_id: str = "user-1") -> dict[str, str]:
    token = create_access_token(user_id, role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def staff_headers() -> dict[str, str]:
    """Return authorization headers for a cashier."""
    return auth_headers("CASHIER", "cashier-7")


@pytest.fixture()
def customer_headers() -> dict[str, str]:
    return auth_headers("CUSTOMER", "customer-42")


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    return auth_headers("ADMIN", "admin-1")
