"""Shared API dependencies for authentication and service construction."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.orm import Session

from qr_confirm.core.security import Actor, decode_access_token
from qr_confirm.core.tokens import PaymentTokenCodec, get_token_codec
from qr_confirm.db.session import get_db
from qr_confirm.db.time import Clock, utcnow
from qr_confirm.repositories.order_gateway import SqlOrderGateway
from qr_confirm.services.audit import AuditRecorder
from qr_confirm.services.confirmer import PaymentConfirmer
from qr_confirm.services.issuer import TokenIssuer
from qr_confirm.services.notifier import EventNotifier, LoggingEventPublisher, PaymentEventPublisher
from qr_confirm.services.rate_limit import RateLimiter
from qr_confirm.services.validator import TokenValidator

# HTTP Bearer scheme for staff session tokens; missing credentials are a 401
bearer_scheme = HTTPBearer(auto_error=False)

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]


def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> Actor:
    """Resolve the caller from the bearer token.

    Raises:
        HTTPException: 401 if the token is missing, invalid or expired
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return decode_access_token(credentials.credentials)
    except JWTError as err:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        ) from err


def get_clock() -> Clock:
    """Return the wall clock used for token validity decisions."""
    return utcnow


def get_codec() -> PaymentTokenCodec:
    return get_token_codec()


def get_rate_limiter(request: Request) -> RateLimiter | None:
    """Return the limiter owned by this application instance, if enabled."""
    limiter: RateLimiter | None = getattr(request.app.state, "rate_limiter", None)
    return limiter


def get_event_publisher(request: Request) -> PaymentEventPublisher:
    publisher: PaymentEventPublisher | None = getattr(request.app.state, "event_publisher", None)
    return publisher or LoggingEventPublisher()


CurrentActorDep = Annotated[Actor, Depends(get_current_actor)]
ClockDep = Annotated[Clock, Depends(get_clock)]
CodecDep = Annotated[PaymentTokenCodec, Depends(get_codec)]
RateLimiterDep = Annotated[RateLimiter | None, Depends(get_rate_limiter)]
PublisherDep = Annotated[PaymentEventPublisher, Depends(get_event_publisher)]


def get_audit_recorder(db: SessionDep, clock: ClockDep) -> AuditRecorder:
    return AuditRecorder(db, clock=clock)


AuditDep = Annotated[AuditRecorder, Depends(get_audit_recorder)]


def get_token_issuer(
    db: SessionDep, codec: CodecDep, audit: AuditDep, clock: ClockDep
) -> TokenIssuer:
    return TokenIssuer(db, codec=codec, orders=SqlOrderGateway(db), audit=audit, clock=clock)


def get_token_validator(
    db: SessionDep,
    codec: CodecDep,
    audit: AuditDep,
    clock: ClockDep,
    limiter: RateLimiterDep,
) -> TokenValidator:
    return TokenValidator(
        db,
        codec=codec,
        orders=SqlOrderGateway(db),
        audit=audit,
        clock=clock,
        rate_limiter=limiter,
    )


def get_payment_confirmer(
    db: SessionDep,
    audit: AuditDep,
    clock: ClockDep,
    limiter: RateLimiterDep,
) -> PaymentConfirmer:
    return PaymentConfirmer(
        db,
        orders=SqlOrderGateway(db),
        audit=audit,
        notifier=EventNotifier(db),
        clock=clock,
        rate_limiter=limiter,
    )


TokenIssuerDep = Annotated[TokenIssuer, Depends(get_token_issuer)]
TokenValidatorDep = Annotated[TokenValidator, Depends(get_token_validator)]
PaymentConfirmerDep = Annotated[PaymentConfirmer, Depends(get_payment_confirmer)]
