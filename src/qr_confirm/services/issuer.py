"""Issuance, regeneration and cancellation of payment tokens."""

from __future__ import annotations

import logging
import secrets
import time
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from qr_confirm.core.errors import (
    ErrorCode,
    ProtocolFailure,
    QRConfirmError,
    TokenGenerationError,
)
from qr_confirm.core.security import Actor
from qr_confirm.core.settings import settings
from qr_confirm.core.tokens import PaymentTokenCodec, hash_token
from qr_confirm.db.time import Clock, utcnow
from qr_confirm.models.audit_log import AuditAction
from qr_confirm.models.payment_token import USED_REASON_CANCELLED, USED_REASON_SUPERSEDED
from qr_confirm.repositories.order_gateway import OrderGateway, OrderSnapshot
from qr_confirm.repositories.token_repo import TokenRecord, TokenRepository
from qr_confirm.services.audit import AuditEntry, AuditRecorder
from qr_confirm.services.guards import ensure_order_payable, ensure_permitted
from qr_confirm.services.results import CancelResult, DeviceContext, IssueResult, TokenIssuance

logger = logging.getLogger(__name__)

# Ambiguous characters (0, O, 1, I) are excluded for manual entry.
SHORT_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
SHORT_CODE_PREFIX = "QR"
SHORT_CODE_RANDOM_LENGTH = 6
NONCE_BYTES = 24


def generate_short_code() -> str:
    """Return ``QR`` followed by six random unambiguous characters."""
    suffix = "".join(secrets.choice(SHORT_CODE_ALPHABET) for _ in range(SHORT_CODE_RANDOM_LENGTH))
    return SHORT_CODE_PREFIX + suffix


def generate_nonce() -> str:
    return secrets.token_urlsafe(NONCE_BYTES)


def generate_token_id() -> str:
    return f"qr_{uuid.uuid4()}"


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class TokenIssuer:
    """Create signed payment tokens bound to orders.

    At most one token per order is valid at any time: ``issue`` refuses an
    order that already holds one and ``regenerate`` supersedes it first.
    Both take the order row lock before looking at existing tokens.
    """

    def __init__(
        self,
        session: Session,
        *,
        codec: PaymentTokenCodec,
        orders: OrderGateway,
        audit: AuditRecorder,
        clock: Clock = utcnow,
        ttl_seconds: int | None = None,
        max_attempts: int | None = None,
        issuer_roles: Iterable[str] | None = None,
        staff_roles: Iterable[str] | None = None,
        currency: str | None = None,
        code_factory: Callable[[], str] = generate_short_code,
        nonce_factory: Callable[[], str] = generate_nonce,
    ) -> None:
        self.session = session
        self.tokens = TokenRepository(session)
        self.codec = codec
        self.orders = orders
        self.audit = audit
        self._clock = clock
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.qr_token_ttl_seconds
        self.max_attempts = (
            max_attempts if max_attempts is not None else settings.qr_token_max_generation_attempts
        )
        self.issuer_roles = tuple(issuer_roles if issuer_roles is not None else settings.issuer_roles)
        self.staff_roles = tuple(staff_roles if staff_roles is not None else settings.staff_roles)
        self.currency = currency or settings.qr_token_currency
        self._code_factory = code_factory
        self._nonce_factory = nonce_factory

    # --- Public operations ---------------------------------------------------------
    def issue(
        self,
        order_id: int,
        *,
        actor: Actor | None = None,
        context: DeviceContext | None = None,
    ) -> IssueResult:
        """Issue the first token for an order.

        ``actor`` may be None when called internally by the order flow.
        """
        started = time.perf_counter()
        try:
            if actor is not None:
                ensure_permitted(actor, self.issuer_roles)
            now = self._clock()
            self.orders.lock_for_token_change(order_id)
            order = ensure_order_payable(self.orders.get(order_id), order_id)
            if self.tokens.list_valid_for_order(order_id, now):
                raise ProtocolFailure(
                    ErrorCode.VALIDATION_ERROR,
                    "Order already has a valid payment token; regenerate it instead",
                )
            issuance = self._create(order, now)
            self.session.commit()
        except ProtocolFailure as failure:
            self.session.rollback()
            self._audit(AuditAction.ISSUE, order_id, started, actor, context, failure=failure)
            return IssueResult(False, error_code=failure.code, error_message=failure.message)
        except (SQLAlchemyError, QRConfirmError) as err:
            self._fatal(AuditAction.ISSUE, order_id, started, actor, context, err)
            raise

        logger.info(
            "QR token generated: %s for order %s (expires at %s)",
            issuance.token_id,
            issuance.order_number,
            issuance.expires_at.isoformat(),
        )
        self._audit(AuditAction.ISSUE, order_id, started, actor, context, issuance=issuance)
        return IssueResult(True, issuance=issuance)

    def regenerate(
        self,
        order_id: int,
        *,
        actor: Actor | None,
        context: DeviceContext | None = None,
    ) -> IssueResult:
        """Supersede every valid token of the order and issue a fresh one."""
        started = time.perf_counter()
        superseded = 0
        try:
            ensure_permitted(actor, self.staff_roles)
            now = self._clock()
            self.orders.lock_for_token_change(order_id)
            order = ensure_order_payable(self.orders.get(order_id), order_id)
            superseded = self.tokens.invalidate_valid_for_order(
                order_id,
                now=now,
                reason=USED_REASON_SUPERSEDED,
                user_id=actor.user_id if actor else None,
                device_id=context.device_id if context else None,
            )
            issuance = self._create(order, now)
            self.session.commit()
        except ProtocolFailure as failure:
            self.session.rollback()
            self._audit(AuditAction.REGENERATE, order_id, started, actor, context, failure=failure)
            return IssueResult(False, error_code=failure.code, error_message=failure.message)
        except (SQLAlchemyError, QRConfirmError) as err:
            self._fatal(AuditAction.REGENERATE, order_id, started, actor, context, err)
            raise

        logger.info(
            "QR token regenerated for order %s: %s (superseded %d)",
            issuance.order_number,
            issuance.token_id,
            superseded,
        )
        self._audit(
            AuditAction.REGENERATE,
            order_id,
            started,
            actor,
            context,
            issuance=issuance,
            notes=f"superseded={superseded}",
        )
        return IssueResult(True, issuance=issuance)

    def cancel(
        self,
        order_id: int,
        *,
        actor: Actor | None,
        context: DeviceContext | None = None,
    ) -> CancelResult:
        """Invalidate every valid token of an order that was cancelled upstream."""
        started = time.perf_counter()
        try:
            ensure_permitted(actor, self.staff_roles)
            self.orders.lock_for_token_change(order_id)
            invalidated = self.tokens.invalidate_valid_for_order(
                order_id,
                now=self._clock(),
                reason=USED_REASON_CANCELLED,
                user_id=actor.user_id if actor else None,
                device_id=context.device_id if context else None,
            )
            self.session.commit()
        except ProtocolFailure as failure:
            self.session.rollback()
            self._audit(AuditAction.CANCEL, order_id, started, actor, context, failure=failure)
            return CancelResult(False, error_code=failure.code, error_message=failure.message)
        except SQLAlchemyError as err:
            self._fatal(AuditAction.CANCEL, order_id, started, actor, context, err)
            raise

        logger.info("Cancelled %d QR token(s) for order %s", invalidated, order_id)
        self._audit(
            AuditAction.CANCEL,
            order_id,
            started,
            actor,
            context,
            notes=f"invalidated={invalidated}",
        )
        return CancelResult(True, invalidated=invalidated)

    def current_for_order(self, order_id: int) -> TokenIssuance | None:
        """Return metadata of the order's currently valid token, if any."""
        now = self._clock()
        valid = self.tokens.list_valid_for_order(order_id, now)
        if not valid:
            return None
        order = self.orders.get(order_id)
        record = valid[0]
        return self._issuance(record, order.order_number if order else "", now, qr_token=None)

    # --- Internals -----------------------------------------------------------------
    def _create(self, order: OrderSnapshot, now: datetime) -> TokenIssuance:
        """Generate identifiers, sign and persist, retrying on collisions."""
        expires_at = now + timedelta(seconds=self.ttl_seconds)
        for attempt in range(1, self.max_attempts + 1):
            nonce = self._nonce_factory()
            short_code = self._code_factory()
            if self.tokens.nonce_exists(nonce) or self.tokens.short_code_exists(short_code):
                logger.warning(
                    "Token identifier collision for order %s (attempt %d/%d)",
                    order.order_number,
                    attempt,
                    self.max_attempts,
                )
                continue

            token_id = generate_token_id()
            token = self.codec.sign(
                token_id=token_id,
                order_id=order.id,
                order_number=order.order_number,
                nonce=nonce,
                short_code=short_code,
                amount=str(order.total_amount),
                currency=order.currency or self.currency,
                issued_at=now,
                expires_at=expires_at,
            )
            try:
                record = self.tokens.create(
                    token_id=token_id,
                    order_id=order.id,
                    nonce=nonce,
                    short_code=short_code,
                    token_hash=hash_token(token),
                    issued_at=now,
                    expires_at=expires_at,
                )
            except IntegrityError:
                logger.warning(
                    "Unique constraint hit while storing token for order %s (attempt %d/%d)",
                    order.order_number,
                    attempt,
                    self.max_attempts,
                )
                continue
            return self._issuance(record, order.order_number, now, qr_token=token)

        raise TokenGenerationError(
            f"Could not generate unique token identifiers after {self.max_attempts} attempts"
        )

    @staticmethod
    def _issuance(
        record: TokenRecord, order_number: str, now: datetime, *, qr_token: str | None
    ) -> TokenIssuance:
        return TokenIssuance(
            token_id=record.token_id,
            order_id=record.order_id,
            order_number=order_number,
            short_code=record.short_code,
            issued_at=record.issued_at,
            expires_at=record.expires_at,
            expires_in_seconds=record.expires_in_seconds(now),
            qr_token=qr_token,
        )

    def _audit(
        self,
        action: AuditAction,
        order_id: int,
        started: float,
        actor: Actor | None,
        context: DeviceContext | None,
        *,
        issuance: TokenIssuance | None = None,
        failure: ProtocolFailure | None = None,
        notes: str | None = None,
    ) -> None:
        self.audit.record(
            AuditEntry(
                action=action,
                error_code=failure.code if failure else None,
                error_message=failure.message if failure else None,
                order_id=order_id,
                token_id=issuance.token_id if issuance else None,
                short_code=issuance.short_code if issuance else None,
                context=context,
                actor=actor,
                processing_time_ms=_elapsed_ms(started),
                notes=notes,
            )
        )

    def _fatal(
        self,
        action: AuditAction,
        order_id: int,
        started: float,
        actor: Actor | None,
        context: DeviceContext | None,
        err: Exception,
    ) -> None:
        logger.error("%s failed for order %s: %s", action.value, order_id, err, exc_info=True)
        self.session.rollback()
        self._audit(
            action,
            order_id,
            started,
            actor,
            context,
            failure=ProtocolFailure(ErrorCode.INTERNAL_ERROR, str(err)),
        )
