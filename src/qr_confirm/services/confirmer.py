"""Single-use consumption of a payment token and the order payment update."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from qr_confirm.core.errors import ErrorCode, ProtocolFailure
from qr_confirm.core.security import Actor
from qr_confirm.core.settings import settings
from qr_confirm.db.time import Clock, utcnow
from qr_confirm.models.audit_log import AuditAction
from qr_confirm.models.order import PaymentMethod
from qr_confirm.repositories.order_gateway import OrderGateway, OrderSnapshot
from qr_confirm.repositories.token_repo import TokenRecord, TokenRepository
from qr_confirm.services.audit import AuditEntry, AuditRecorder
from qr_confirm.services.guards import (
    ensure_order_payable,
    ensure_permitted,
    ensure_token_usable,
    ensure_within_rate,
)
from qr_confirm.services.notifier import EventNotifier
from qr_confirm.services.rate_limit import BUCKET_CONFIRM, RateLimiter
from qr_confirm.services.results import ConfirmResult, DeviceContext

logger = logging.getLogger(__name__)

_PAYMENT_METHODS = frozenset(method.value for method in PaymentMethod)


class PaymentConfirmer:
    """Mark an order paid by consuming its token exactly once.

    The token ``UPDATE ... WHERE used = false AND expires_at > now`` is the
    only arbiter between concurrent confirmations. Prior checks exist to give
    precise error codes; they do not grant the right to consume.
    """

    def __init__(
        self,
        session: Session,
        *,
        orders: OrderGateway,
        audit: AuditRecorder,
        notifier: EventNotifier,
        clock: Clock = utcnow,
        rate_limiter: RateLimiter | None = None,
        amount_tolerance: Decimal | None = None,
        staff_roles: Iterable[str] | None = None,
        trusted_device_ids: Iterable[str] | None = None,
    ) -> None:
        self.session = session
        self.tokens = TokenRepository(session)
        self.orders = orders
        self.audit = audit
        self.notifier = notifier
        self._clock = clock
        self.rate_limiter = rate_limiter
        self.amount_tolerance = (
            amount_tolerance if amount_tolerance is not None else settings.payment_amount_tolerance
        )
        self.staff_roles = tuple(staff_roles if staff_roles is not None else settings.staff_roles)
        self.trusted_device_ids = tuple(
            trusted_device_ids if trusted_device_ids is not None else settings.trusted_device_ids
        )

    def confirm(
        self,
        *,
        order_id: int,
        token_id: str,
        payment_method: str,
        context: DeviceContext,
        actor: Actor | None,
        transaction_id: str | None = None,
        amount_received: Decimal | None = None,
        notes: str | None = None,
    ) -> ConfirmResult:
        """Consume the token and record the payment on the order.

        On success the token is used, the order is PAID and a
        ``payment.confirmed`` outbox row exists, all from one commit. Every
        failure leaves both token and order untouched.
        """
        started = time.perf_counter()
        method = payment_method.strip().upper()
        record: TokenRecord | None = None
        order: OrderSnapshot | None = None
        try:
            ensure_permitted(
                actor,
                self.staff_roles,
                context=context,
                trusted_device_ids=self.trusted_device_ids,
            )
            ensure_within_rate(self.rate_limiter, BUCKET_CONFIRM, context.device_id)
            if method not in _PAYMENT_METHODS:
                raise ProtocolFailure(
                    ErrorCode.VALIDATION_ERROR, f"Unsupported payment method: {payment_method}"
                )
            now = self._clock()

            record = self.tokens.get_by_token_id(token_id)
            if record is None:
                raise ProtocolFailure(ErrorCode.TOKEN_NOT_FOUND, "Token not found")
            if record.order_id != order_id:
                raise ProtocolFailure(
                    ErrorCode.TOKEN_INVALID, "Token does not belong to this order"
                )
            ensure_token_usable(record, now)
            order = ensure_order_payable(self.orders.get(order_id), order_id)
            self._ensure_amount(order, amount_received)

            user_id = actor.user_id if actor else None
            if not self.tokens.mark_used(
                token_id, now=now, user_id=user_id, device_id=context.device_id
            ):
                # Lost the race, or the token expired after it was read.
                self.session.rollback()
                raise ProtocolFailure(ErrorCode.TOKEN_USED, "Token already used")
            if not self.orders.mark_paid(
                order_id,
                payment_method=method,
                transaction_id=transaction_id,
                user_id=user_id,
                device_id=context.device_id,
                now=now,
            ):
                self.session.rollback()
                raise ProtocolFailure(ErrorCode.ORDER_ALREADY_PAID, "Order already paid")
            paid_order = order.paid(
                payment_method=method,
                transaction_id=transaction_id,
                user_id=user_id,
                device_id=context.device_id,
                now=now,
            )
            self.notifier.enqueue_payment_confirmed(
                order,
                payment_method=method,
                transaction_id=transaction_id,
                actor=actor,
                device_id=context.device_id,
                confirmed_at=now,
            )
            self.session.commit()
        except ProtocolFailure as failure:
            self.session.rollback()
            self._log_failure(failure, token_id, context)
            self._audit(
                started,
                context,
                actor,
                order_id=order_id,
                token_id=token_id,
                record=record,
                payment_method=method,
                amount=amount_received,
                transaction_id=transaction_id,
                notes=notes,
                failure=failure,
            )
            return ConfirmResult(
                False,
                token_id=token_id,
                error_code=failure.code,
                error_message=failure.message,
            )
        except SQLAlchemyError as err:
            logger.error(
                "Payment confirmation failed for order %s: %s", order_id, err, exc_info=True
            )
            self.session.rollback()
            self._audit(
                started,
                context,
                actor,
                order_id=order_id,
                token_id=token_id,
                record=record,
                payment_method=method,
                amount=amount_received,
                transaction_id=transaction_id,
                notes=notes,
                failure=ProtocolFailure(ErrorCode.INTERNAL_ERROR, "Storage error"),
            )
            raise

        logger.info(
            "Payment confirmed via QR - order %s, method %s, by user %s on device %s",
            paid_order.order_number,
            method,
            actor.user_id if actor else None,
            context.device_id,
        )
        self._audit(
            started,
            context,
            actor,
            order_id=order_id,
            token_id=token_id,
            record=record,
            payment_method=method,
            amount=amount_received if amount_received is not None else order.total_amount,
            transaction_id=transaction_id,
            notes=notes,
        )
        return ConfirmResult(
            True,
            order=paid_order,
            token_id=token_id,
            amount=amount_received if amount_received is not None else order.total_amount,
        )

    def _ensure_amount(self, order: OrderSnapshot, amount_received: Decimal | None) -> None:
        if amount_received is None:
            return
        if abs(Decimal(amount_received) - order.total_amount) > self.amount_tolerance:
            raise ProtocolFailure(
                ErrorCode.VALIDATION_ERROR,
                f"Payment amount mismatch. Expected: {order.total_amount}, "
                f"Received: {amount_received}",
            )

    @staticmethod
    def _log_failure(failure: ProtocolFailure, token_id: str, context: DeviceContext) -> None:
        if failure.code is ErrorCode.TOKEN_USED:
            logger.warning(
                "Attempt to reuse payment token %s from device %s", token_id, context.device_id
            )
        else:
            logger.warning(
                "Payment confirmation rejected (%s): %s - token %s, device %s",
                failure.code.value,
                failure.message,
                token_id,
                context.device_id,
            )

    def _audit(
        self,
        started: float,
        context: DeviceContext,
        actor: Actor | None,
        *,
        order_id: int,
        token_id: str,
        record: TokenRecord | None,
        payment_method: str,
        amount: Decimal | None,
        transaction_id: str | None,
        notes: str | None,
        failure: ProtocolFailure | None = None,
    ) -> None:
        self.audit.record(
            AuditEntry(
                action=AuditAction.CONFIRM_PAYMENT,
                error_code=failure.code if failure else None,
                error_message=failure.message if failure else None,
                order_id=order_id,
                token_id=token_id,
                short_code=record.short_code if record else None,
                context=context,
                actor=actor,
                processing_time_ms=int((time.perf_counter() - started) * 1000),
                payment_method=payment_method,
                payment_amount=amount,
                transaction_id=transaction_id,
                notes=notes,
            )
        )
