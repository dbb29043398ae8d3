"""Read-only scanning and validation of presented payment tokens.

Nothing in this module ever sets ``used``. A scan can be repeated any number
of times; only the confirmer consumes a token.
"""

from __future__ import annotations

import hmac
import logging
import time
from collections.abc import Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from qr_confirm.core.errors import ErrorCode, ProtocolFailure
from qr_confirm.core.security import Actor
from qr_confirm.core.settings import settings
from qr_confirm.core.tokens import PaymentTokenCodec, hash_token
from qr_confirm.db.time import Clock, utcnow
from qr_confirm.models.audit_log import AuditAction
from qr_confirm.repositories.order_gateway import OrderGateway
from qr_confirm.repositories.token_repo import TokenRecord, TokenRepository
from qr_confirm.services.audit import AuditEntry, AuditRecorder
from qr_confirm.services.guards import (
    ensure_order_payable,
    ensure_permitted,
    ensure_token_usable,
    ensure_within_rate,
)
from qr_confirm.services.rate_limit import BUCKET_SCAN, BUCKET_SHORT_CODE, RateLimiter
from qr_confirm.services.results import DeviceContext, ScanResult, ValidationResult

logger = logging.getLogger(__name__)


class TokenValidator:
    """Resolve a presented token or short code and check it without consuming it."""

    def __init__(
        self,
        session: Session,
        *,
        codec: PaymentTokenCodec,
        orders: OrderGateway,
        audit: AuditRecorder,
        clock: Clock = utcnow,
        rate_limiter: RateLimiter | None = None,
        staff_roles: Iterable[str] | None = None,
        trusted_device_ids: Iterable[str] | None = None,
    ) -> None:
        self.session = session
        self.tokens = TokenRepository(session)
        self.codec = codec
        self.orders = orders
        self.audit = audit
        self._clock = clock
        self.rate_limiter = rate_limiter
        self.staff_roles = tuple(staff_roles if staff_roles is not None else settings.staff_roles)
        self.trusted_device_ids = tuple(
            trusted_device_ids if trusted_device_ids is not None else settings.trusted_device_ids
        )

    def scan(
        self,
        *,
        token: str | None = None,
        short_code: str | None = None,
        context: DeviceContext,
        actor: Actor | None,
    ) -> ScanResult:
        """Check a presented token (preferred) or short code.

        Returns a successful result with the order summary, or a failure
        carrying one of TOKEN_NOT_FOUND, TOKEN_EXPIRED, TOKEN_USED,
        TOKEN_INVALID, ORDER_ALREADY_PAID, UNAUTHORIZED, RATE_LIMIT_EXCEEDED or
        VALIDATION_ERROR. Exactly one SCAN audit entry is written per call.
        """
        started = time.perf_counter()
        normalized_code = short_code.strip().upper() if short_code else None
        record: TokenRecord | None = None
        order_id: int | None = None
        try:
            ensure_permitted(
                actor,
                self.staff_roles,
                context=context,
                trusted_device_ids=self.trusted_device_ids,
            )
            if bool(token) == bool(normalized_code):
                raise ProtocolFailure(
                    ErrorCode.VALIDATION_ERROR,
                    "Provide exactly one of a QR token or a short code",
                )
            now = self._clock()
            if token:
                ensure_within_rate(self.rate_limiter, BUCKET_SCAN, context.device_id)
                claims = self.codec.verify(token, now=now)
                order_id = claims.order_id
                record = self.tokens.get_by_token_id(claims.token_id)
                if record is None:
                    raise ProtocolFailure(ErrorCode.TOKEN_NOT_FOUND, "Token not found")
                self._ensure_matches(record, token, claims.nonce, claims.order_id)
            else:
                ensure_within_rate(
                    self.rate_limiter,
                    BUCKET_SHORT_CODE,
                    context.ip_address or context.device_id,
                )
                record = self.tokens.get_by_short_code(normalized_code or "")
                if record is None:
                    raise ProtocolFailure(ErrorCode.TOKEN_NOT_FOUND, "Token not found")
            order_id = record.order_id
            ensure_token_usable(record, now)
            order = ensure_order_payable(self.orders.get(record.order_id), record.order_id)
        except ProtocolFailure as failure:
            self._log_failure("Scan", failure, record, context)
            self._record(
                AuditAction.SCAN,
                started,
                context,
                actor,
                order_id=order_id,
                record=record,
                short_code=normalized_code,
                failure=failure,
            )
            return ScanResult(
                False,
                token_id=record.token_id if record else None,
                error_code=failure.code,
                error_message=failure.message,
            )
        except SQLAlchemyError as err:
            self._storage_failure(AuditAction.SCAN, started, context, actor, order_id, record, err)
            raise

        logger.info(
            "QR scan successful - order %s, token %s, device %s",
            order.order_number,
            record.token_id,
            context.device_id,
        )
        self._record(
            AuditAction.SCAN,
            started,
            context,
            actor,
            order_id=order.id,
            record=record,
            short_code=normalized_code,
        )
        return ScanResult(
            True,
            order=order,
            token_id=record.token_id,
            short_code=record.short_code,
            expires_at=record.expires_at,
        )

    def validate(
        self,
        *,
        order_id: int,
        token_id: str,
        context: DeviceContext,
        actor: Actor | None,
    ) -> ValidationResult:
        """Report whether a token id is still usable for the given order."""
        started = time.perf_counter()
        record: TokenRecord | None = None
        try:
            ensure_permitted(actor, self.staff_roles)
            now = self._clock()
            record = self.tokens.get_by_token_id(token_id)
            if record is None:
                raise ProtocolFailure(ErrorCode.TOKEN_NOT_FOUND, "Token not found")
            if record.order_id != order_id:
                raise ProtocolFailure(ErrorCode.TOKEN_INVALID, "Token does not belong to this order")
            ensure_token_usable(record, now)
        except ProtocolFailure as failure:
            self._record(
                AuditAction.VALIDATE,
                started,
                context,
                actor,
                order_id=order_id,
                record=record,
                failure=failure,
            )
            return ValidationResult(
                False,
                token_id=token_id,
                order_id=order_id,
                error_code=failure.code,
                error_message=failure.message,
            )
        except SQLAlchemyError as err:
            self._storage_failure(
                AuditAction.VALIDATE, started, context, actor, order_id, record, err
            )
            raise

        self._record(
            AuditAction.VALIDATE, started, context, actor, order_id=order_id, record=record
        )
        return ValidationResult(
            True,
            token_id=record.token_id,
            order_id=record.order_id,
            expires_at=record.expires_at,
            expires_in_seconds=record.expires_in_seconds(now),
        )

    # --- Internals -----------------------------------------------------------------
    @staticmethod
    def _ensure_matches(record: TokenRecord, token: str, nonce: str, order_id: int) -> None:
        """Detect substituted tokens and replayed nonces."""
        if not hmac.compare_digest(record.token_hash, hash_token(token)):
            raise ProtocolFailure(ErrorCode.TOKEN_INVALID, "Token hash mismatch")
        if not hmac.compare_digest(record.nonce, nonce):
            raise ProtocolFailure(ErrorCode.TOKEN_INVALID, "Nonce mismatch - possible replay attack")
        if record.order_id != order_id:
            raise ProtocolFailure(ErrorCode.TOKEN_INVALID, "Token order mismatch")

    @staticmethod
    def _log_failure(
        label: str,
        failure: ProtocolFailure,
        record: TokenRecord | None,
        context: DeviceContext,
    ) -> None:
        token_id = record.token_id if record else None
        if failure.code is ErrorCode.TOKEN_INVALID:
            logger.error(
                "%s rejected: %s (token %s, device %s)",
                label,
                failure.message,
                token_id,
                context.device_id,
            )
        else:
            logger.warning(
                "%s failed: %s (token %s, device %s)",
                label,
                failure.message,
                token_id,
                context.device_id,
            )

    def _record(
        self,
        action: AuditAction,
        started: float,
        context: DeviceContext,
        actor: Actor | None,
        *,
        order_id: int | None,
        record: TokenRecord | None,
        short_code: str | None = None,
        failure: ProtocolFailure | None = None,
    ) -> None:
        self.audit.record(
            AuditEntry(
                action=action,
                error_code=failure.code if failure else None,
                error_message=failure.message if failure else None,
                order_id=order_id,
                token_id=record.token_id if record else None,
                short_code=short_code or (record.short_code if record else None),
                context=context,
                actor=actor,
                processing_time_ms=int((time.perf_counter() - started) * 1000),
            )
        )

    def _storage_failure(
        self,
        action: AuditAction,
        started: float,
        context: DeviceContext,
        actor: Actor | None,
        order_id: int | None,
        record: TokenRecord | None,
        err: SQLAlchemyError,
    ) -> None:
        logger.error("%s failed with storage error: %s", action.value, err, exc_info=True)
        self.session.rollback()
        self._record(
            action,
            started,
            context,
            actor,
            order_id=order_id,
            record=record,
            failure=ProtocolFailure(ErrorCode.INTERNAL_ERROR, "Storage error"),
        )
