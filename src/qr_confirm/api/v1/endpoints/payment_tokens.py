# src/qr_confirm/api/v1/endpoints/payment_tokens.py
"""Payment token endpoints: issue, scan, validate, confirm and audit reads."""

import logging
from datetime import datetime, timedelta
from typing import Annotated

from fastapi import APIRouter, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from qr_confirm.core.errors import ErrorCode
from qr_confirm.core.settings import settings
from qr_confirm.db.time import Clock, as_utc
from qr_confirm.models.audit_log import QRScanAuditLog
from qr_confirm.schemas.payment_tokens import (
    AuditEntryResponse,
    AuditStatsResponse,
    ConfirmRequest,
    ConfirmResponse,
    DeviceFields,
    ErrorResponse,
    OrderSummary,
    ScanRequest,
    ScanResponse,
    SecurityEventCount,
    TokenCancelResponse,
    TokenIssueRequest,
    TokenIssueResponse,
    ValidateRequest,
    ValidateResponse,
)
from qr_confirm.services.notifier import OutboxDispatcher
from qr_confirm.services.results import DeviceContext, TokenIssuance

from ..dependencies import (
    AuditDep,
    ClockDep,
    CurrentActorDep,
    PaymentConfirmerDep,
    PublisherDep,
    SessionDep,
    TokenIssuerDep,
    TokenValidatorDep,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payment-tokens", tags=["payment-tokens"])

HTTP_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.TOKEN_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.TOKEN_USED: status.HTTP_409_CONFLICT,
    ErrorCode.ORDER_ALREADY_PAID: status.HTTP_409_CONFLICT,
    ErrorCode.TOKEN_EXPIRED: status.HTTP_400_BAD_REQUEST,
    ErrorCode.TOKEN_INVALID: status.HTTP_400_BAD_REQUEST,
    ErrorCode.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorCode.UNAUTHORIZED: status.HTTP_403_FORBIDDEN,
    ErrorCode.RATE_LIMIT_EXCEEDED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _failure(code: ErrorCode | None, message: str | None) -> JSONResponse:
    error_code = code or ErrorCode.INTERNAL_ERROR
    body = ErrorResponse(error_code=error_code, error_message=message)
    return JSONResponse(
        status_code=HTTP_STATUS_BY_CODE[error_code],
        content=body.model_dump(mode="json", by_alias=True),
    )


def _device_context(request: Request, body: DeviceFields | None = None) -> DeviceContext:
    device_id = body.device_id if body else request.headers.get("X-Device-Id", "unknown")
    return DeviceContext(
        device_id=device_id,
        device_type=body.device_type if body else None,
        terminal_id=body.terminal_id if body else None,
        store_id=body.store_id if body else None,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def _issuance_response(issuance: TokenIssuance) -> TokenIssueResponse:
    return TokenIssueResponse(
        qr_token=issuance.qr_token,
        token_id=issuance.token_id,
        short_code=issuance.short_code,
        issued_at=issuance.issued_at,
        expires_at=issuance.expires_at,
        expires_in_seconds=issuance.expires_in_seconds,
        order_id=issuance.order_id,
        order_number=issuance.order_number,
    )


@router.post(
    "",
    response_model=TokenIssueResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
def issue_token(
    body: TokenIssueRequest,
    request: Request,
    actor: CurrentActorDep,
    issuer: TokenIssuerDep,
) -> TokenIssueResponse | JSONResponse:
    """Issue the payment token shown to the customer for an order."""
    result = issuer.issue(body.order_id, actor=actor, context=_device_context(request))
    if not result.success or result.issuance is None:
        return _failure(result.error_code, result.error_message)
    return _issuance_response(result.issuance)


@router.post(
    "/orders/{order_id}/regenerate",
    response_model=TokenIssueResponse,
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
def regenerate_token(
    order_id: int,
    request: Request,
    actor: CurrentActorDep,
    issuer: TokenIssuerDep,
) -> TokenIssueResponse | JSONResponse:
    """Supersede the order's current token and issue a new one."""
    result = issuer.regenerate(order_id, actor=actor, context=_device_context(request))
    if not result.success or result.issuance is None:
        return _failure(result.error_code, result.error_message)
    return _issuance_response(result.issuance)


@router.post(
    "/orders/{order_id}/cancel",
    response_model=TokenCancelResponse,
    responses={403: {"model": ErrorResponse}},
)
def cancel_tokens(
    order_id: int,
    request: Request,
    actor: CurrentActorDep,
    issuer: TokenIssuerDep,
) -> TokenCancelResponse | JSONResponse:
    """Invalidate every valid token of a cancelled order."""
    result = issuer.cancel(order_id, actor=actor, context=_device_context(request))
    if not result.success:
        return _failure(result.error_code, result.error_message)
    return TokenCancelResponse(invalidated=result.invalidated)


@router.get(
    "/orders/{order_id}",
    response_model=TokenIssueResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def get_current_token(
    order_id: int,
    actor: CurrentActorDep,
    issuer: TokenIssuerDep,
) -> TokenIssueResponse | JSONResponse:
    """Return metadata of the order's valid token without the signed string."""
    if not actor.has_any_role(tuple(settings.issuer_roles)):
        return _failure(ErrorCode.UNAUTHORIZED, "Role is not permitted for this action")
    issuance = issuer.current_for_order(order_id)
    if issuance is None:
        return _failure(ErrorCode.TOKEN_NOT_FOUND, "No valid token for this order")
    return _issuance_response(issuance)


@router.post(
    "/scan",
    response_model=ScanResponse,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
    },
)
def scan_token(
    body: ScanRequest,
    request: Request,
    actor: CurrentActorDep,
    validator: TokenValidatorDep,
) -> ScanResponse | JSONResponse:
    """Check a scanned QR token or typed short code. Never consumes it."""
    result = validator.scan(
        token=body.token,
        short_code=body.short_code,
        context=_device_context(request, body),
        actor=actor,
    )
    if not result.success or result.order is None:
        return _failure(result.error_code, result.error_message)
    return ScanResponse(
        order=OrderSummary.model_validate(result.order),
        token_id=result.token_id or "",
        short_code=result.short_code or "",
        expires_at=result.expires_at,
    )


@router.post(
    "/validate",
    response_model=ValidateResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def validate_token(
    body: ValidateRequest,
    request: Request,
    actor: CurrentActorDep,
    validator: TokenValidatorDep,
) -> ValidateResponse | JSONResponse:
    result = validator.validate(
        order_id=body.order_id,
        token_id=body.token_id,
        context=_device_context(request, body),
        actor=actor,
    )
    if not result.success:
        return _failure(result.error_code, result.error_message)
    return ValidateResponse(
        token_id=result.token_id or body.token_id,
        order_id=result.order_id or body.order_id,
        expires_at=result.expires_at,
        expires_in_seconds=result.expires_in_seconds or 0,
    )


@router.post(
    "/confirm",
    response_model=ConfirmResponse,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
    },
)
async def confirm_payment(
    body: ConfirmRequest,
    request: Request,
    actor: CurrentActorDep,
    confirmer: PaymentConfirmerDep,
    publisher: PublisherDep,
    db: SessionDep,
) -> ConfirmResponse | JSONResponse:
    """Consume the token and mark the order paid."""
    result = await run_in_threadpool(
        lambda: confirmer.confirm(
            order_id=body.order_id,
            token_id=body.token_id,
            payment_method=body.payment_method.value,
            transaction_id=body.transaction_id,
            amount_received=body.amount_received,
            notes=body.notes,
            context=_device_context(request, body),
            actor=actor,
        )
    )
    if not result.success or result.order is None:
        return _failure(result.error_code, result.error_message)

    # First delivery attempt; the outbox worker retries whatever is left.
    try:
        await OutboxDispatcher(db, publisher).dispatch_pending(order_id=body.order_id)
    except SQLAlchemyError:
        logger.error(
            "Could not dispatch payment event for order %s", body.order_id, exc_info=True
        )
        await run_in_threadpool(db.rollback)

    return ConfirmResponse(
        order=OrderSummary.model_validate(result.order),
        token_id=result.token_id or body.token_id,
        amount=result.amount,
    )


@router.get(
    "/audit/security-events",
    response_model=SecurityEventCount,
    responses={403: {"model": ErrorResponse}},
)
def count_security_events(
    actor: CurrentActorDep,
    audit: AuditDep,
    window_seconds: Annotated[int, Query(alias="windowSeconds", gt=0, le=86_400 * 30)] = 3600,
    device_id: Annotated[str | None, Query(alias="deviceId")] = None,
    ip_address: Annotated[str | None, Query(alias="ipAddress")] = None,
    order_id: Annotated[int | None, Query(alias="orderId")] = None,
) -> SecurityEventCount | JSONResponse:
    """Count expired, duplicate, invalid and unauthorized attempts in a window."""
    if not actor.has_any_role(tuple(settings.audit_roles)):
        return _failure(ErrorCode.UNAUTHORIZED, "Role is not permitted for this action")
    count = audit.count_security_events(
        window_seconds,
        device_id=device_id,
        ip_address=ip_address,
        order_id=order_id,
    )
    return SecurityEventCount(count=count, window_seconds=window_seconds)


def _audit_window(
    clock: Clock, start: datetime | None, end: datetime | None
) -> tuple[datetime, datetime]:
    end_at = as_utc(end) if end is not None else clock()
    start_at = as_utc(start) if start is not None else end_at - timedelta(hours=24)
    return start_at, end_at


def _audit_entries(rows: list[QRScanAuditLog]) -> list[AuditEntryResponse]:
    return [AuditEntryResponse.model_validate(row) for row in rows]


@router.get(
    "/audit/security-events/entries",
    response_model=list[AuditEntryResponse],
    responses={403: {"model": ErrorResponse}},
)
def list_security_events(
    actor: CurrentActorDep,
    audit: AuditDep,
    clock: ClockDep,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[AuditEntryResponse] | JSONResponse:
    """Security-relevant entries between ``start`` and ``end``, last 24 hours by default."""
    if not actor.has_any_role(tuple(settings.audit_roles)):
        return _failure(ErrorCode.UNAUTHORIZED, "Role is not permitted for this action")
    start_at, end_at = _audit_window(clock, start, end)
    return _audit_entries(audit.security_events(start_at, end_at))


@router.get(
    "/audit/orders/{order_id}",
    response_model=list[AuditEntryResponse],
    responses={403: {"model": ErrorResponse}},
)
def order_audit_history(
    order_id: int,
    actor: CurrentActorDep,
    audit: AuditDep,
) -> list[AuditEntryResponse] | JSONResponse:
    if not actor.has_any_role(tuple(settings.audit_roles)):
        return _failure(ErrorCode.UNAUTHORIZED, "Role is not permitted for this action")
    return _audit_entries(audit.history_for_order(order_id))


@router.get(
    "/audit/tokens/{token_id}",
    response_model=list[AuditEntryResponse],
    responses={403: {"model": ErrorResponse}},
)
def token_audit_history(
    token_id: str,
    actor: CurrentActorDep,
    audit: AuditDep,
) -> list[AuditEntryResponse] | JSONResponse:
    if not actor.has_any_role(tuple(settings.audit_roles)):
        return _failure(ErrorCode.UNAUTHORIZED, "Role is not permitted for this action")
    return _audit_entries(audit.history_for_token(token_id))


@router.get(
    "/audit/stats",
    response_model=AuditStatsResponse,
    responses={403: {"model": ErrorResponse}},
)
def audit_stats(
    actor: CurrentActorDep,
    audit: AuditDep,
    clock: ClockDep,
    start: datetime | None = None,
    end: datetime | None = None,
) -> AuditStatsResponse | JSONResponse:
    """Scan and confirmation statistics for reporting."""
    if not actor.has_any_role(tuple(settings.audit_roles)):
        return _failure(ErrorCode.UNAUTHORIZED, "Role is not permitted for this action")
    start_at, end_at = _audit_window(clock, start, end)
    return AuditStatsResponse(start=start_at, end=end_at, **audit.stats(start_at, end_at))
