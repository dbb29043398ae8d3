"""Checks shared by the scan, validate and confirm workflows.

Each guard raises :class:`ProtocolFailure`; the calling service converts it
into a result and an audit entry.
"""
from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from qr_confirm.core.errors import ErrorCode, ProtocolFailure
from qr_confirm.core.security import Actor
from qr_confirm.repositories.order_gateway import OrderSnapshot
from qr_confirm.repositories.token_repo import TokenRecord
from qr_confirm.services.rate_limit import RateLimiter
from qr_confirm.services.results import DeviceContext


def ensure_permitted(
    actor: Actor | None,
    roles: Iterable[str],
    *,
    context: DeviceContext | None = None,
    trusted_device_ids: Iterable[str] = (),
) -> None:
    """Reject callers whose role or device is not allowed for the action."""
    if actor is None or not actor.has_any_role(tuple(roles)):
        raise ProtocolFailure(ErrorCode.UNAUTHORIZED, "Role is not permitted for this action")
    trusted = set(trusted_device_ids)
    if trusted and (context is None or context.device_id not in trusted):
        raise ProtocolFailure(ErrorCode.UNAUTHORIZED, "Device is not permitted for this action")


def ensure_within_rate(limiter: RateLimiter | None, bucket: str, key: str | None) -> None:
    if limiter is None or not key:
        return
    if not limiter.allow(bucket, key):
        raise ProtocolFailure(
            ErrorCode.RATE_LIMIT_EXCEEDED, "Too many attempts. Please wait."
        )


def ensure_token_usable(record: TokenRecord, now: datetime) -> None:
    """Recompute validity from ``used`` and the clock; never trust cached state."""
    if record.used:
        raise ProtocolFailure(ErrorCode.TOKEN_USED, "Token already used")
    if record.is_expired(now):
        raise ProtocolFailure(ErrorCode.TOKEN_EXPIRED, "Token expired")


def ensure_order_payable(order: OrderSnapshot | None, order_id: int) -> OrderSnapshot:
    if order is None:
        raise ProtocolFailure(ErrorCode.VALIDATION_ERROR, f"Order not found: {order_id}")
    if order.is_paid:
        raise ProtocolFailure(ErrorCode.ORDER_ALREADY_PAID, "Order already paid")
    return order
