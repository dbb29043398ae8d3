"""Value objects passed between the API layer and the payment services."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from qr_confirm.core.errors import ErrorCode
from qr_confirm.repositories.order_gateway import OrderSnapshot


@dataclass(frozen=True)
class DeviceContext:
    """Where a request came from; copied verbatim into audit entries."""

    device_id: str
    device_type: str | None = None
    terminal_id: str | None = None
    store_id: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class TokenIssuance:
    """Outcome of a successful issue or regenerate call.

    ``qr_token`` is only populated at issuance time; lookups of an existing
    token never return the signed string.
    """

    token_id: str
    order_id: int
    order_number: str
    short_code: str
    issued_at: datetime
    expires_at: datetime
    expires_in_seconds: int
    qr_token: str | None = None


@dataclass(frozen=True)
class IssueResult:
    success: bool
    issuance: TokenIssuance | None = None
    error_code: ErrorCode | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class ScanResult:
    success: bool
    order: OrderSnapshot | None = None
    token_id: str | None = None
    short_code: str | None = None
    expires_at: datetime | None = None
    error_code: ErrorCode | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class ValidationResult:
    success: bool
    token_id: str | None = None
    order_id: int | None = None
    expires_at: datetime | None = None
    expires_in_seconds: int | None = None
    error_code: ErrorCode | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class ConfirmResult:
    success: bool
    order: OrderSnapshot | None = None
    token_id: str | None = None
    amount: Decimal | None = None
    error_code: ErrorCode | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class CancelResult:
    success: bool
    invalidated: int = 0
    error_code: ErrorCode | None = None
    error_message: str | None = None
