# src/qr_confirm/schemas/payment_tokens.py
"""Payment token Pydantic schemas.

Request and response bodies use camelCase keys on the wire.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from qr_confirm.core.errors import ErrorCode
from qr_confirm.models.order import PaymentMethod


class CamelModel(BaseModel):
    """Base schema serialising field names as camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DeviceFields(CamelModel):
    device_id: str = Field(..., min_length=1, max_length=100, description="Scanning device")
    device_type: str | None = Field(None, max_length=50, description="MOBILE, TABLET or KIOSK")
    terminal_id: str | None = Field(None, max_length=50)
    store_id: int | None = None


class TokenIssueRequest(CamelModel):
    """Schema for issuing the first token of an order."""

    order_id: int = Field(..., gt=0)


class TokenIssueResponse(CamelModel):
    """Token material handed to the customer display. Shown only once."""

    qr_token: str | None = None
    token_id: str
    short_code: str
    issued_at: datetime
    expires_at: datetime
    expires_in_seconds: int
    order_id: int
    order_number: str


class TokenCancelResponse(CamelModel):
    invalidated: int


class ScanRequest(DeviceFields):
    """Schema for scanning a QR token or typing its short code."""

    token: str | None = Field(None, description="Signed token read from the QR code")
    short_code: str | None = Field(None, max_length=16, description="Manual entry code")


class ValidateRequest(DeviceFields):
    order_id: int = Field(..., gt=0)
    token_id: str = Field(..., min_length=1, max_length=50)


class ConfirmRequest(DeviceFields):
    """Schema for confirming payment of an order by consuming its token."""

    order_id: int = Field(..., gt=0)
    token_id: str = Field(..., min_length=1, max_length=50)
    payment_method: PaymentMethod
    transaction_id: str | None = Field(None, max_length=100)
    amount_received: Decimal | None = Field(None, ge=0)
    notes: str | None = Field(None, max_length=1000)


class OrderSummary(CamelModel):
    """Order details shown to staff after a scan or confirmation."""

    id: int
    order_number: str
    total_amount: Decimal
    currency: str
    status: str
    payment_status: str
    payment_method: str | None = None
    transaction_id: str | None = None
    paid_at: datetime | None = None
    qr_payment_confirmed_at: datetime | None = None
    qr_confirmed_by_user_id: str | None = None
    qr_confirmed_by_device_id: str | None = None

    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)


class ScanResponse(CamelModel):
    success: bool = True
    order: OrderSummary
    token_id: str
    short_code: str
    expires_at: datetime


class ValidateResponse(CamelModel):
    success: bool = True
    token_id: str
    order_id: int
    expires_at: datetime
    expires_in_seconds: int


class ConfirmResponse(CamelModel):
    success: bool = True
    order: OrderSummary
    token_id: str
    amount: Decimal | None = None


class ErrorResponse(CamelModel):
    """Structured failure body shared by every endpoint."""

    success: bool = False
    error_code: ErrorCode
    error_message: str | None = None


class SecurityEventCount(CamelModel):
    count: int
    window_seconds: int


class AuditEntryResponse(CamelModel):
    """One audit row as returned to administrators."""

    id: int
    order_id: int | None = None
    token_id: str | None = None
    short_code: str | None = None
    action: str
    status: str
    error_code: str | None = None
    error_message: str | None = None
    device_id: str
    device_type: str | None = None
    terminal_id: str | None = None
    store_id: int | None = None
    ip_address: str | None = None
    user_id: str | None = None
    user_role: str | None = None
    scan_timestamp: datetime
    processing_time_ms: int | None = None
    payment_method: str | None = None
    payment_amount: Decimal | None = None
    transaction_id: str | None = None
    notes: str | None = None
    is_security_event: bool = False

    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)


class AuditStatsResponse(CamelModel):
    start: datetime
    end: datetime
    average_scan_ms: float | None = None
    average_confirm_ms: float | None = None
    scans_by_status: dict[str, int] = Field(default_factory=dict)
    payment_methods: dict[str, int] = Field(default_factory=dict)
