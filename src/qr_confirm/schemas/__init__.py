# src/qr_confirm/schemas/__init__.py
"""
Pydantic schemas for API request/response models.

These schemas define the structure of API data for serialization and validation.
"""

from .payment_tokens import (
    AuditEntryResponse,
    AuditStatsResponse,
    ConfirmRequest,
    ConfirmResponse,
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

__all__ = [
    "AuditEntryResponse", "AuditStatsResponse",
    "ConfirmRequest", "ConfirmResponse",
    "ErrorResponse", "OrderSummary",
    "ScanRequest", "ScanResponse",
    "SecurityEventCount", "TokenCancelResponse",
    "TokenIssueRequest", "TokenIssueResponse",
    "ValidateRequest", "ValidateResponse",
]
