"""Error taxonomy for the payment confirmation protocol.

Protocol failures (expired, used, mismatched tokens and so on) are returned to
callers as structured results carrying an :class:`ErrorCode`. Exceptions are
reserved for conditions that are fatal to the request: signing-key problems,
token generation exhaustion, and storage errors.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Caller-facing failure codes."""

    TOKEN_NOT_FOUND = "TOKEN_NOT_FOUND"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_USED = "TOKEN_USED"
    TOKEN_INVALID = "TOKEN_INVALID"
    ORDER_ALREADY_PAID = "ORDER_ALREADY_PAID"
    UNAUTHORIZED = "UNAUTHORIZED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class QRConfirmError(RuntimeError):
    """Base exception for failures that abort a request."""


class SigningKeyError(QRConfirmError):
    """Raised when the token signing key is missing or unusable."""


class TokenGenerationError(QRConfirmError):
    """Raised when unique token identifiers cannot be generated."""


class ProtocolFailure(Exception):
    """Internal signal carrying a protocol failure up to the service boundary.

    Services catch it and convert it into a result object; it never escapes
    the service layer.
    """

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
