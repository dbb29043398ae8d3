"""Signed payment token encoding and verification.

Payment tokens are compact JWTs signed with a shared HMAC secret. The same
codec instance (built from settings) is used by the issuing and scanning
boundaries so both always agree on key, issuer and audience.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from jose import JWTError, jwt
from jose.exceptions import JWTClaimsError

from qr_confirm.core.errors import ErrorCode, ProtocolFailure, SigningKeyError
from qr_confirm.core.settings import settings

TOKEN_VERSION = 1


@dataclass(frozen=True)
class PaymentTokenClaims:
    """Verified claims extracted from a presented payment token."""

    token_id: str
    order_id: int
    nonce: str
    short_code: str | None
    expires_at: datetime


def hash_token(token: str) -> str:
    """Return the SHA-256 hex digest of a full signed token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class PaymentTokenCodec:
    """Sign and verify payment tokens under one injected key."""

    def __init__(self, secret: str, *, algorithm: str, issuer: str, audience: str) -> None:
        if not secret:
            raise SigningKeyError("QR token signing secret is not configured")
        self._secret = secret
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience

    def sign(
        self,
        *,
        token_id: str,
        order_id: int,
        order_number: str,
        nonce: str,
        short_code: str,
        amount: str,
        currency: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> str:
        """Build and sign the token payload for one issuance."""
        claims: dict[str, Any] = {
            "jti": token_id,
            "iss": self.issuer,
            "aud": self.audience,
            "sub": f"order_{order_id}",
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "order_id": order_id,
            "order_number": order_number,
            "nonce": nonce,
            "amount": amount,
            "currency": currency,
            "short_code": short_code,
            "v": TOKEN_VERSION,
        }
        try:
            encoded: str = jwt.encode(claims, self._secret, algorithm=self.algorithm)
        except JWTError as err:
            raise SigningKeyError(f"Unable to sign payment token: {err}") from err
        return encoded

    def verify(self, token: str, *, now: datetime) -> PaymentTokenClaims:
        """Verify signature, issuer, audience and expiry of a presented token.

        Expiry is checked against ``now`` rather than the wall clock so the
        caller's clock is the single source of time.

        Raises:
            ProtocolFailure: TOKEN_INVALID for any signature or claim problem,
                TOKEN_EXPIRED when the ``exp`` claim has passed.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_exp": False},
            )
        except JWTClaimsError as err:
            raise ProtocolFailure(ErrorCode.TOKEN_INVALID, f"Invalid token claims: {err}") from err
        except JWTError as err:
            raise ProtocolFailure(ErrorCode.TOKEN_INVALID, "Invalid token signature") from err

        try:
            token_id = str(payload["jti"])
            order_id = int(payload["order_id"])
            nonce = str(payload["nonce"])
            expires_at = datetime.fromtimestamp(int(payload["exp"]), UTC)
        except (KeyError, TypeError, ValueError) as err:
            raise ProtocolFailure(ErrorCode.TOKEN_INVALID, "Token is missing required claims") from err

        if now >= expires_at:
            raise ProtocolFailure(ErrorCode.TOKEN_EXPIRED, "Token expired")

        short_code = payload.get("short_code")
        return PaymentTokenClaims(
            token_id=token_id,
            order_id=order_id,
            nonce=nonce,
            short_code=str(short_code) if short_code is not None else None,
            expires_at=expires_at,
        )


def get_token_codec() -> PaymentTokenCodec:
    """Return a codec configured from application settings."""
    return PaymentTokenCodec(
        settings.qr_token_secret,
        algorithm=settings.qr_token_algorithm,
        issuer=settings.qr_token_issuer,
        audience=settings.qr_token_audience,
    )
