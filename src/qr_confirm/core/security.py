"""Staff session token helpers built on JWT primitives."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt

from qr_confirm.core.settings import settings


@dataclass(frozen=True)
class Actor:
    """Authenticated caller acting on a payment token."""

    user_id: str
    role: str

    def has_any_role(self, roles: list[str] | tuple[str, ...] | frozenset[str]) -> bool:
        return self.role.upper() in {r.upper() for r in roles}


def create_access_token(user_id: str | int, role: str, expires_minutes: int | None = None) -> str:
    """Create a bearer token for a staff member or customer session.

    Args:
        user_id: Identifier of the user, stored as the ``sub`` claim.
        role: Role name (ADMIN, STAFF, CASHIER, CUSTOMER).
        expires_minutes: Override for the configured lifetime.

    Returns:
        Encoded JWT string.
    """
    minutes = expires_minutes if expires_minutes is not None else settings.access_token_expire_minutes
    expire = datetime.now(UTC) + timedelta(minutes=minutes)
    to_encode: dict[str, object] = {"sub": str(user_id), "role": role.upper(), "exp": expire}
    encoded_jwt: str = jwt.encode(
        to_encode,
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )
    return encoded_jwt


def decode_access_token(token: str) -> Actor:
    """Decode a bearer token into an :class:`Actor`.

    Raises:
        JWTError: If the token is invalid, expired or lacks claims.
    """
    payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    subject = payload.get("sub")
    role = payload.get("role")
    if not subject or not role:
        raise JWTError("Token is missing subject or role")
    return Actor(user_id=str(subject), role=str(role).upper())
