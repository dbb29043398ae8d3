# src/qr_confirm/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import payment_tokens_router

__all__ = ["payment_tokens_router"]
