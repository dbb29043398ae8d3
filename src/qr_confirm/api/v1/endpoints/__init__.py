# src/qr_confirm/api/v1/endpoints/__init__.py
"""API endpoint modules for version 1."""

from .payment_tokens import router as payment_tokens_router

__all__ = ["payment_tokens_router"]
