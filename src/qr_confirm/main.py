# src/qr_confirm/main.py
"""Main entry point for the QR payment confirmation service."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from qr_confirm.api.v1 import payment_tokens_router
from qr_confirm.core.errors import ErrorCode, QRConfirmError
from qr_confirm.core.settings import settings
from qr_confirm.services.notifier import OutboxWorker, get_event_publisher
from qr_confirm.services.rate_limit import build_rate_limiter

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="QR Confirm API",
    description="Single-use QR payment confirmation for point-of-sale orders",
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

# Include API routers
app.include_router(payment_tokens_router, prefix="/api/v1")

# Per-instance state; counters are never shared through module globals
app.state.rate_limiter = build_rate_limiter() if settings.rate_limit_enabled else None
app.state.event_publisher = get_event_publisher()
app.state.outbox_worker = None


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "errorCode": ErrorCode.VALIDATION_ERROR.value,
            "errorMessage": "Request validation failed",
            "details": jsonable_encoder(exc.errors()),
        },
    )


@app.exception_handler(SQLAlchemyError)
@app.exception_handler(QRConfirmError)
async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Request %s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "errorCode": ErrorCode.INTERNAL_ERROR.value,
            "errorMessage": "Internal error",
        },
    )


@app.on_event("startup")
async def on_startup() -> None:
    if settings.payment_events_enabled and settings.payment_events_worker_enabled:
        worker = OutboxWorker(app.state.event_publisher)
        await worker.start()
        app.state.outbox_worker = worker


@app.on_event("shutdown")
async def on_shutdown() -> None:
    worker: OutboxWorker | None = getattr(app.state, "outbox_worker", None)
    if worker:
        await worker.stop()
        app.state.outbox_worker = None
    else:
        await app.state.event_publisher.aclose()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "description": "Single-use QR payment confirmation for point-of-sale orders",
        "docs": "/docs",
        "redoc": "/redoc",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("qr_confirm.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
