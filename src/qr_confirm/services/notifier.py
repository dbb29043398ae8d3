"""Payment-confirmed events: transactional outbox and delivery.

The confirmer writes an outbox row in the same transaction as the order
update, so an event exists if and only if the payment committed. Delivery
happens afterwards, first inline from the request and then from
:class:`OutboxWorker`. Consumers (kitchen display, receipts, cash
reconciliation) must dedupe on the ``Idempotency-Key`` header.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from qr_confirm.core.security import Actor
from qr_confirm.core.settings import settings
from qr_confirm.db.session import SessionLocal
from qr_confirm.db.time import Clock, utcnow
from qr_confirm.models.payment_event_outbox import (
    OUTBOX_STATUS_DELIVERED,
    OUTBOX_STATUS_FAILED,
    OUTBOX_STATUS_PENDING,
    PaymentEventOutbox,
)
from qr_confirm.repositories.order_gateway import OrderSnapshot

logger = logging.getLogger(__name__)

EVENT_PAYMENT_CONFIRMED = "payment.confirmed"
HTTP_OK_MIN = 200
HTTP_OK_MAX = 299


class EventDeliveryError(RuntimeError):
    """Raised by a publisher when a consumer did not accept an event."""


def payment_confirmed_key(order_id: int) -> str:
    """Idempotency key for the single payment-confirmed event of an order."""
    return f"payment-confirmed-{order_id}"


class EventNotifier:
    """Writes outbox rows inside the caller's transaction; never commits."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def enqueue_payment_confirmed(
        self,
        order: OrderSnapshot,
        *,
        payment_method: str,
        transaction_id: str | None,
        actor: Actor | None,
        device_id: str | None,
        confirmed_at: datetime,
    ) -> PaymentEventOutbox | None:
        if not settings.payment_events_enabled:
            return None
        payload: dict[str, object] = {
            "order_id": order.id,
            "order_number": order.order_number,
            "payment_method": payment_method,
            "amount": str(order.total_amount),
            "currency": order.currency,
            "transaction_id": transaction_id,
            "confirmed_by_user_id": actor.user_id if actor else None,
            "confirmed_by_device_id": device_id,
            "confirmed_at": confirmed_at.isoformat(),
        }
        row = PaymentEventOutbox(
            event_type=EVENT_PAYMENT_CONFIRMED,
            idempotency_key=payment_confirmed_key(order.id),
            order_id=order.id,
            payload=payload,
            status=OUTBOX_STATUS_PENDING,
            retry_count=0,
            created_at=confirmed_at,
        )
        self.session.add(row)
        self.session.flush()
        return row


class PaymentEventPublisher(Protocol):
    async def publish(
        self, event_type: str, payload: Mapping[str, Any], idempotency_key: str
    ) -> None: ...

    async def aclose(self) -> None: ...


class LoggingEventPublisher:
    """Publisher used when no consumer URL is configured."""

    async def publish(
        self, event_type: str, payload: Mapping[str, Any], idempotency_key: str
    ) -> None:
        logger.info(
            "Event %s (%s) for order %s",
            event_type,
            idempotency_key,
            payload.get("order_id"),
        )

    async def aclose(self) -> None:
        return None


class HttpEventPublisher:
    """POST events as JSON to the configured consumer endpoint."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self._timeout = timeout_seconds
        self._client = client
        self._client_lock = asyncio.Lock()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout))
        return self._client

    async def publish(
        self, event_type: str, payload: Mapping[str, Any], idempotency_key: str
    ) -> None:
        client = await self._ensure_client()
        try:
            response = await client.post(
                self.url,
                json={"type": event_type, "data": dict(payload)},
                headers={"Idempotency-Key": idempotency_key},
            )
        except httpx.HTTPError as exc:
            raise EventDeliveryError(f"Event delivery failed: {exc}") from exc
        if not HTTP_OK_MIN <= response.status_code <= HTTP_OK_MAX:
            raise EventDeliveryError(f"Event consumer responded with {response.status_code}")

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def get_event_publisher() -> PaymentEventPublisher:
    if settings.payment_events_url:
        return HttpEventPublisher(
            settings.payment_events_url,
            timeout_seconds=settings.payment_events_http_timeout_seconds,
        )
    return LoggingEventPublisher()


@dataclass(frozen=True)
class _PendingEvent:
    id: int
    event_type: str
    payload: dict[str, Any]
    idempotency_key: str


class OutboxDispatcher:
    """Deliver pending outbox rows, recording retries and terminal failures.

    Session work runs in worker threads via :func:`asyncio.to_thread`; only
    the publisher call runs on the event loop.
    """

    def __init__(
        self,
        session: Session,
        publisher: PaymentEventPublisher,
        *,
        max_retries: int | None = None,
        batch_size: int | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.session = session
        self.publisher = publisher
        self.max_retries = (
            max_retries if max_retries is not None else settings.payment_events_max_retries
        )
        self.batch_size = batch_size if batch_size is not None else settings.payment_events_batch_size
        self._clock = clock

    async def dispatch_pending(self, *, order_id: int | None = None) -> int:
        """Attempt every pending row (optionally of one order); return deliveries."""
        pending = await asyncio.to_thread(self._load_pending, order_id)
        logger.debug("Found %d pending payment events", len(pending))

        delivered = 0
        for event in pending:
            try:
                await self.publisher.publish(
                    event.event_type, event.payload, event.idempotency_key
                )
            except EventDeliveryError as exc:
                logger.warning("Delivery of payment event %s failed: %s", event.id, exc)
                await asyncio.to_thread(self._record_failure, event.id, str(exc))
            except (OSError, TimeoutError) as exc:
                logger.warning("Network error delivering payment event %s: %s", event.id, exc)
                await asyncio.to_thread(self._record_failure, event.id, str(exc))
            else:
                await asyncio.to_thread(self._record_delivery, event.id)
                delivered += 1
        return delivered

    def _load_pending(self, order_id: int | None) -> list[_PendingEvent]:
        stmt = (
            select(PaymentEventOutbox)
            .where(PaymentEventOutbox.status == OUTBOX_STATUS_PENDING)
            .order_by(PaymentEventOutbox.id)
            .limit(self.batch_size)
        )
        if order_id is not None:
            stmt = stmt.where(PaymentEventOutbox.order_id == order_id)
        return [
            _PendingEvent(row.id, row.event_type, dict(row.payload), row.idempotency_key)
            for row in self.session.execute(stmt).scalars()
        ]

    def _record_delivery(self, event_id: int) -> None:
        row = self.session.get(PaymentEventOutbox, event_id)
        if row is None:
            return
        row.status = OUTBOX_STATUS_DELIVERED
        row.delivered_at = self._clock()
        row.last_error = None
        self.session.commit()

    def _record_failure(self, event_id: int, error: str) -> None:
        row = self.session.get(PaymentEventOutbox, event_id)
        if row is None:
            return
        row.retry_count += 1
        row.last_error = error[:500]
        if row.retry_count >= self.max_retries:
            row.status = OUTBOX_STATUS_FAILED
            logger.error(
                "Payment event %s for order %s failed after %d attempts",
                row.idempotency_key,
                row.order_id,
                row.retry_count,
            )
        self.session.commit()


class OutboxWorker:
    """Periodically retries pending payment events in the background."""

    def __init__(
        self,
        publisher: PaymentEventPublisher | None = None,
        db_session: Session | None = None,
    ) -> None:
        self.publisher = publisher or get_event_publisher()
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._db_session = db_session

    async def start(self) -> None:
        """Start the background delivery loop."""
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the loop and release the publisher."""
        if self._task is not None:
            self._stopping.set()
            await self._task
            self._task = None
        await self.publisher.aclose()

    async def run_once(self) -> int:
        if self._db_session is not None:
            return await OutboxDispatcher(self._db_session, self.publisher).dispatch_pending()
        db = SessionLocal()
        try:
            return await OutboxDispatcher(db, self.publisher).dispatch_pending()
        finally:
            await asyncio.to_thread(db.close)

    async def _run(self) -> None:
        interval = max(0.1, float(settings.payment_events_poll_interval_seconds))

        while not self._stopping.is_set():
            try:
                await self.run_once()
            except SQLAlchemyError as e:
                logger.error("OutboxWorker encountered storage error: %s", e, exc_info=True)
                await asyncio.sleep(min(interval * 4, 30.0))
                continue

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
