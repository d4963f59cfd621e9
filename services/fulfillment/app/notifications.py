"""
Fulfillment Service — Notification dispatcher

    state machine ──enqueue()──▶ asyncio.Queue ──worker──▶ sinks
                   (returns at once)                       ├─ RedisSink   (Pub/Sub)
                                                           ├─ WebhookSink (httpx, one per URL)
                                                           └─ LogSink

Delivery is at-least-once per sink: a failing sink is retried with linear
back-off, and after the last attempt the notification is logged and dropped.
Nothing here ever raises back into the command path.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from uuid import UUID

import httpx
import redis.asyncio as aioredis
from pydantic import BaseModel, Field

from .schemas import Order
from .transitions import OrderStatus, Role

logger = logging.getLogger(__name__)


class Notification(BaseModel):
    order_id: UUID
    order_number: str
    status: OrderStatus
    recipient_id: str
    channel: str = "push"
    title: str
    body: str
    data: dict = Field(default_factory=dict)


# status → (title, body) sent to the customer
CUSTOMER_MESSAGES: dict[OrderStatus, tuple[str, str]] = {
    OrderStatus.PLACED: ("Order Placed", "Your order #{number} has been placed. {eta}"),
    OrderStatus.CONFIRMED: ("Order Confirmed", "Your order is being prepared."),
    OrderStatus.PICKING: ("Order Being Picked", "We're picking your items now!"),
    OrderStatus.PACKING: ("Order Being Packed", "Almost ready for delivery!"),
    OrderStatus.READY: ("Ready For Dispatch", "Your order #{number} is packed and waiting for a rider."),
    OrderStatus.OUT_FOR_DELIVERY: ("On The Way!", "Your order is out for delivery."),
    OrderStatus.DELIVERED: ("Order Delivered", "Your order has been delivered. Enjoy!"),
    OrderStatus.REJECTED: ("Order Rejected", "Sorry, the store could not accept order #{number}."),
    OrderStatus.CANCELLED: ("Order Cancelled", "Order #{number} has been cancelled."),
}


def build_notifications(order: Order) -> list[Notification]:
    """Notifications for the order's latest status."""
    status = order.status
    last = order.status_history[-1]
    eta = (
        f"Estimated delivery {order.estimated_delivery:%H:%M}."
        if order.estimated_delivery
        else ""
    )
    data = {"order_id": str(order.id), "status": status.value, "version": order.version}

    def make(recipient_id: str, title: str, body: str, kind: str) -> Notification:
        return Notification(
            order_id=order.id,
            order_number=order.order_number,
            status=status,
            recipient_id=recipient_id,
            title=title,
            body=body.format(number=order.order_number, eta=eta).strip(),
            data={**data, "type": kind},
        )

    title, body = CUSTOMER_MESSAGES[status]
    notifications = [make(order.customer_id, title, body, "status_update")]

    if status is OrderStatus.PLACED:
        notifications.append(
            make(
                order.supplier_id,
                "New Order Received",
                f"New order #{{number}} - Rs. {order.total}",
                "new_order",
            )
        )
    elif status is OrderStatus.CANCELLED and last.actor_role is Role.CUSTOMER:
        notifications.append(
            make(
                order.supplier_id,
                "Order Cancelled",
                "The customer cancelled order #{number}.",
                "order_cancelled",
            )
        )
    return notifications


# ── Sinks ────────────────────────────────────────


class NotificationSink(ABC):
    name = "sink"

    @abstractmethod
    async def send(self, notification: Notification) -> None:
        """Deliver once; raise on failure so the dispatcher retries."""

    async def close(self) -> None:
        pass


class LogSink(NotificationSink):
    name = "log"

    async def send(self, notification: Notification) -> None:
        logger.info(
            "Notify %s [%s]: %s - %s",
            notification.recipient_id,
            notification.channel,
            notification.title,
            notification.body,
        )


class RedisSink(NotificationSink):
    name = "redis"

    def __init__(self, redis: aioredis.Redis, channel: str = "order_notifications") -> None:
        self.redis = redis
        self.channel = channel

    async def send(self, notification: Notification) -> None:
        await self.redis.publish(self.channel, json.dumps({
            "event_type": "OrderNotification",
            "data": notification.model_dump(mode="json"),
        }, default=str))


class WebhookSink(NotificationSink):
    def __init__(self, url: str, client: httpx.AsyncClient | None = None) -> None:
        self.url = url
        self.name = f"webhook:{url}"
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=5.0)

    async def send(self, notification: Notification) -> None:
        payload = {
            "event": "order.status_changed",
            "data": notification.model_dump(mode="json"),
        }
        response = await self.client.post(
            self.url, json=payload, headers={"Content-Type": "application/json"}
        )
        response.raise_for_status()

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()


# ── Dispatcher ───────────────────────────────────


class NotificationDispatcher:
    def __init__(
        self,
        sinks: list[NotificationSink],
        max_attempts: int = 5,
        retry_delay: float = 0.5,
    ) -> None:
        self.sinks = sinks
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._queue: asyncio.Queue[Notification] = asyncio.Queue()
        self._worker: asyncio.Task | None = None

    def enqueue(self, notification: Notification) -> None:
        self._queue.put_nowait(notification)

    def notify(self, order: Order) -> None:
        """Enqueue every notification for the order's current status."""
        for notification in build_notifications(order):
            self.enqueue(notification)

    async def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._run())
            logger.info("Notification dispatcher started with sinks: %s", [s.name for s in self.sinks])

    async def drain(self) -> None:
        """Wait until everything enqueued so far has been handled."""
        await self._queue.join()

    async def stop(self, timeout: float = 5.0) -> None:
        if self._worker is not None:
            try:
                await asyncio.wait_for(self.drain(), timeout)
            except asyncio.TimeoutError:
                logger.warning("Dropping %d undelivered notifications on shutdown", self._queue.qsize())
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        for sink in self.sinks:
            await sink.close()

    async def _run(self) -> None:
        while True:
            notification = await self._queue.get()
            try:
                for sink in self.sinks:
                    await self._deliver(sink, notification)
            finally:
                self._queue.task_done()

    async def _deliver(self, sink: NotificationSink, notification: Notification) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await sink.send(notification)
                return True
            except Exception as exc:
                if attempt == self.max_attempts:
                    logger.error(
                        "Giving up on %s notification for order %s to %s after %d attempts: %s",
                        sink.name, notification.order_id, notification.recipient_id, attempt, exc,
                    )
                    return False
                logger.warning(
                    "%s notification for order %s failed (attempt %d/%d): %s",
                    sink.name, notification.order_id, attempt, self.max_attempts, exc,
                )
                await asyncio.sleep(self.retry_delay * attempt)
        return False
