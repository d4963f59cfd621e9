"""
Fulfillment Service — Query handlers (the read side)

Reads come from the order documents the write side stores in the same
transaction as the events, so a committed change is visible to the next
query; there is no projection lag.
"""

import logging
from typing import AsyncIterator
from uuid import UUID

from .aggregate import OrderAggregate
from .broker import Broker
from .errors import Forbidden, NotFound
from .schemas import Actor, Invoice, InvoiceLine, Order, StockLevel
from .store import Store
from .transitions import OrderStatus, Role

logger = logging.getLogger(__name__)


def authorize_read(order: Order, actor: Actor) -> None:
    if actor.role is Role.CUSTOMER and order.customer_id != actor.id:
        raise Forbidden("Not your order")
    if actor.role is Role.SUPPLIER and order.supplier_id != actor.id:
        raise Forbidden("Order is addressed to another supplier")


class QueryService:
    def __init__(self, store: Store, broker: Broker) -> None:
        self.store = store
        self.broker = broker

    async def get_by_id(self, order_id: UUID) -> Order:
        order = await self.store.get_order(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        return order

    async def list_by_supplier(
        self,
        supplier_id: str,
        status: OrderStatus | None = None,
        limit: int | None = None,
    ) -> list[Order]:
        """Newest first."""
        return await self.store.list_orders(supplier_id=supplier_id, status=status, limit=limit)

    async def list_by_customer(
        self,
        customer_id: str,
        status: OrderStatus | None = None,
        limit: int | None = None,
    ) -> list[Order]:
        return await self.store.list_orders(customer_id=customer_id, status=status, limit=limit)

    async def list_all(self, status: OrderStatus | None = None, limit: int | None = None) -> list[Order]:
        return await self.store.list_orders(status=status, limit=limit)

    async def supplier_board(self, supplier_id: str) -> dict[str, list[Order]]:
        """Kanban columns: one per status, each newest first."""
        board: dict[str, list[Order]] = {status.value: [] for status in OrderStatus}
        for order in await self.list_by_supplier(supplier_id):
            board[order.status.value].append(order)
        return board

    async def history(self, order_id: UUID) -> list[dict]:
        events = await self.store.load_events(order_id)
        if not events:
            raise NotFound(f"Order {order_id} not found")
        return events

    async def list_stock(self, supplier_id: str | None = None) -> list[StockLevel]:
        return await self.store.list_stock(supplier_id)

    async def invoice(self, order_id: UUID, actor: Actor) -> Invoice:
        order = await self.get_by_id(order_id)
        if actor.role is not Role.ADMIN and not (
            actor.role is Role.CUSTOMER and order.customer_id == actor.id
        ):
            raise Forbidden("Only the customer who placed the order can see its invoice")
        return Invoice(
            order_id=order.id,
            order_number=order.order_number,
            date=order.created_at,
            customer_id=order.customer_id,
            supplier_id=order.supplier_id,
            status=order.status,
            items=[
                InvoiceLine(
                    product_id=line.product_id,
                    name=line.name,
                    unit_price=line.unit_price,
                    quantity=line.quantity,
                    line_total=line.line_total,
                )
                for line in order.items
            ],
            subtotal=order.subtotal,
            delivery_fee=order.delivery_fee,
            discount=order.discount,
            total=order.total,
            payment_method=order.payment_method,
            delivery_address=order.delivery_address,
        )

    # ── Live tracking ────────────────────────────

    async def subscribe(self, order_id: UUID) -> AsyncIterator[Order]:
        """
        Yield the current document, then every later version exactly once
        and in order. Versions the broker dropped or delivered out of order
        are rebuilt from the event log. Ends after a delivered, cancelled or
        rejected document, since nothing will follow it.
        """
        async with self.broker.listen(order_id) as updates:
            current = await self.get_by_id(order_id)
            yield current
            if current.status.is_terminal:
                return
            last_version = current.version

            async for update in updates:
                if update.version <= last_version:
                    continue
                pending = [update]
                if update.version > last_version + 1:
                    logger.info(
                        "Order %s: filling live-update gap %d..%d from the event log",
                        order_id, last_version + 1, update.version - 1,
                    )
                    pending = await self._replay_between(order_id, last_version, update.version) + pending
                for order in pending:
                    yield order
                    last_version = order.version
                    if order.status.is_terminal:
                        logger.info("Order %s reached %s, live tracking ends", order_id, order.status.value)
                        return

    async def _replay_between(self, order_id: UUID, after: int, before: int) -> list[Order]:
        events = await self.store.load_events(order_id)
        agg = OrderAggregate()
        documents = []
        for record in events[: before - 1]:
            agg.apply_event(record["event_type"], record["event_data"])
            if agg.version > after:
                documents.append(agg.to_document())
        return documents
