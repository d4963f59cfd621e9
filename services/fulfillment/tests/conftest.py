"""
Shared fixtures: an in-memory service graph, a recording notification sink
and a small `shop` helper that lists products and drives orders through the
workflow.
"""

from decimal import Decimal

import pytest

from app.config import Settings
from app.container import build_services
from app.events import PACKING_STEPS, DeliveryAddress
from app.notifications import NotificationSink
from app.schemas import Actor, ListProductRequest, PlaceLine, PlaceOrderRequest
from app.transitions import OrderStatus, Role

CUSTOMER = Actor(id="cust-1", role=Role.CUSTOMER)
OTHER_CUSTOMER = Actor(id="cust-2", role=Role.CUSTOMER)
SUPPLIER = Actor(id="sup-1", role=Role.SUPPLIER)
OTHER_SUPPLIER = Actor(id="sup-2", role=Role.SUPPLIER)
DISPATCH = Actor(id="rider-1", role=Role.DISPATCH)
ADMIN = Actor(id="admin-1", role=Role.ADMIN)

ADDRESS = DeliveryAddress(street="12 Lake Road", area="Lakeside", city="Pokhara", phone="9800000000")


class RecordingSink(NotificationSink):
    name = "recording"

    def __init__(self):
        self.sent = []

    async def send(self, notification):
        self.sent.append(notification)


class Shop:
    """Drives the state machine the way the storefront does."""

    def __init__(self, services):
        self.services = services
        self.machine = services.machine

    async def stock(self, product_id, on_hand, price="50.00", supplier=SUPPLIER, name=None):
        return await self.services.ledger.list_product(
            ListProductRequest(
                product_id=product_id,
                name=name or f"Product {product_id}",
                unit_price=Decimal(price),
                on_hand=on_hand,
            ),
            supplier,
        )

    async def place(self, lines, customer=CUSTOMER, supplier=SUPPLIER, **extra):
        request = PlaceOrderRequest(
            supplier_id=supplier.id,
            items=[PlaceLine(product_id=pid, quantity=qty) for pid, qty in lines.items()],
            delivery_address=ADDRESS,
            **extra,
        )
        return await self.machine.place_order(request, customer)

    async def move(self, order, target, actor=SUPPLIER, **kwargs):
        return await self.machine.transition(order.id, target, actor, order.version, **kwargs)

    async def pick_all(self, order):
        for index in range(len(order.items)):
            order = await self.machine.mark_picked(order.id, index, SUPPLIER, order.version)
        return order

    async def pack_all(self, order):
        checklist = {step: True for step in PACKING_STEPS}
        return await self.machine.update_packing(order.id, checklist, SUPPLIER, order.version)

    async def advance(self, order, target):
        """Walk the happy path from the order's status up to `target`."""
        path = [
            OrderStatus.CONFIRMED,
            OrderStatus.PICKING,
            OrderStatus.PACKING,
            OrderStatus.READY,
            OrderStatus.OUT_FOR_DELIVERY,
            OrderStatus.DELIVERED,
        ]
        for status in path[path.index(order.status) + 1 if order.status in path else 0:]:
            if status is OrderStatus.PACKING:
                order = await self.pick_all(order)
            if status is OrderStatus.READY:
                order = await self.pack_all(order)
            order = await self.move(order, status)
            if status is target:
                break
        return order


@pytest.fixture
def settings():
    return Settings(notification_retry_delay=0, transition_timeout_seconds=5.0)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
async def services(settings, sink):
    svc = build_services(settings, sinks=[sink])
    await svc.start()
    yield svc
    await svc.stop()


@pytest.fixture
def shop(services):
    return Shop(services)
